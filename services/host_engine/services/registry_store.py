"""
Function app registry.

Durable table of function app records backed by SQLAlchemy (SQLite by default).
Pure data access: lifecycle policy lives in the orchestrator.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, List, Set
from uuid import UUID

from sqlalchemy import Integer, String, create_engine, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from services.common.models.function_app import FunctionApp, FunctionAppStatus

from ..core.exceptions import FunctionAppNotFoundError, NameInUseError

logger = logging.getLogger("host_engine.registry_store")


class Base(DeclarativeBase):
    pass


class FunctionAppRow(Base):
    """Row of the ``function_apps`` table."""

    __tablename__ = "function_apps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    status: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def to_model(self) -> FunctionApp:
        return FunctionApp(
            name=self.name,
            id=UUID(self.id),
            status=FunctionAppStatus.from_code(self.status),
            created_at=self.created_at,
            port=self.port,
        )


class RegistryDatabase:
    """
    Owns the engine and hands out one RegistryStore (one session) per request.
    """

    def __init__(self, url: str):
        self.url = url
        engine_kwargs = {}
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite":
            # Sessions are opened on threadpool workers.
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if parsed.database in (None, "", ":memory:"):
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **engine_kwargs)
        self._sessionmaker = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info(f"Registry schema ready at {self.url}")

    @contextmanager
    def session_scope(self) -> Iterator["RegistryStore"]:
        session = self._sessionmaker()
        try:
            yield RegistryStore(session)
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()


class RegistryStore:
    """Data access for function app records over a single session."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, name: str) -> FunctionApp:
        """
        Register a new function app with status Registered.

        Raises:
            NameInUseError: a record with this name already exists
        """
        if self._find_by_name(name) is not None:
            raise NameInUseError(name)

        row = FunctionAppRow(
            id=str(uuid.uuid4()),
            name=name,
            status=FunctionAppStatus.Registered.code,
            created_at=int(time.time()),
            port=0,
        )
        self.session.add(row)
        try:
            self.session.commit()
        except IntegrityError as e:
            # A concurrent registration won the UNIQUE constraint.
            self.session.rollback()
            raise NameInUseError(name) from e

        logger.info(f"Registered function app {name}", extra={"app_id": row.id})
        return row.to_model()

    def get_by_id(self, app_id: UUID) -> FunctionApp:
        # Conditional updates bypass the identity map; always reload.
        row = self.session.get(FunctionAppRow, str(app_id), populate_existing=True)
        if row is None:
            raise FunctionAppNotFoundError(f"id {app_id}")
        return row.to_model()

    def get_by_name(self, name: str) -> FunctionApp:
        row = self._find_by_name(name)
        if row is None:
            raise FunctionAppNotFoundError(f"name {name}")
        return row.to_model()

    def list_all(self) -> List[FunctionApp]:
        rows = self.session.scalars(
            select(FunctionAppRow).order_by(FunctionAppRow.created_at, FunctionAppRow.name)
        )
        return [row.to_model() for row in rows]

    def set_status(self, app_id: UUID, status: FunctionAppStatus) -> None:
        """
        Set the status of one record.

        Any status other than Running clears the port.
        """
        if status is FunctionAppStatus.NotRegistered:
            raise ValueError("NotRegistered is never persisted")

        values = {"status": status.code}
        if status is not FunctionAppStatus.Running:
            values["port"] = 0
        self._update(app_id, values)

    def set_running(self, app_id: UUID, port: int) -> None:
        """Set status Running and the bound host port in one statement."""
        if port <= 0:
            raise ValueError(f"Invalid port for a running function app: {port}")
        self._update(app_id, {"status": FunctionAppStatus.Running.code, "port": port})

    def mark_stopped(self, app_id: UUID, port: int) -> bool:
        """
        Running(port) -> Ready, only while the record still holds that port.

        Returns False when another writer changed the record first.
        """
        return self._update_if(
            app_id,
            {"status": FunctionAppStatus.Running.code, "port": port},
            {"status": FunctionAppStatus.Ready.code, "port": 0},
        )

    def mark_running(self, app_id: UUID, port: int) -> bool:
        """Ready -> Running(port), only while the record is still Ready."""
        if port <= 0:
            raise ValueError(f"Invalid port for a running function app: {port}")
        return self._update_if(
            app_id,
            {"status": FunctionAppStatus.Ready.code},
            {"status": FunctionAppStatus.Running.code, "port": port},
        )

    def running_ports(self) -> Set[int]:
        rows = self.session.scalars(
            select(FunctionAppRow.port).where(
                FunctionAppRow.status == FunctionAppStatus.Running.code,
                FunctionAppRow.port > 0,
            )
        )
        return set(rows)

    def _find_by_name(self, name: str):
        return self.session.scalars(
            select(FunctionAppRow).where(FunctionAppRow.name == name)
        ).first()

    def _update(self, app_id: UUID, values: dict) -> None:
        result = self.session.execute(
            update(FunctionAppRow).where(FunctionAppRow.id == str(app_id)).values(**values)
        )
        self.session.commit()
        if result.rowcount == 0:
            raise FunctionAppNotFoundError(f"id {app_id}")

    def _update_if(self, app_id: UUID, expected: dict, values: dict) -> bool:
        conditions = [
            getattr(FunctionAppRow, column) == value for column, value in expected.items()
        ]
        result = self.session.execute(
            update(FunctionAppRow)
            .where(FunctionAppRow.id == str(app_id), *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1
