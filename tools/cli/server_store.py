"""
Where: tools/cli/server_store.py
What: Local persistence of the host engine server the CLI talks to.
Why: Commands run in separate processes and need the configured server.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import Integer, String, create_engine, delete, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

DEFAULT_DATABASE_URL = "sqlite:///fxnhost_cli.db"


class Base(DeclarativeBase):
    pass


class ServerRow(Base):
    __tablename__ = "servers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    hostname: Mapped[str] = mapped_column(String, nullable=False)
    port: Mapped[int] = mapped_column(Integer, nullable=False)


@dataclass(frozen=True)
class ServerSettings:
    hostname: str
    port: int


class ServerSettingsStore:
    """
    Holds at most one server row; setting a server replaces the previous one.
    """

    def __init__(self, url: str = DEFAULT_DATABASE_URL):
        self.engine = create_engine(url)
        Base.metadata.create_all(self.engine)
        self._sessionmaker = sessionmaker(bind=self.engine)

    def set_server(self, hostname: str, port: int) -> ServerSettings:
        hostname = hostname.strip()
        if not hostname:
            raise ValueError("hostname must not be empty")
        if not 0 < port < 65536:
            raise ValueError(f"Invalid port: {port}")

        with self._sessionmaker() as session:
            with session.begin():
                session.execute(delete(ServerRow))
                session.add(ServerRow(hostname=hostname, port=port))
        return ServerSettings(hostname=hostname, port=port)

    def get_server(self) -> Optional[ServerSettings]:
        with self._sessionmaker() as session:
            row = session.scalars(select(ServerRow).order_by(ServerRow.id.desc())).first()
            if row is None:
                return None
            return ServerSettings(hostname=row.hostname, port=row.port)

    def clear(self) -> None:
        with self._sessionmaker() as session:
            with session.begin():
                session.execute(delete(ServerRow))

    def close(self) -> None:
        self.engine.dispose()
