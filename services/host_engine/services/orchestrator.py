"""
Function app lifecycle orchestrator.

Applies the status state machine on top of the registry:

    Registered --upload--> Building --> Ready --start--> Running
                              |
                              +--> Error --upload--> Building ...

Upload and start are serialized per function app; different apps proceed in
parallel. Status reads are reconciled against the container runtime.
"""

import logging
import threading
from typing import Dict, List
from uuid import UUID

from services.common.models.function_app import (
    FunctionApp,
    FunctionAppStatus,
    FunctionAppStatusResult,
    FunctionAppSummary,
)

from ..core.exceptions import (
    FunctionAppNotFoundError,
    InvalidInputError,
    LaunchFailedError,
    NameInUseError,
    NotStartableError,
    UploadNotAllowedError,
)
from ..core.image_tag import image_tag
from ..models.result import StartResult
from .archive_stager import ArchiveStager
from .image_builder import ImageBuilder
from .port_allocator import PortAllocator, PortExhaustedError
from .reconciler import StatusReconciler
from .registry_store import RegistryDatabase, RegistryStore

logger = logging.getLogger("host_engine.orchestrator")


class FunctionAppOrchestrator:
    def __init__(
        self,
        database: RegistryDatabase,
        builder: ImageBuilder,
        stager: ArchiveStager,
        port_allocator: PortAllocator,
        reconciler: StatusReconciler,
    ):
        self.database = database
        self.builder = builder
        self.stager = stager
        self.port_allocator = port_allocator
        self.reconciler = reconciler

        # Per-app lock management
        self.locks: Dict[UUID, threading.Lock] = {}
        self._locks_lock = threading.Lock()
        self._register_lock = threading.Lock()

    def _lock_for(self, app_id: UUID) -> threading.Lock:
        """
        Per-app lock. Only registered ids get one.

        Raises:
            FunctionAppNotFoundError: unknown id
        """
        with self._locks_lock:
            lock = self.locks.get(app_id)
        if lock is not None:
            return lock

        # Records are never deleted, so a lock created here stays valid.
        with self.database.session_scope() as store:
            store.get_by_id(app_id)
        with self._locks_lock:
            return self.locks.setdefault(app_id, threading.Lock())

    # ------------------------------------------------------------------
    # Registry reads and registration
    # ------------------------------------------------------------------

    def register(self, name: str) -> UUID:
        """
        Register a new function app and return its id.

        Names that map to the same image tag ("My App" and "my app") are
        treated as the same name.
        """
        name = name.strip()
        if not name:
            raise InvalidInputError("Function app name must not be empty")

        tag = image_tag(name)
        with self._register_lock:
            with self.database.session_scope() as store:
                for existing in store.list_all():
                    if image_tag(existing.name) == tag:
                        raise NameInUseError(name)
                app = store.create(name)
        return app.id

    def get(self, app_id: UUID) -> FunctionApp:
        with self.database.session_scope() as store:
            return store.get_by_id(app_id)

    def get_id(self, name: str) -> UUID:
        with self.database.session_scope() as store:
            return store.get_by_name(name).id

    def list_apps(self) -> List[FunctionAppSummary]:
        with self.database.session_scope() as store:
            return [FunctionAppSummary.from_app(app) for app in store.list_all()]

    def seed_reserved_ports(self) -> int:
        """Reserve every port the registry records as bound by a running app."""
        with self.database.session_scope() as store:
            ports = store.running_ports()
        self.port_allocator.claim_all(ports)
        if ports:
            logger.info(f"Reserved {len(ports)} host port(s) held by running function apps")
        return len(ports)

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def upload_code(self, app_id: UUID, archive_bytes: bytes) -> FunctionApp:
        """
        Stage and build uploaded code; status ends Ready on success, Error on failure.

        Raises:
            FunctionAppNotFoundError: unknown id
            UploadNotAllowedError: the app is running
            PipelineError: staging or building failed (status is Error)
        """
        with self._lock_for(app_id):
            with self.database.session_scope() as store:
                app = self.reconciler.reconcile(store, store.get_by_id(app_id))

                if app.status is FunctionAppStatus.Running:
                    raise UploadNotAllowedError(app.status)
                if app.status is FunctionAppStatus.Building:
                    # Holding the lock means no build is in flight: this is a leftover.
                    logger.warning(f"{app.name} was left Building by an interrupted build; rebuilding")

                store.set_status(app_id, FunctionAppStatus.Building)
                logger.info(f"Building {app.name} ({len(archive_bytes)} archive bytes)")
                try:
                    with self.stager.stage(archive_bytes) as workdir:
                        self.builder.build(workdir, app.name)
                    store.set_status(app_id, FunctionAppStatus.Ready)
                except Exception as e:
                    logger.error(f"Upload for {app.name} failed: {e}")
                    self._mark_error(app_id)
                    raise

        logger.info(f"{app.name} is Ready")
        return app.model_copy(update={"status": FunctionAppStatus.Ready, "port": 0})

    def start(self, app_id: UUID) -> StartResult:
        """
        Start a Ready function app on a fresh host port. Starting a running app
        is a no-op.

        Raises:
            NotStartableError: status is not Ready or Running (status unchanged)
            LaunchFailedError: the runtime refused the start (status unchanged)
        """
        try:
            lock = self._lock_for(app_id)
        except FunctionAppNotFoundError:
            raise NotStartableError(FunctionAppStatus.NotRegistered) from None

        with lock:
            with self.database.session_scope() as store:
                app = self.reconciler.reconcile(store, store.get_by_id(app_id))
                if app.status is FunctionAppStatus.Running:
                    return StartResult(app=app, already_running=True)
                if app.status is not FunctionAppStatus.Ready:
                    raise NotStartableError(app.status)

                return StartResult(app=self._launch(store, app))

    def _launch(self, store: RegistryStore, app: FunctionApp) -> FunctionApp:
        try:
            port = self.port_allocator.reserve()
        except PortExhaustedError as e:
            raise LaunchFailedError(app.name, str(e)) from e

        try:
            bound = self.builder.run(app.name, port)
            store.set_running(app.id, bound)
        except Exception:
            self.port_allocator.release(port)
            raise

        if bound != port:
            self.port_allocator.release(port)
            self.port_allocator.claim(bound)
        logger.info(f"{app.name} is Running on port {bound}")
        return app.model_copy(update={"status": FunctionAppStatus.Running, "port": bound})

    def status(self, app_id: UUID) -> FunctionAppStatusResult:
        """
        Reconciled status of a function app. Unknown ids report NotRegistered.
        """
        with self.database.session_scope() as store:
            try:
                app = store.get_by_id(app_id)
            except FunctionAppNotFoundError:
                return FunctionAppStatusResult(id=app_id, status=FunctionAppStatus.NotRegistered)
            app = self.reconciler.reconcile(store, app)
        return FunctionAppStatusResult(id=app.id, status=app.status, port=app.port)

    def _mark_error(self, app_id: UUID) -> None:
        # Best effort: the caller re-raises the original failure.
        try:
            with self.database.session_scope() as store:
                store.set_status(app_id, FunctionAppStatus.Error)
        except Exception as e:
            logger.error(f"Failed to record Error status for {app_id}: {e}", exc_info=True)
