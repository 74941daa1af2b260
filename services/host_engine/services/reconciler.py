"""
Where: services/host_engine/services/reconciler.py
What: Re-derive a function app's status by asking the container runtime.
Why: The registry can drift from reality (containers stopped by hand, crashes,
host restarts); status and start must see the runtime's view.
"""

import logging
from typing import Optional

from services.common.models.function_app import FunctionApp, FunctionAppStatus

from .image_builder import ImageBuilder
from .port_allocator import PortAllocator
from .registry_store import RegistryDatabase, RegistryStore

logger = logging.getLogger("host_engine.reconciler")

_CHECKED_STATUSES = (FunctionAppStatus.Ready, FunctionAppStatus.Running)


class StatusReconciler:
    def __init__(
        self,
        builder: ImageBuilder,
        port_allocator: PortAllocator,
        database: Optional[RegistryDatabase] = None,
    ):
        self.builder = builder
        self.port_allocator = port_allocator
        self.database = database

    def reconcile(self, store: RegistryStore, app: FunctionApp) -> FunctionApp:
        """
        Return ``app`` as the runtime sees it, persisting any correction.

        Only Ready and Running records are checked; Registered, Building and
        Error are returned unchanged.
        """
        if app.status not in _CHECKED_STATUSES:
            return app

        if self.builder.is_running(app.name):
            if app.status is FunctionAppStatus.Running and app.port > 0:
                return app
            port = app.port or self.builder.running_port(app.name)
            if not port:
                logger.warning(
                    f"{app.name} is running but its host port is unknown; keeping {app.status.value}"
                )
                return app
            if app.status is FunctionAppStatus.Ready:
                if not store.mark_running(app.id, port):
                    return self._superseded(store, app)
            else:
                store.set_running(app.id, port)
            self.port_allocator.claim(port)
            logger.info(f"Reconciled {app.name}: {app.status.value} -> Running on port {port}")
            return app.model_copy(update={"status": FunctionAppStatus.Running, "port": port})

        if app.status is FunctionAppStatus.Ready:
            return app

        if not store.mark_stopped(app.id, app.port):
            return self._superseded(store, app)
        self.port_allocator.release(app.port)
        logger.info(f"Reconciled {app.name}: Running -> Ready (container no longer running)")
        return app.model_copy(update={"status": FunctionAppStatus.Ready, "port": 0})

    def _superseded(self, store: RegistryStore, app: FunctionApp) -> FunctionApp:
        # Another writer (e.g. a concurrent start) changed the record after it was read.
        current = store.get_by_id(app.id)
        logger.info(
            f"Skipped stale reconciliation of {app.name}: record is now "
            f"{current.status.value} on port {current.port}"
        )
        return current

    def sweep(self) -> int:
        """
        Reconcile every Ready/Running record. Returns the number of corrections.
        """
        if self.database is None:
            raise RuntimeError("StatusReconciler.sweep() requires a RegistryDatabase")

        corrected = 0
        with self.database.session_scope() as store:
            for app in store.list_all():
                if app.status not in _CHECKED_STATUSES:
                    continue
                try:
                    reconciled = self.reconcile(store, app)
                except Exception as e:
                    logger.error(f"Failed to reconcile {app.name}: {e}", exc_info=True)
                    store.session.rollback()
                    continue
                if reconciled.status is not app.status or reconciled.port != app.port:
                    corrected += 1

        if corrected:
            logger.info(f"Status sweep corrected {corrected} function app(s)")
        return corrected
