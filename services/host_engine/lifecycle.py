"""
Where: services/host_engine/lifecycle.py
What: Host engine startup/shutdown orchestration for shared resources.
Why: Keep main.py focused on app assembly while preserving lifecycle behavior.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool

from .config import HostEngineConfig
from .services.archive_stager import ArchiveStager
from .services.image_builder import DockerImageBuilder, ImageBuilder
from .services.orchestrator import FunctionAppOrchestrator
from .services.port_allocator import PortAllocator
from .services.reconciler import StatusReconciler
from .services.registry_store import RegistryDatabase

logger = logging.getLogger("host_engine.main")


def build_image_builder(engine_config: HostEngineConfig) -> ImageBuilder:
    return DockerImageBuilder(
        dockerfile_path=engine_config.BUILD_DOCKERFILE_PATH or None,
        app_port=engine_config.FUNCTION_APP_PORT,
        api_timeout=engine_config.DOCKER_API_TIMEOUT,
        build_timeout=engine_config.BUILD_TIMEOUT_SECONDS,
    )


@asynccontextmanager
async def manage_lifespan(
    app: FastAPI,
    engine_config: HostEngineConfig,
    builder: Optional[ImageBuilder] = None,
) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    database = RegistryDatabase(engine_config.DATABASE_URL)
    scheduler: Optional[BackgroundScheduler] = None

    try:
        database.create_schema()

        builder = builder or build_image_builder(engine_config)
        port_allocator = PortAllocator()
        reconciler = StatusReconciler(builder, port_allocator, database)
        orchestrator = FunctionAppOrchestrator(
            database=database,
            builder=builder,
            stager=ArchiveStager(engine_config.WORK_DIR_ROOT),
            port_allocator=port_allocator,
            reconciler=reconciler,
        )

        # Ports of apps the registry still records as running stay reserved.
        await run_in_threadpool(orchestrator.seed_reserved_ports)

        if engine_config.RECONCILE_INTERVAL_SECONDS > 0:
            scheduler = BackgroundScheduler()
            scheduler.add_job(
                reconciler.sweep,
                "interval",
                seconds=engine_config.RECONCILE_INTERVAL_SECONDS,
                id="status_sweep",
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            logger.info(
                f"Status sweep scheduler started "
                f"(interval: {engine_config.RECONCILE_INTERVAL_SECONDS}s)"
            )

        app.state.database = database
        app.state.port_allocator = port_allocator
        app.state.orchestrator = orchestrator

        logger.info("Host engine initialized with shared resources.")
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)

        logger.info("Host engine shutting down, closing registry.")
        database.dispose()
