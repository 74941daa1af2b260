"""
fxnhost host engine.

Registers function apps, builds uploaded code into container images and runs
them on host ports.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional, Tuple

from fastapi import FastAPI

from .api.routes import router
from .config import HostEngineConfig, config
from .core.logging_config import setup_logging
from .exceptions import register_exception_handlers
from .lifecycle import manage_lifespan
from .middleware import request_id_middleware
from .services.image_builder import ImageBuilder

# Logger setup
setup_logging()
logger = logging.getLogger("host_engine.main")


def create_app(
    engine_config: HostEngineConfig, builder: Optional[ImageBuilder] = None
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        async with manage_lifespan(app, engine_config, builder=builder):
            yield

    app = FastAPI(
        title="fxnhost host engine",
        version="1.0.0",
        lifespan=lifespan,
        root_path=engine_config.root_path,
    )

    app.middleware("http")(request_id_middleware)
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app(config)


def split_bind_addr(bind_addr: str) -> Tuple[str, int]:
    host, _, port = bind_addr.rpartition(":")
    return host or "0.0.0.0", int(port)


if __name__ == "__main__":
    import uvicorn

    host, port = split_bind_addr(config.UVICORN_BIND_ADDR)
    ssl_kwargs = {}
    if os.path.exists(config.SSL_CERT_PATH) and os.path.exists(config.SSL_KEY_PATH):
        ssl_kwargs = {"ssl_certfile": config.SSL_CERT_PATH, "ssl_keyfile": config.SSL_KEY_PATH}
    else:
        logger.warning("TLS certificate or key not found; serving plain HTTP")

    uvicorn.run(app, host=host, port=port, log_config=None, **ssl_kwargs)
