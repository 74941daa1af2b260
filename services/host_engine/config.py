"""
Host engine configuration definition.

Loads configuration from environment variables and provides a Pydantic model.
Uses pydantic-settings for type safety and defaults.
"""

import sys
from typing import Optional

from pydantic import Field

from services.common.core.config import BaseAppConfig


class HostEngineConfig(BaseAppConfig):
    """
    Configuration management for the host engine service.
    """

    # Server settings
    UVICORN_BIND_ADDR: str = Field(default="0.0.0.0:8080", description="Listen address")
    SSL_CERT_PATH: str = Field(default="cert.pem", description="TLS certificate chain path")
    SSL_KEY_PATH: str = Field(default="key.pem", description="TLS private key path")
    LOG_CONFIG_PATH: str = Field(
        default="config/host_engine_log.yaml", description="Logging dictConfig YAML path"
    )

    # Registry
    DATABASE_URL: str = Field(
        default="sqlite:///fxnhost_host.db", description="SQLAlchemy URL of the registry"
    )

    # Build pipeline
    BUILD_DOCKERFILE_PATH: str = Field(
        default="", description="Dockerfile template for function apps (bundled when empty)"
    )
    BUILD_TIMEOUT_SECONDS: int = Field(
        default=1800, description="Timeout for a single image build (seconds)"
    )
    WORK_DIR_ROOT: Optional[str] = Field(
        default=None, description="Parent directory for build working directories"
    )

    # Reconciliation
    RECONCILE_INTERVAL_SECONDS: int = Field(
        default=0, description="Periodic status sweep interval (seconds, 0 disables)"
    )

    # FastAPI settings
    root_path: str = Field(default="", description="API root path (for proxy)")

    # model_config is inherited


# Load config as a singleton.
# pydantic-settings reads environment variables during instantiation.
try:
    config = HostEngineConfig()
except Exception as e:
    sys.stderr.write(f"Failed to load configuration: {e}\n")
    raise
