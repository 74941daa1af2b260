"""
Common Configuration
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class BaseAppConfig(BaseSettings):
    """
    Common application settings.
    """

    LOG_LEVEL: str = Field(default="INFO", description="Log level")
    VERIFY_SSL: bool = Field(default=False, description="Whether to verify SSL certificates")

    # ===== Function App Container Defaults =====
    FUNCTION_APP_PORT: int = Field(
        default=8080, description="Port the function app listens on inside its container"
    )
    DOCKER_API_TIMEOUT: int = Field(
        default=60, description="Timeout in seconds for Docker API calls"
    )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )
