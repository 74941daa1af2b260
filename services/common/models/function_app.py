"""
Function app domain models shared by the host engine and its API client.
"""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class FunctionAppStatus(str, Enum):
    """
    Lifecycle status of a function app.

    The value is the wire tag; ``code`` is the small integer persisted in the registry.
    """

    NotRegistered = "NotRegistered"
    Registered = "Registered"
    Building = "Building"
    Ready = "Ready"
    Running = "Running"
    Error = "Error"

    @property
    def code(self) -> int:
        return _STATUS_CODES[self]

    @classmethod
    def from_code(cls, code: int) -> "FunctionAppStatus":
        try:
            return _STATUSES_BY_CODE[code]
        except KeyError:
            raise ValueError(f"Unknown function app status code: {code}") from None


_STATUS_CODES = {status: index for index, status in enumerate(FunctionAppStatus)}
_STATUSES_BY_CODE = {index: status for status, index in _STATUS_CODES.items()}


class FunctionApp(BaseModel):
    """A registered function app."""

    name: str
    id: UUID
    status: FunctionAppStatus
    created_at: int = Field(..., description="Registration time (epoch seconds)")
    port: int = Field(default=0, description="Host port while Running, otherwise 0")


class FunctionAppSummary(BaseModel):
    """Entry of the function app listing."""

    name: str
    id: UUID
    status: FunctionAppStatus
    created_at: int

    @classmethod
    def from_app(cls, app: FunctionApp) -> "FunctionAppSummary":
        return cls(name=app.name, id=app.id, status=app.status, created_at=app.created_at)


class FunctionAppNameRequest(BaseModel):
    """Client -> Host: register a function app."""

    name: str = Field(..., min_length=1, description="Unique function app name")

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be blank")
        return value


class FunctionAppStatusResult(BaseModel):
    """Host -> Client: reconciled status of a function app."""

    id: UUID
    status: FunctionAppStatus
    port: int = 0
