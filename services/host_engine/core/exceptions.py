"""
Custom exception classes.

Represent errors raised by the registry, the build pipeline and the lifecycle
state machine, plus the HTTP handlers that render them.
"""

import logging
from typing import Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from services.common.models.function_app import FunctionAppStatus

logger = logging.getLogger("host_engine.exceptions")


class HostEngineError(Exception):
    """Base exception class for the host engine."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class FunctionAppNotFoundError(HostEngineError):
    """Raised when no function app matches an id or name."""

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"No function app found for {key}")


class NameInUseError(HostEngineError):
    """Raised when registering a name that is already taken."""

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Name is already in use: {name}")


class InvalidInputError(HostEngineError):
    """Raised for malformed request input."""

    status_code = status.HTTP_400_BAD_REQUEST


class InvalidAppIdError(InvalidInputError):
    def __init__(self, raw_id: str):
        self.raw_id = raw_id
        super().__init__(f"Invalid function app id: {raw_id}")


class InvalidArchiveEncodingError(InvalidInputError):
    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"Code body is not valid base64: {cause}")


class PipelineError(HostEngineError):
    """Failure inside the build/run pipeline."""


class CorruptArchiveError(PipelineError):
    """Raised when the uploaded bytes cannot be unpacked."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Could not unpack code archive: {detail}")


class MalformedLayoutError(PipelineError):
    """Raised when the archive does not hold exactly one top-level folder."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, entry_count: int, file_name: Optional[str] = None):
        self.entry_count = entry_count
        self.file_name = file_name
        if file_name is not None:
            message = (
                "Code archive must contain exactly one folder, "
                f"but its only entry '{file_name}' is a file"
            )
        else:
            message = f"Code archive must contain exactly one folder, found {entry_count} entries"
        super().__init__(message)


class BuildFailedError(PipelineError):
    """Raised when the image build does not produce a runnable image."""

    def __init__(self, app_name: str, detail: str):
        self.app_name = app_name
        self.detail = detail
        super().__init__(f"Error building function app {app_name}: {detail}")


class LaunchFailedError(PipelineError):
    """Raised when the image cannot be started."""

    def __init__(self, app_name: str, detail: str):
        self.app_name = app_name
        self.detail = detail
        super().__init__(f"Error starting function app {app_name}: {detail}")


class StateConflictError(HostEngineError):
    """Raised when an operation is illegal for the current status."""

    status_code = status.HTTP_400_BAD_REQUEST


_NOT_STARTABLE_REASONS = {
    FunctionAppStatus.Building: "it is currently building",
    FunctionAppStatus.Error: "it is in an error state",
    FunctionAppStatus.Registered: "it doesn't have any code yet",
    FunctionAppStatus.NotRegistered: "it doesn't exist",
}


class NotStartableError(StateConflictError):
    """Raised by start() for every status other than Ready or Running."""

    def __init__(self, current: FunctionAppStatus):
        self.current = current
        reason = _NOT_STARTABLE_REASONS.get(current, f"its status is {current.value}")
        super().__init__(f"Cannot start function app, {reason}")


class UploadNotAllowedError(StateConflictError):
    """Raised by upload_code() while the app is running."""

    def __init__(self, current: FunctionAppStatus):
        self.current = current
        super().__init__(f"Cannot upload code while the function app is {current.value}")


# ===========================================
# Exception Handlers
# ===========================================


async def host_engine_exception_handler(request: Request, exc: HostEngineError):
    """
    Render a host engine error as plain text with its mapped status code.
    """
    if exc.status_code >= 500:
        logger.error(
            f"{request.method} {request.url.path} failed: {exc}",
            extra={"path": request.url.path, "method": request.method},
        )
    else:
        logger.info(
            f"{request.method} {request.url.path} rejected: {exc}",
            extra={"path": request.url.path, "method": request.method},
        )
    return PlainTextResponse(str(exc), status_code=exc.status_code)


async def global_exception_handler(request: Request, exc: Exception):
    """
    Catch-all handler for unhandled exceptions.
    """
    logger.error(
        f"Global exception handler caught: {exc}",
        exc_info=True,
        extra={
            "path": request.url.path,
            "method": request.method,
        },
    )

    return PlainTextResponse(str(exc), status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """
    Handler for HTTPException.
    """
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handler for validation errors.
    """
    return PlainTextResponse(
        f"Validation Error: {exc.errors()}",
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
    )
