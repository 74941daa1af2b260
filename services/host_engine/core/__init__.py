"""
Core logic package.

Provides the error taxonomy and image naming shared by the services.
"""

from .exceptions import (
    BuildFailedError,
    CorruptArchiveError,
    FunctionAppNotFoundError,
    HostEngineError,
    InvalidAppIdError,
    InvalidArchiveEncodingError,
    InvalidInputError,
    LaunchFailedError,
    MalformedLayoutError,
    NameInUseError,
    NotStartableError,
    PipelineError,
    StateConflictError,
    UploadNotAllowedError,
)
from .image_tag import image_tag

__all__ = [
    "BuildFailedError",
    "CorruptArchiveError",
    "FunctionAppNotFoundError",
    "HostEngineError",
    "InvalidAppIdError",
    "InvalidArchiveEncodingError",
    "InvalidInputError",
    "LaunchFailedError",
    "MalformedLayoutError",
    "NameInUseError",
    "NotStartableError",
    "PipelineError",
    "StateConflictError",
    "UploadNotAllowedError",
    "image_tag",
]
