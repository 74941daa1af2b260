"""
Where: tools/cli/client.py
What: HTTP client for the fxnhost host engine API.
Why: Give command line tooling one typed entry point per host engine endpoint.
"""

import base64
import io
import logging
import zipfile
from pathlib import Path
from typing import Any, Iterable, List, Optional
from uuid import UUID

import httpx

from services.common.core.config import BaseAppConfig
from services.common.core.http_client import HttpClientFactory
from services.common.models.function_app import (
    FunctionAppStatusResult,
    FunctionAppSummary,
)

logger = logging.getLogger("fxnhost.client")

GREETING = "Hello from fxnhost!"
DEFAULT_TIMEOUT = 30.0
# Directories never worth shipping to the builder.
DEFAULT_ARCHIVE_EXCLUDES = frozenset({"target", ".git", "__pycache__"})


class HostEngineError(Exception):
    """Base error for failed host engine calls."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class HostUnreachableError(HostEngineError):
    """The host engine could not be reached."""


class HostNotFoundError(HostEngineError):
    """404: no function app with the given id or name."""


class HostConflictError(HostEngineError):
    """409: the function app name is already in use."""


class HostRequestError(HostEngineError):
    """400-class rejection (bad id, bad archive, illegal state)."""


class HostServerError(HostEngineError):
    """500-class failure (build or launch failed)."""


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    detail = response.text or response.reason_phrase
    code = response.status_code
    if code == 404:
        raise HostNotFoundError(detail, code)
    if code == 409:
        raise HostConflictError(detail, code)
    if 400 <= code < 500:
        raise HostRequestError(detail, code)
    raise HostServerError(detail, code)


class HostEngineClient:
    """
    Synchronous client for one host engine.
    """

    def __init__(self, client: httpx.Client, upload_timeout: Optional[float] = None):
        self.client = client
        # Uploads block until the image is built.
        self.upload_timeout = upload_timeout

    @classmethod
    def for_server(
        cls,
        hostname: str,
        port: int,
        *,
        scheme: str = "https",
        config: Optional[BaseAppConfig] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> "HostEngineClient":
        factory = HttpClientFactory(config or BaseAppConfig())
        client = factory.create_sync_client(
            base_url=f"{scheme}://{hostname}:{port}", timeout=timeout
        )
        return cls(client)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "HostEngineClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            raise HostUnreachableError(f"Error contacting host engine: {exc}") from exc
        _raise_for_status(response)
        return response

    def hello(self) -> str:
        return self._request("GET", "/hello").text

    def test_server(self) -> bool:
        """Return True when the server answers /hello with the fxnhost greeting."""
        try:
            text = self.hello()
        except HostEngineError as exc:
            logger.warning(f"Server test failed: {exc}")
            return False
        if text != GREETING:
            logger.warning(f"Server returned unexpected text: {text}")
            return False
        return True

    def register(self, name: str) -> UUID:
        response = self._request("POST", "/function-apps", json={"name": name})
        return UUID(response.text.strip())

    def list_apps(self) -> List[FunctionAppSummary]:
        response = self._request("GET", "/function-apps")
        return [FunctionAppSummary.model_validate(item) for item in response.json()]

    def get_id(self, name: str) -> UUID:
        response = self._request("GET", f"/function-apps/{name}/id")
        return UUID(response.text.strip())

    def upload_code(self, app_id: UUID, encoded_archive: str) -> None:
        self._request(
            "POST",
            f"/function-apps/{app_id}/code",
            content=encoded_archive.encode("ascii"),
            headers={"Content-Type": "text/plain"},
            timeout=self.upload_timeout,
        )

    def status(self, app_id: UUID) -> FunctionAppStatusResult:
        response = self._request("GET", f"/function-apps/{app_id}/status")
        return FunctionAppStatusResult.model_validate(response.json())

    def start(self, app_id: UUID) -> str:
        return self._request("POST", f"/function-apps/{app_id}/start").text


def encode_archive(
    source_dir: Path, exclude: Iterable[str] = DEFAULT_ARCHIVE_EXCLUDES
) -> str:
    """
    Zip ``source_dir`` as the archive's single top-level folder and base64-encode it.
    """
    source_dir = Path(source_dir).resolve()
    if not source_dir.is_dir():
        raise NotADirectoryError(f"Not a directory: {source_dir}")

    excluded = set(exclude)
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(f"{source_dir.name}/", "")
        for path in sorted(source_dir.rglob("*")):
            relative = path.relative_to(source_dir)
            if excluded.intersection(relative.parts):
                continue
            arcname = f"{source_dir.name}/{relative.as_posix()}"
            if path.is_dir():
                archive.writestr(f"{arcname}/", "")
            else:
                archive.write(path, arcname)

    return base64.b64encode(buffer.getvalue()).decode("ascii")
