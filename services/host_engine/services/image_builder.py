"""
Image builder.

Turns a staged source tree into a runnable Docker image, starts it on a host
port and answers whether a function app's image is currently running.
"""

import logging
import string
import threading
from pathlib import Path
from typing import Iterable, Optional, Protocol

import docker
import docker.errors
import requests

from ..core.exceptions import BuildFailedError, LaunchFailedError
from ..core.image_tag import image_tag

logger = logging.getLogger("host_engine.image_builder")

BUNDLED_DOCKERFILE = Path(__file__).resolve().parent.parent / "container" / "Dockerfile"

MANAGED_LABEL = "fxnhost.managed"
APP_LABEL = "fxnhost.function_app"

BUILD_LOG_TAIL_LINES = 20


class ImageBuilder(Protocol):
    def build(self, workdir: Path, app_name: str) -> None: ...

    def run(self, app_name: str, port: int) -> int: ...

    def is_running(self, app_name: str) -> bool: ...

    def running_port(self, app_name: str) -> Optional[int]: ...


class DockerImageBuilder:
    """
    ImageBuilder backed by the local Docker daemon.
    """

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        *,
        dockerfile_path: Optional[str] = None,
        app_port: int = 8080,
        api_timeout: int = 60,
        build_timeout: int = 1800,
    ):
        self._client = client
        self._client_lock = threading.Lock()
        self.dockerfile_path = Path(dockerfile_path) if dockerfile_path else BUNDLED_DOCKERFILE
        self.app_port = app_port
        self.api_timeout = api_timeout
        self.build_timeout = build_timeout
        logger.info(
            f"DockerImageBuilder initialized (dockerfile: {self.dockerfile_path}, "
            f"app port: {self.app_port})"
        )

    @property
    def client(self) -> docker.DockerClient:
        # Connect lazily so the host engine can start before the daemon is reachable.
        with self._client_lock:
            if self._client is None:
                self._client = docker.from_env(timeout=self.api_timeout)
            return self._client

    @property
    def container_port(self) -> str:
        return f"{self.app_port}/tcp"

    def render_dockerfile(self) -> str:
        template = string.Template(self.dockerfile_path.read_text(encoding="utf-8"))
        return template.safe_substitute(FUNCTION_APP_PORT=str(self.app_port))

    def build(self, workdir: Path, app_name: str) -> None:
        """
        Build the image for ``app_name`` from ``workdir`` (which holds ``code/``).

        Raises:
            BuildFailedError: the build did not produce an image
        """
        tag = image_tag(app_name)

        try:
            (workdir / "Dockerfile").write_text(self.render_dockerfile(), encoding="utf-8")
        except OSError as e:
            raise BuildFailedError(app_name, f"Error writing Dockerfile: {e}") from e

        logger.info(f"Building image {tag}", extra={"workdir": str(workdir)})
        try:
            _, build_log = self.client.images.build(
                path=str(workdir),
                tag=tag,
                rm=True,
                forcerm=True,
                timeout=self.build_timeout,
            )
        except docker.errors.BuildError as e:
            detail = _build_log_tail(e.build_log) or e.msg
            raise BuildFailedError(app_name, detail) from e
        except docker.errors.APIError as e:
            raise BuildFailedError(app_name, f"Docker API error: {e}") from e
        except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
            raise BuildFailedError(app_name, f"Docker daemon unavailable: {e}") from e

        logger.info(f"Image {tag} built successfully")
        logger.debug(f"Build output for {tag}:\n{_build_log_tail(build_log)}")

    def run(self, app_name: str, port: int) -> int:
        """
        Start the image for ``app_name`` with ``port`` bound to the app's service port.

        Returns once the runtime accepted the bind; the host port actually bound
        is returned when the runtime reports it.

        Raises:
            LaunchFailedError: the container could not be started
        """
        tag = image_tag(app_name)
        logger.info(f"Starting {tag} on host port {port}")
        try:
            container = self.client.containers.run(
                tag,
                detach=True,
                ports={self.container_port: port},
                restart_policy={"Name": "no"},
                labels={MANAGED_LABEL: "true", APP_LABEL: tag},
            )
        except docker.errors.ImageNotFound as e:
            raise LaunchFailedError(app_name, f"Image {tag} not found. Upload code first.") from e
        except docker.errors.APIError as e:
            raise LaunchFailedError(app_name, f"Docker API error: {e}") from e
        except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
            raise LaunchFailedError(app_name, f"Docker daemon unavailable: {e}") from e

        try:
            container.reload()
        except docker.errors.APIError as e:
            logger.warning(f"Could not reload container for {tag}: {e}")
            return port

        bound = self._bound_port(container)
        if bound is not None and bound != port:
            logger.warning(f"Runtime bound {tag} to port {bound} instead of {port}")
        return bound or port

    def is_running(self, app_name: str) -> bool:
        """
        Best-effort liveness check. Never raises; runtime errors mean "not running".
        """
        try:
            return bool(self._running_containers(app_name))
        except Exception as e:
            logger.warning(f"Liveness check failed for {app_name}: {e}")
            return False

    def running_port(self, app_name: str) -> Optional[int]:
        """Host port of a running container of ``app_name``, when one is published."""
        try:
            containers = self._running_containers(app_name)
        except Exception as e:
            logger.warning(f"Port lookup failed for {app_name}: {e}")
            return None
        for container in containers:
            port = self._bound_port(container)
            if port:
                return port
        return None

    def _running_containers(self, app_name: str) -> list:
        return self.client.containers.list(filters={"ancestor": image_tag(app_name)})

    def _bound_port(self, container) -> Optional[int]:
        try:
            bindings = container.attrs["NetworkSettings"]["Ports"][self.container_port]
            return int(bindings[0]["HostPort"])
        except (KeyError, IndexError, TypeError, ValueError):
            return None


def _build_log_tail(build_log: Optional[Iterable[dict]]) -> str:
    if not build_log:
        return ""
    lines = []
    for chunk in build_log:
        if not isinstance(chunk, dict):
            continue
        text = chunk.get("error") or chunk.get("stream") or ""
        lines.extend(line for line in text.splitlines() if line.strip())
    return "\n".join(lines[-BUILD_LOG_TAIL_LINES:])
