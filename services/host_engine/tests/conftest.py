import io
import itertools
import os
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Config is loaded at import time; set the environment at module top level.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_CONFIG_PATH"] = "/nonexistent/host_engine_log.yaml"
os.environ["RECONCILE_INTERVAL_SECONDS"] = "0"

from services.host_engine.services.archive_stager import ArchiveStager  # noqa: E402
from services.host_engine.services.orchestrator import FunctionAppOrchestrator  # noqa: E402
from services.host_engine.services.port_allocator import PortAllocator  # noqa: E402
from services.host_engine.services.reconciler import StatusReconciler  # noqa: E402
from services.host_engine.services.registry_store import RegistryDatabase  # noqa: E402


class FakeImageBuilder:
    """In-memory ImageBuilder: records builds and tracks "running" apps by name."""

    def __init__(self):
        self.builds: List[dict] = []
        self.running: Dict[str, int] = {}
        self.build_error: Optional[Exception] = None
        self.run_error: Optional[Exception] = None
        self.bound_port: Optional[int] = None
        self.build_hook = None

    def build(self, workdir: Path, app_name: str) -> None:
        source = workdir / "code"
        self.builds.append(
            {
                "app_name": app_name,
                "workdir": workdir,
                "files": sorted(p.relative_to(source).as_posix() for p in source.rglob("*")),
            }
        )
        if self.build_hook:
            self.build_hook(app_name)
        if self.build_error:
            raise self.build_error

    def run(self, app_name: str, port: int) -> int:
        if self.run_error:
            raise self.run_error
        bound = self.bound_port or port
        self.running[app_name] = bound
        return bound

    def is_running(self, app_name: str) -> bool:
        return app_name in self.running

    def running_port(self, app_name: str) -> Optional[int]:
        return self.running.get(app_name)

    def stop(self, app_name: str) -> None:
        self.running.pop(app_name, None)


def build_zip(entries: Dict[str, str]) -> bytes:
    """Zip ``{path: content}``; paths ending in "/" become directory entries."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def make_zip():
    return build_zip


@pytest.fixture
def app_archive():
    """A well-formed upload: one folder holding a small project."""
    return build_zip(
        {
            "hello_app/": "",
            "hello_app/Cargo.toml": '[package]\nname = "hello_app"\n',
            "hello_app/src/main.rs": "fn main() {}\n",
        }
    )


@pytest.fixture
def fake_builder():
    return FakeImageBuilder()


@pytest.fixture
def database(tmp_path):
    db = RegistryDatabase(f"sqlite:///{tmp_path / 'registry.db'}")
    db.create_schema()
    yield db
    db.dispose()


@pytest.fixture
def port_allocator():
    ports = itertools.count(20000)
    return PortAllocator(picker=lambda: next(ports))


@pytest.fixture
def reconciler(fake_builder, port_allocator, database):
    return StatusReconciler(fake_builder, port_allocator, database)


@pytest.fixture
def orchestrator(database, fake_builder, port_allocator, reconciler, tmp_path):
    return FunctionAppOrchestrator(
        database=database,
        builder=fake_builder,
        stager=ArchiveStager(str(tmp_path / "work")),
        port_allocator=port_allocator,
        reconciler=reconciler,
    )
