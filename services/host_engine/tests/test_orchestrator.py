"""
Where: services/host_engine/tests/test_orchestrator.py
What: Lifecycle state machine, per-app serialization and failure handling.
"""

import threading
import time
import uuid

import pytest

from services.common.models.function_app import FunctionAppStatus
from services.host_engine.core.exceptions import (
    BuildFailedError,
    CorruptArchiveError,
    FunctionAppNotFoundError,
    InvalidInputError,
    LaunchFailedError,
    MalformedLayoutError,
    NameInUseError,
    NotStartableError,
    UploadNotAllowedError,
)
from services.host_engine.services.registry_store import RegistryStore


def _force_status(database, app_id, status):
    with database.session_scope() as store:
        store.set_status(app_id, status)


def _stored(database, app_id):
    with database.session_scope() as store:
        return store.get_by_id(app_id)


# ------------------------------------------------------------------
# Scenarios
# ------------------------------------------------------------------


def test_demo_lifecycle(orchestrator, fake_builder, app_archive):
    app_id = orchestrator.register("hello")
    assert orchestrator.get_id("hello") == app_id
    assert orchestrator.status(app_id).status is FunctionAppStatus.Registered

    orchestrator.upload_code(app_id, app_archive)
    assert orchestrator.status(app_id).status is FunctionAppStatus.Ready
    assert fake_builder.builds[0]["app_name"] == "hello"
    assert fake_builder.builds[0]["files"] == ["Cargo.toml", "src", "src/main.rs"]
    assert not fake_builder.builds[0]["workdir"].exists()

    result = orchestrator.start(app_id)
    assert result.already_running is False
    assert result.app.status is FunctionAppStatus.Running
    assert result.app.port > 0
    assert str(result.app.port) in result.message

    status = orchestrator.status(app_id)
    assert status.status is FunctionAppStatus.Running
    assert status.port == result.app.port

    again = orchestrator.start(app_id)
    assert again.already_running is True
    assert again.app.port == result.app.port


def test_duplicate_registration_conflicts(orchestrator):
    orchestrator.register("hello")

    with pytest.raises(NameInUseError):
        orchestrator.register("hello")
    assert len(orchestrator.list_apps()) == 1


def test_names_sharing_an_image_tag_conflict(orchestrator):
    orchestrator.register("My App")

    with pytest.raises(NameInUseError):
        orchestrator.register("my   app")


def test_blank_name_is_rejected(orchestrator):
    with pytest.raises(InvalidInputError):
        orchestrator.register("   ")


def test_concurrent_registration_has_one_winner(orchestrator):
    barrier = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            orchestrator.register("contended")
            outcome = "ok"
        except NameInUseError:
            outcome = "conflict"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("conflict") == 7


def test_start_while_building_is_rejected(orchestrator, database):
    app_id = orchestrator.register("hello")
    _force_status(database, app_id, FunctionAppStatus.Building)

    with pytest.raises(NotStartableError) as excinfo:
        orchestrator.start(app_id)

    assert str(excinfo.value) == "Cannot start function app, it is currently building"
    assert _stored(database, app_id).status is FunctionAppStatus.Building


def test_two_folder_archive_marks_error(orchestrator, database, make_zip):
    app_id = orchestrator.register("hello")
    archive = make_zip({"one/a.rs": "", "two/b.rs": ""})

    with pytest.raises(MalformedLayoutError):
        orchestrator.upload_code(app_id, archive)

    assert _stored(database, app_id).status is FunctionAppStatus.Error


# ------------------------------------------------------------------
# Upload
# ------------------------------------------------------------------


def test_corrupt_archive_marks_error(orchestrator, database):
    app_id = orchestrator.register("hello")

    with pytest.raises(CorruptArchiveError):
        orchestrator.upload_code(app_id, b"garbage")

    assert _stored(database, app_id).status is FunctionAppStatus.Error


def test_build_failure_marks_error(orchestrator, database, fake_builder, app_archive):
    app_id = orchestrator.register("hello")
    fake_builder.build_error = BuildFailedError("hello", "cargo exploded")

    with pytest.raises(BuildFailedError):
        orchestrator.upload_code(app_id, app_archive)

    assert _stored(database, app_id).status is FunctionAppStatus.Error


def test_upload_recovers_from_error(orchestrator, database, fake_builder, app_archive):
    app_id = orchestrator.register("hello")
    fake_builder.build_error = BuildFailedError("hello", "cargo exploded")
    with pytest.raises(BuildFailedError):
        orchestrator.upload_code(app_id, app_archive)

    fake_builder.build_error = None
    orchestrator.upload_code(app_id, app_archive)

    assert _stored(database, app_id).status is FunctionAppStatus.Ready


def test_upload_unknown_id_is_not_found(orchestrator, app_archive):
    with pytest.raises(FunctionAppNotFoundError):
        orchestrator.upload_code(uuid.uuid4(), app_archive)


def test_upload_while_running_is_rejected(orchestrator, database, fake_builder, app_archive):
    app_id = orchestrator.register("hello")
    orchestrator.upload_code(app_id, app_archive)
    port = orchestrator.start(app_id).app.port

    with pytest.raises(UploadNotAllowedError):
        orchestrator.upload_code(app_id, app_archive)

    stored = _stored(database, app_id)
    assert stored.status is FunctionAppStatus.Running
    assert stored.port == port
    assert len(fake_builder.builds) == 1


def test_upload_after_container_stopped_is_allowed(orchestrator, fake_builder, app_archive):
    app_id = orchestrator.register("hello")
    orchestrator.upload_code(app_id, app_archive)
    orchestrator.start(app_id)
    fake_builder.stop("hello")

    orchestrator.upload_code(app_id, app_archive)

    assert orchestrator.status(app_id).status is FunctionAppStatus.Ready


def test_stale_building_status_is_rebuilt(orchestrator, database, app_archive):
    app_id = orchestrator.register("hello")
    _force_status(database, app_id, FunctionAppStatus.Building)

    orchestrator.upload_code(app_id, app_archive)

    assert _stored(database, app_id).status is FunctionAppStatus.Ready


def test_error_write_failure_keeps_original_exception(
    orchestrator, database, fake_builder, app_archive, monkeypatch
):
    app_id = orchestrator.register("hello")
    fake_builder.build_error = BuildFailedError("hello", "cargo exploded")
    original_set_status = RegistryStore.set_status

    def flaky_set_status(self, target_id, status):
        if status is FunctionAppStatus.Error:
            raise RuntimeError("database is locked")
        return original_set_status(self, target_id, status)

    monkeypatch.setattr(RegistryStore, "set_status", flaky_set_status)

    with pytest.raises(BuildFailedError):
        orchestrator.upload_code(app_id, app_archive)

    assert _stored(database, app_id).status is FunctionAppStatus.Building


def test_uploads_for_one_app_are_serialized(orchestrator, fake_builder, app_archive):
    app_id = orchestrator.register("hello")
    active = []
    overlaps = []

    def slow_build(app_name):
        active.append(app_name)
        if len(active) > 1:
            overlaps.append(list(active))
        time.sleep(0.05)
        active.remove(app_name)

    fake_builder.build_hook = slow_build
    threads = [
        threading.Thread(target=orchestrator.upload_code, args=(app_id, app_archive))
        for _ in range(3)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert overlaps == []
    assert len(fake_builder.builds) == 3


def test_uploads_for_different_apps_run_in_parallel(orchestrator, fake_builder, app_archive):
    first = orchestrator.register("first")
    second = orchestrator.register("second")
    # Both builds must be in flight at once for the barrier to release.
    barrier = threading.Barrier(2, timeout=5)
    fake_builder.build_hook = lambda app_name: barrier.wait()

    threads = [
        threading.Thread(target=orchestrator.upload_code, args=(app_id, app_archive))
        for app_id in (first, second)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert orchestrator.status(first).status is FunctionAppStatus.Ready
    assert orchestrator.status(second).status is FunctionAppStatus.Ready


# ------------------------------------------------------------------
# Start
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    "status, reason",
    [
        (FunctionAppStatus.Registered, "it doesn't have any code yet"),
        (FunctionAppStatus.Error, "it is in an error state"),
    ],
)
def test_start_rejected_statuses(orchestrator, database, fake_builder, status, reason):
    app_id = orchestrator.register("hello")
    if status is not FunctionAppStatus.Registered:
        _force_status(database, app_id, status)

    with pytest.raises(NotStartableError) as excinfo:
        orchestrator.start(app_id)

    assert str(excinfo.value) == f"Cannot start function app, {reason}"
    assert _stored(database, app_id).status is status
    assert fake_builder.running == {}


def test_start_unknown_id_is_not_startable(orchestrator):
    with pytest.raises(NotStartableError) as excinfo:
        orchestrator.start(uuid.uuid4())

    assert excinfo.value.current is FunctionAppStatus.NotRegistered
    assert str(excinfo.value) == "Cannot start function app, it doesn't exist"


def test_launch_failure_leaves_status_and_releases_port(
    orchestrator, database, fake_builder, port_allocator, app_archive
):
    app_id = orchestrator.register("hello")
    orchestrator.upload_code(app_id, app_archive)
    fake_builder.run_error = LaunchFailedError("hello", "port is already allocated")

    with pytest.raises(LaunchFailedError):
        orchestrator.start(app_id)

    stored = _stored(database, app_id)
    assert stored.status is FunctionAppStatus.Ready
    assert stored.port == 0
    assert port_allocator.reserved == set()


def test_start_records_port_chosen_by_runtime(
    orchestrator, fake_builder, port_allocator, app_archive
):
    app_id = orchestrator.register("hello")
    orchestrator.upload_code(app_id, app_archive)
    fake_builder.bound_port = 40404

    result = orchestrator.start(app_id)

    assert result.app.port == 40404
    assert orchestrator.status(app_id).port == 40404
    assert port_allocator.reserved == {40404}


def test_running_apps_get_distinct_ports(orchestrator, app_archive):
    ports = set()
    for name in ("one", "two", "three"):
        app_id = orchestrator.register(name)
        orchestrator.upload_code(app_id, app_archive)
        ports.add(orchestrator.start(app_id).app.port)

    assert len(ports) == 3


# ------------------------------------------------------------------
# Status and reads
# ------------------------------------------------------------------


def test_status_unknown_id_reports_not_registered(orchestrator):
    app_id = uuid.uuid4()

    result = orchestrator.status(app_id)

    assert result.id == app_id
    assert result.status is FunctionAppStatus.NotRegistered
    assert result.port == 0


def test_status_self_corrects_after_container_exit(orchestrator, fake_builder, app_archive):
    app_id = orchestrator.register("hello")
    orchestrator.upload_code(app_id, app_archive)
    orchestrator.start(app_id)
    fake_builder.stop("hello")

    first = orchestrator.status(app_id)
    second = orchestrator.status(app_id)

    assert first.status is FunctionAppStatus.Ready
    assert first.port == 0
    assert second == first

    restarted = orchestrator.start(app_id)
    assert restarted.already_running is False


def test_list_apps_returns_summaries(orchestrator):
    orchestrator.register("one")
    orchestrator.register("two")

    apps = orchestrator.list_apps()

    assert sorted(app.name for app in apps) == ["one", "two"]
    assert all(app.status is FunctionAppStatus.Registered for app in apps)
    assert "port" not in apps[0].model_dump()


def test_get_id_unknown_name_is_not_found(orchestrator):
    with pytest.raises(FunctionAppNotFoundError):
        orchestrator.get_id("missing")


def test_seed_reserved_ports(orchestrator, database, port_allocator):
    app_id = orchestrator.register("hello")
    with database.session_scope() as store:
        store.set_running(app_id, 31234)

    assert orchestrator.seed_reserved_ports() == 1
    assert port_allocator.is_reserved(31234)


def test_status_check_racing_a_restart_keeps_the_new_port(
    orchestrator, database, fake_builder, port_allocator, app_archive
):
    app_id = orchestrator.register("hello")
    orchestrator.upload_code(app_id, app_archive)
    old_port = orchestrator.start(app_id).app.port
    fake_builder.stop("hello")

    # The status check sees the container down, then stalls before writing.
    checking = threading.Event()
    resume = threading.Event()
    original_is_running = fake_builder.is_running

    def stalled_is_running(app_name):
        result = original_is_running(app_name)
        if threading.current_thread().name == "status-check" and not checking.is_set():
            checking.set()
            resume.wait(timeout=5)
        return result

    fake_builder.is_running = stalled_is_running
    results = []
    checker = threading.Thread(
        target=lambda: results.append(orchestrator.status(app_id)), name="status-check"
    )
    checker.start()
    assert checking.wait(timeout=5)

    # Start reconciles Running(old) -> Ready, then launches on a fresh port.
    new_port = orchestrator.start(app_id).app.port
    resume.set()
    checker.join(timeout=5)

    assert new_port != old_port
    stored = _stored(database, app_id)
    assert stored.status is FunctionAppStatus.Running
    assert stored.port == new_port
    [late] = results
    assert late.status is FunctionAppStatus.Running
    assert late.port == new_port
    assert port_allocator.is_reserved(new_port)
    assert fake_builder.running == {"hello": new_port}


# ------------------------------------------------------------------
# Per-app locks
# ------------------------------------------------------------------


def test_unknown_ids_do_not_allocate_locks(orchestrator, app_archive):
    for _ in range(50):
        with pytest.raises(FunctionAppNotFoundError):
            orchestrator.upload_code(uuid.uuid4(), app_archive)
        with pytest.raises(NotStartableError):
            orchestrator.start(uuid.uuid4())

    assert orchestrator.locks == {}


def test_registered_app_reuses_one_lock(orchestrator, app_archive):
    app_id = orchestrator.register("hello")

    orchestrator.upload_code(app_id, app_archive)
    lock = orchestrator.locks[app_id]
    orchestrator.start(app_id)

    assert list(orchestrator.locks) == [app_id]
    assert orchestrator.locks[app_id] is lock
