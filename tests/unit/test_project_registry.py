from __future__ import annotations

import asyncio
import json
import threading
from pathlib import Path

import pytest

from gitpreview.core.port_allocator import PortAllocator
from gitpreview.core.project_registry import ProjectRegistry, remove_tree
from gitpreview.core.stack_classifier import StackClassifier
from gitpreview.db.store import MemoryStore
from gitpreview.errors import (
    AlreadyRunningError,
    ClassificationUnknownError,
    DuplicateProjectError,
    FilesystemError,
    ProjectNotFoundError,
)
from gitpreview.models.events import EventType
from gitpreview.models.project import ProjectRecord, ProjectStatus, StackKind, StackProfile
from tests.support.fakes import FakeSupervisor, FreePorts


def _registry(
    supervisor: FakeSupervisor | None = None,
    store: MemoryStore | None = None,
) -> tuple[ProjectRegistry, PortAllocator, FakeSupervisor]:
    ports = FreePorts()
    fake = supervisor or FakeSupervisor()
    registry = ProjectRegistry(
        store or MemoryStore(),
        ports=ports,
        supervisor=fake,  # type: ignore[arg-type]
    )
    return registry, ports, fake


def _static_site(root: Path, name: str = "site") -> Path:
    path = root / name
    path.mkdir(parents=True, exist_ok=True)
    (path / "index.html").write_text("<h1>hi</h1>\n", encoding="utf-8")
    return path


def _node_app(root: Path, dependencies: dict[str, str], name: str = "app") -> Path:
    path = root / name
    path.mkdir(parents=True, exist_ok=True)
    (path / "package.json").write_text(
        json.dumps({"name": name, "dependencies": dependencies}), encoding="utf-8"
    )
    return path


@pytest.mark.asyncio
async def test_register_static_site(tmp_path: Path) -> None:
    store = MemoryStore()
    registry, _, _ = _registry(store=store)

    record = await registry.register("main", _static_site(tmp_path), "https://example.com/r.git")

    assert record.stack_profile.kind is StackKind.STATIC
    assert record.status is ProjectStatus.STOPPED
    assert record.assigned_port == 0
    assert record.source_path.is_absolute()
    assert await store.find_by_id("main") is not None


class _GatedClassifier(StackClassifier):
    """Blocks classification of trees named ``slow`` until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def classify(self, path: Path) -> StackProfile:
        if path.name == "slow":
            self.entered.set()
            self.release.wait(timeout=5)
        return super().classify(path)


@pytest.mark.asyncio
async def test_slow_classification_does_not_block_other_projects(tmp_path: Path) -> None:
    classifier = _GatedClassifier()
    registry = ProjectRegistry(
        MemoryStore(),
        classifier=classifier,
        ports=FreePorts(),
        supervisor=FakeSupervisor(),  # type: ignore[arg-type]
    )
    pending = asyncio.create_task(registry.register("slow", _static_site(tmp_path, "slow")))
    assert await asyncio.to_thread(classifier.entered.wait, 5)

    other = await asyncio.wait_for(
        registry.register("other", _static_site(tmp_path, "other")), timeout=2
    )

    assert other.id == "other"
    assert [record.id for record in await registry.list()] == ["other"]
    classifier.release.set()
    slow = await pending
    assert slow.stack_profile.kind is StackKind.STATIC


@pytest.mark.asyncio
async def test_register_duplicate_leaves_state_unchanged(tmp_path: Path) -> None:
    registry, _, _ = _registry()
    first = await registry.register("main", _static_site(tmp_path))

    with pytest.raises(DuplicateProjectError):
        await registry.register("main", _node_app(tmp_path, {"next": "14.0.0"}))

    current = await registry.get("main")
    assert current.stack_profile == first.stack_profile
    assert current.source_path == first.source_path
    assert len(await registry.list()) == 1


@pytest.mark.asyncio
async def test_unknown_id_is_not_found_everywhere() -> None:
    registry, _, _ = _registry()

    with pytest.raises(ProjectNotFoundError):
        await registry.run("ghost")
    with pytest.raises(ProjectNotFoundError):
        await registry.stop("ghost")
    with pytest.raises(ProjectNotFoundError):
        await registry.delete("ghost")
    with pytest.raises(ProjectNotFoundError):
        await registry.get("ghost")
    with pytest.raises(ProjectNotFoundError):
        await registry.logs("ghost")
    with pytest.raises(ProjectNotFoundError):
        await registry.events("ghost")


@pytest.mark.asyncio
async def test_run_static_site_skips_install(tmp_path: Path) -> None:
    registry, ports, supervisor = _registry()
    await registry.register("main", _static_site(tmp_path))

    record = await registry.run("main")

    assert record.status is ProjectStatus.RUNNING
    assert record.assigned_port == 3000
    assert record.preview_url == "http://localhost:3000"
    assert record.last_error == ""
    assert supervisor.installs == []
    assert supervisor.starts == [("npx serve -s .", 3000)]
    assert ports.reserved() == frozenset({3000})


@pytest.mark.asyncio
async def test_nextjs_manifest_registers_ssr_profile(tmp_path: Path) -> None:
    registry, _, _ = _registry()

    record = await registry.register("feature", _node_app(tmp_path, {"next": "14.0.0"}))

    assert record.stack_profile.kind is StackKind.NEXTJS
    assert record.stack_profile.default_port == 3000


@pytest.mark.asyncio
async def test_install_failure_records_error_and_frees_port(tmp_path: Path) -> None:
    registry, ports, _ = _registry(FakeSupervisor(install_exit_code=1))
    await registry.register("broken", _node_app(tmp_path, {"express": "4.0.0"}))

    failed = await registry.run("broken")

    assert failed.status is ProjectStatus.ERROR
    assert "exit code: 1" in failed.last_error
    assert failed.assigned_port == 0
    assert failed.preview_url == ""
    assert ports.reserved() == frozenset()

    await registry.register("main", _static_site(tmp_path))
    running = await registry.run("main")
    assert running.assigned_port == 3000


@pytest.mark.asyncio
async def test_startup_failure_records_error(tmp_path: Path) -> None:
    registry, ports, _ = _registry(FakeSupervisor(start_fails=True))
    await registry.register("main", _static_site(tmp_path))

    failed = await registry.run("main")

    assert failed.status is ProjectStatus.ERROR
    assert failed.last_error.startswith("Dev server failed to start")
    assert ports.reserved() == frozenset()


@pytest.mark.asyncio
async def test_retry_after_error_clears_last_error(tmp_path: Path) -> None:
    supervisor = FakeSupervisor(start_fails=True)
    registry, _, _ = _registry(supervisor)
    await registry.register("main", _static_site(tmp_path))
    await registry.run("main")

    supervisor.start_fails = False
    retried = await registry.run("main")

    assert retried.status is ProjectStatus.RUNNING
    assert retried.last_error == ""


@pytest.mark.asyncio
async def test_run_running_project_is_rejected(tmp_path: Path) -> None:
    registry, _, supervisor = _registry()
    await registry.register("main", _static_site(tmp_path))
    running = await registry.run("main")

    with pytest.raises(AlreadyRunningError):
        await registry.run("main")

    assert await registry.get("main") == running
    assert len(supervisor.starts) == 1


@pytest.mark.asyncio
async def test_concurrent_runs_of_one_project_succeed_once(tmp_path: Path) -> None:
    registry, _, supervisor = _registry()
    await registry.register("main", _static_site(tmp_path))

    results = await asyncio.gather(
        registry.run("main"), registry.run("main"), return_exceptions=True
    )

    records = [result for result in results if isinstance(result, ProjectRecord)]
    errors = [result for result in results if isinstance(result, AlreadyRunningError)]
    assert len(records) == 1
    assert len(errors) == 1
    assert len(supervisor.starts) == 1


@pytest.mark.asyncio
async def test_concurrent_projects_get_distinct_ports(tmp_path: Path) -> None:
    registry, _, _ = _registry()
    for index in range(5):
        await registry.register(f"branch-{index}", _static_site(tmp_path, f"site-{index}"))

    records = await asyncio.gather(*(registry.run(f"branch-{index}") for index in range(5)))

    ports = [record.assigned_port for record in records]
    assert len(set(ports)) == 5
    assert all(port >= 3000 for port in ports)


@pytest.mark.asyncio
async def test_run_unknown_stack_is_refused_without_mutation(tmp_path: Path) -> None:
    registry, ports, supervisor = _registry()
    empty = tmp_path / "empty"
    empty.mkdir()
    await registry.register("empty", empty)

    with pytest.raises(ClassificationUnknownError):
        await registry.run("empty")

    assert (await registry.get("empty")).status is ProjectStatus.STOPPED
    assert ports.reserved() == frozenset()
    assert supervisor.starts == []


@pytest.mark.asyncio
async def test_stop_twice_is_harmless(tmp_path: Path) -> None:
    registry, ports, supervisor = _registry()
    await registry.register("main", _static_site(tmp_path))
    await registry.run("main")

    first = await registry.stop("main")
    second = await registry.stop("main")

    assert first.status is ProjectStatus.STOPPED
    assert second.status is ProjectStatus.STOPPED
    assert first.assigned_port == 0
    assert first.preview_url == ""
    assert len(supervisor.terminated) == 1
    assert supervisor.terminated[0].alive is False
    assert ports.reserved() == frozenset()


@pytest.mark.asyncio
async def test_stop_during_install_cancels_launch(tmp_path: Path) -> None:
    gate = asyncio.Event()
    registry, ports, supervisor = _registry(FakeSupervisor(install_gate=gate))
    await registry.register("main", _node_app(tmp_path, {"react": "18.0.0"}))

    run_task = asyncio.create_task(registry.run("main"))
    for _ in range(50):
        if (await registry.get("main")).status is ProjectStatus.INSTALLING:
            break
        await asyncio.sleep(0)
    assert (await registry.get("main")).status is ProjectStatus.INSTALLING

    stopped = await registry.stop("main")
    result = await run_task

    assert stopped.status is ProjectStatus.STOPPED
    assert result.status is ProjectStatus.STOPPED
    assert supervisor.starts == []
    assert ports.reserved() == frozenset()


@pytest.mark.asyncio
async def test_delete_running_project(tmp_path: Path) -> None:
    registry, ports, supervisor = _registry()
    site = _static_site(tmp_path)
    (site / "assets").mkdir()
    (site / "assets" / "app.css").write_text("body {}\n", encoding="utf-8")
    await registry.register("main", site)
    await registry.run("main")

    deleted = await registry.delete("main")

    assert deleted is True
    assert not site.exists()
    assert supervisor.terminated[0].alive is False
    assert ports.reserved() == frozenset()
    with pytest.raises(ProjectNotFoundError):
        await registry.get("main")


@pytest.mark.asyncio
async def test_delete_with_leftovers_reports_false(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    registry, _, _ = _registry()
    await registry.register("main", _static_site(tmp_path))

    def fake_remove_tree(root: Path) -> None:
        msg = f"Could not fully remove {root}"
        raise FilesystemError(msg)

    monkeypatch.setattr("gitpreview.core.project_registry.remove_tree", fake_remove_tree)

    assert await registry.delete("main") is False
    assert await registry.list() == []


@pytest.mark.asyncio
async def test_logs_follow_the_live_server(tmp_path: Path) -> None:
    registry, _, _ = _registry()
    await registry.register("main", _static_site(tmp_path))

    assert (await registry.logs("main")).logs == []
    await registry.run("main")
    assert (await registry.logs("main")).logs == ["ready"]
    await registry.stop("main")
    assert (await registry.logs("main")).logs == []


@pytest.mark.asyncio
async def test_lifecycle_events_are_recorded(tmp_path: Path) -> None:
    registry, _, _ = _registry()
    await registry.register("main", _static_site(tmp_path))
    await registry.run("main")
    await registry.stop("main")
    await registry.delete("main")

    events = await registry.events("main")

    assert [event.event_type for event in events] == [
        EventType.PROJECT_REGISTERED,
        EventType.PROJECT_STARTING,
        EventType.PROJECT_RUNNING,
        EventType.PROJECT_STOPPED,
        EventType.PROJECT_DELETED,
    ]


@pytest.mark.asyncio
async def test_load_restores_records_from_store(tmp_path: Path) -> None:
    store = MemoryStore()
    await store.save(
        ProjectRecord(
            id="main",
            source_path=tmp_path,
            stack_profile=StackProfile(kind=StackKind.UNKNOWN, label="Unknown"),
        )
    )
    registry, _, _ = _registry(store=store)

    await registry.load()

    assert [record.id for record in await registry.list()] == ["main"]


@pytest.mark.asyncio
async def test_shutdown_stops_live_servers(tmp_path: Path) -> None:
    registry, ports, supervisor = _registry()
    await registry.register("main", _static_site(tmp_path))
    await registry.run("main")

    await registry.shutdown()

    assert (await registry.get("main")).status is ProjectStatus.STOPPED
    assert supervisor.terminated[0].alive is False
    assert ports.reserved() == frozenset()


def test_remove_tree_handles_read_only_entries(tmp_path: Path) -> None:
    root = tmp_path / "checkout"
    (root / ".git" / "objects").mkdir(parents=True)
    packed = root / ".git" / "objects" / "pack"
    packed.write_text("data", encoding="utf-8")
    packed.chmod(0o444)
    (root / "README.md").write_text("demo\n", encoding="utf-8")

    remove_tree(root)

    assert not root.exists()


def test_remove_tree_missing_root_is_a_noop(tmp_path: Path) -> None:
    remove_tree(tmp_path / "never-created")
