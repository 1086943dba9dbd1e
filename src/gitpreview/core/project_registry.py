"""Project lifecycle management."""

from __future__ import annotations

import asyncio
import logging
import os
import stat
from collections.abc import Callable
from pathlib import Path
from typing import Any

from gitpreview.core.port_allocator import PortAllocator
from gitpreview.core.process_supervisor import LogRead, ProcessSupervisor, ServerHandle
from gitpreview.core.stack_classifier import StackClassifier
from gitpreview.db.store import ProjectStore
from gitpreview.errors import (
    AlreadyRunningError,
    ClassificationUnknownError,
    DuplicateProjectError,
    FilesystemError,
    InstallFailedError,
    ProjectNotFoundError,
    StartupFailedError,
)
from gitpreview.models.events import EventType, ProjectEvent
from gitpreview.models.project import (
    ACTIVE_STATUSES,
    ProjectRecord,
    ProjectStatus,
    StackProfile,
)

logger = logging.getLogger(__name__)


class ProjectRegistry:
    """Register source trees and drive their dev servers through the status machine.

    ``stopped -> [installing ->] starting -> running``; install or startup
    failures land in ``error``; ``stop`` returns any state to ``stopped``.

    Only the short check-and-transition sections hold the registry lock.
    Installs, the startup grace window and tree removal run outside it, so
    different projects never wait on each other. A run in flight is owned by
    a launch task; ``stop`` supersedes it by bumping the project's attempt
    counter and cancelling the task, and the launch releases its own port.
    """

    def __init__(
        self,
        store: ProjectStore,
        *,
        classifier: StackClassifier | None = None,
        ports: PortAllocator | None = None,
        supervisor: ProcessSupervisor | None = None,
        preview_host: str = "localhost",
    ) -> None:
        self._store = store
        self._classifier = classifier or StackClassifier()
        self._ports = ports or PortAllocator()
        self._supervisor = supervisor or ProcessSupervisor()
        self._preview_host = preview_host
        self._records: dict[str, ProjectRecord] = {}
        self._handles: dict[str, ServerHandle] = {}
        self._launches: dict[str, asyncio.Task[ServerHandle]] = {}
        self._attempts: dict[str, int] = {}
        self._deleting: set[str] = set()
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        """Hydrate records from the store.

        Records persisted as running are not checked against real processes.
        """
        records = await self._store.find_all()
        async with self._lock:
            for record in records:
                self._records.setdefault(record.id, record)

    async def register(self, project_id: str, path: Path, origin_url: str = "") -> ProjectRecord:
        async with self._lock:
            self._require_unregistered(project_id)
        source_path = Path(path).expanduser().resolve()
        # Manifest reads happen off the loop and outside the lock.
        profile = await asyncio.to_thread(self._classifier.classify, source_path)

        async with self._lock:
            self._require_unregistered(project_id)
            record = ProjectRecord(
                id=project_id,
                source_path=source_path,
                origin_url=origin_url,
                stack_profile=profile,
            )
            await self._commit(
                record,
                EventType.PROJECT_REGISTERED,
                {"stack": profile.kind.value, "path": str(source_path)},
            )
        logger.info("Registered %s at %s as %s", project_id, source_path, profile.label)
        return record.model_copy(deep=True)

    async def get(self, project_id: str) -> ProjectRecord:
        async with self._lock:
            return self._require(project_id).model_copy(deep=True)

    async def list(self) -> list[ProjectRecord]:
        async with self._lock:
            return [
                record.model_copy(deep=True)
                for record_id, record in self._records.items()
                if record_id not in self._deleting
            ]

    async def run(self, project_id: str) -> ProjectRecord:
        """Install dependencies if needed and start the dev server.

        Install and startup failures are recorded on the returned record
        (status ``error``) instead of being raised.

        Raises:
            ProjectNotFoundError: Unknown id.
            AlreadyRunningError: A launch is in flight or the server is up.
            ClassificationUnknownError: The stack has nothing to run.
            PortExhaustionError: No free port.
        """
        async with self._lock:
            record = self._require(project_id)
            if record.status in ACTIVE_STATUSES:
                msg = f"Project {project_id} is already {record.status.value}"
                raise AlreadyRunningError(msg)
            profile = record.stack_profile
            if not profile.runnable:
                msg = f"Project {project_id} has no runnable stack ({profile.label})"
                raise ClassificationUnknownError(msg)

            port = self._ports.allocate(profile.default_port)
            attempt = self._supersede(project_id)
            if profile.install_command:
                pending = _transition(record, status=ProjectStatus.INSTALLING, last_error="")
                event_type = EventType.PROJECT_INSTALLING
            else:
                pending = _transition(
                    record, status=ProjectStatus.STARTING, assigned_port=port, last_error=""
                )
                event_type = EventType.PROJECT_STARTING
            try:
                await self._commit(pending, event_type, {"port": port})
            except Exception:
                self._ports.release(port)
                raise
            task = asyncio.create_task(self._launch(project_id, attempt, pending, port))
            self._launches[project_id] = task

        try:
            handle = await task
        except asyncio.CancelledError:
            self._ports.release(port)
            if self._is_current(project_id, attempt):
                await self._settle(project_id, attempt, status=ProjectStatus.STOPPED)
                raise
            return await self._current_or_missing(project_id)
        except (InstallFailedError, StartupFailedError) as exc:
            return await self._fail(project_id, attempt, port, exc)
        except Exception as exc:
            await self._fail(project_id, attempt, port, exc)
            raise
        finally:
            if self._launches.get(project_id) is task:
                del self._launches[project_id]
        return await self._promote(project_id, attempt, port, handle)

    async def stop(self, project_id: str) -> ProjectRecord:
        async with self._lock:
            self._require(project_id)
        return await self._stop(project_id)

    async def delete(self, project_id: str) -> bool:
        """Stop the project, remove its tree and forget it.

        Returns ``False`` when some entries of the tree could not be removed;
        the record is dropped either way.
        """
        async with self._lock:
            self._require(project_id)
            self._deleting.add(project_id)

        try:
            await self._stop(project_id)
            async with self._lock:
                record = self._records.pop(project_id)
                self._attempts.pop(project_id, None)

            removed = True
            try:
                await asyncio.to_thread(remove_tree, record.source_path)
            except FilesystemError as exc:
                logger.warning("Project %s deleted with leftovers: %s", project_id, exc)
                removed = False
            await self._store.delete_by_id(project_id)
            await self._store.append_event(
                ProjectEvent(
                    project_id=project_id,
                    event_type=EventType.PROJECT_DELETED,
                    payload={"tree_removed": removed},
                )
            )
        finally:
            async with self._lock:
                self._deleting.discard(project_id)
        logger.info("Deleted project %s", project_id)
        return removed

    async def logs(
        self, project_id: str, *, cursor: int | None = None, limit: int | None = None
    ) -> LogRead:
        async with self._lock:
            self._require(project_id)
            handle = self._handles.get(project_id)
        if handle is None:
            return LogRead(
                logs=[], cursor=0, start_cursor=0, end_cursor=0, truncated=False, has_more=False
            )
        return handle.read_logs(cursor=cursor, limit=limit)

    async def events(self, project_id: str) -> list[ProjectEvent]:
        """Lifecycle events for ``project_id``, kept after the project is deleted.

        Raises:
            ProjectNotFoundError: The id was never registered.
        """
        events = await self._store.list_events(project_id=project_id)
        if not events:
            msg = f"Project not found: {project_id}"
            raise ProjectNotFoundError(msg)
        return events

    async def shutdown(self) -> None:
        """Stop every project with a live server or a launch in flight."""
        async with self._lock:
            active = sorted(set(self._handles) | set(self._launches))
        for project_id in active:
            await self._stop(project_id)

    async def _stop(self, project_id: str) -> ProjectRecord:
        async with self._lock:
            record = self._records.get(project_id)
            if record is None:
                msg = f"Project not found: {project_id}"
                raise ProjectNotFoundError(msg)
            launch = self._launches.get(project_id)
            handle = self._handles.pop(project_id, None)
            if record.status is ProjectStatus.STOPPED and launch is None and handle is None:
                return record.model_copy(deep=True)

            self._supersede(project_id)
            # An in-flight launch owns its port and releases it itself.
            port_to_release = record.assigned_port if launch is None else 0
            stopped = _transition(
                record,
                status=ProjectStatus.STOPPED,
                assigned_port=0,
                preview_url="",
                last_error="",
            )
            await self._commit(stopped, EventType.PROJECT_STOPPED, {"from": record.status.value})

        if launch is not None:
            launch.cancel()
            await asyncio.wait({launch})
        if handle is not None:
            await asyncio.to_thread(self._supervisor.terminate, handle)
        self._ports.release(port_to_release)
        return stopped.model_copy(deep=True)

    async def _launch(
        self, project_id: str, attempt: int, record: ProjectRecord, port: int
    ) -> ServerHandle:
        profile: StackProfile = record.stack_profile
        if profile.install_command:
            await self._supervisor.run_install(record.source_path, profile.install_command)
            async with self._lock:
                current = self._records.get(project_id)
                if current is not None and self._is_current(project_id, attempt):
                    starting = _transition(
                        current, status=ProjectStatus.STARTING, assigned_port=port
                    )
                    await self._commit(starting, EventType.PROJECT_STARTING, {"port": port})
        return await self._supervisor.start_server(record.source_path, profile.run_command, port)

    async def _promote(
        self, project_id: str, attempt: int, port: int, handle: ServerHandle
    ) -> ProjectRecord:
        async with self._lock:
            record = self._records.get(project_id)
            if record is not None and self._is_current(project_id, attempt):
                running = _transition(
                    record,
                    status=ProjectStatus.RUNNING,
                    assigned_port=port,
                    preview_url=f"http://{self._preview_host}:{port}",
                    last_error="",
                )
                await self._commit(
                    running, EventType.PROJECT_RUNNING, {"port": port, "pid": handle.pid}
                )
                self._handles[project_id] = handle
                return running.model_copy(deep=True)

        # Stopped between server start and promotion.
        await asyncio.to_thread(self._supervisor.terminate, handle)
        self._ports.release(port)
        return await self._current_or_missing(project_id)

    async def _fail(
        self, project_id: str, attempt: int, port: int, exc: Exception
    ) -> ProjectRecord:
        self._ports.release(port)
        detail = str(exc) or exc.__class__.__name__
        logger.warning("Run of %s failed: %s", project_id, detail)
        output = getattr(exc, "output", "")
        if output:
            logger.debug("Output of failed run for %s:\n%s", project_id, output)
        failed = await self._settle(
            project_id,
            attempt,
            status=ProjectStatus.ERROR,
            last_error=detail,
            payload={"error": detail, "exit_code": getattr(exc, "exit_code", None)},
        )
        if failed is None:
            return await self._current_or_missing(project_id)
        return failed

    async def _settle(
        self,
        project_id: str,
        attempt: int,
        *,
        status: ProjectStatus,
        last_error: str = "",
        payload: dict[str, Any] | None = None,
    ) -> ProjectRecord | None:
        async with self._lock:
            record = self._records.get(project_id)
            if record is None or not self._is_current(project_id, attempt):
                return None
            settled = _transition(
                record, status=status, assigned_port=0, preview_url="", last_error=last_error
            )
            event_type = (
                EventType.PROJECT_FAILED
                if status is ProjectStatus.ERROR
                else EventType.PROJECT_STOPPED
            )
            await self._commit(settled, event_type, payload)
            return settled.model_copy(deep=True)

    async def _current_or_missing(self, project_id: str) -> ProjectRecord:
        async with self._lock:
            record = self._records.get(project_id)
            if record is None:
                msg = f"Project not found: {project_id}"
                raise ProjectNotFoundError(msg)
            return record.model_copy(deep=True)

    async def _commit(
        self,
        record: ProjectRecord,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
    ) -> None:
        record.touch()
        await self._store.save(record)
        self._records[record.id] = record
        await self._store.append_event(
            ProjectEvent(project_id=record.id, event_type=event_type, payload=payload or {})
        )
        logger.info("Project %s is now %s", record.id, record.status.value)

    def _require_unregistered(self, project_id: str) -> None:
        if project_id in self._records or project_id in self._deleting:
            msg = f"Project already registered: {project_id}"
            raise DuplicateProjectError(msg)

    def _require(self, project_id: str) -> ProjectRecord:
        record = self._records.get(project_id)
        if record is None or project_id in self._deleting:
            msg = f"Project not found: {project_id}"
            raise ProjectNotFoundError(msg)
        return record

    def _supersede(self, project_id: str) -> int:
        attempt = self._attempts.get(project_id, 0) + 1
        self._attempts[project_id] = attempt
        return attempt

    def _is_current(self, project_id: str, attempt: int) -> bool:
        return self._attempts.get(project_id) == attempt


def _transition(record: ProjectRecord, **changes: Any) -> ProjectRecord:
    return record.model_copy(update=changes, deep=True)


def remove_tree(root: Path) -> None:
    """Delete ``root`` bottom-up, continuing past entries that cannot be removed.

    Raises:
        FilesystemError: If anything is left behind.
    """
    if root.is_symlink() or root.is_file():
        _remove_entry(root, os.unlink)
    elif root.is_dir():
        for dirpath, dirnames, filenames in os.walk(root, topdown=False):
            base = Path(dirpath)
            for name in filenames:
                _remove_entry(base / name, os.unlink)
            for name in dirnames:
                entry = base / name
                _remove_entry(entry, os.unlink if entry.is_symlink() else os.rmdir)
        _remove_entry(root, os.rmdir)

    if root.exists() or root.is_symlink():
        msg = f"Could not fully remove {root}"
        raise FilesystemError(msg)


def _remove_entry(path: Path, remove: Callable[[Path], None]) -> None:
    try:
        remove(path)
    except FileNotFoundError:
        return
    except PermissionError:
        # Read-only entries (git pack files on Windows) need write permission first.
        try:
            os.chmod(path, stat.S_IWRITE | stat.S_IREAD)
            remove(path)
        except OSError as exc:
            logger.warning("Could not remove %s: %s", path, exc)
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)
