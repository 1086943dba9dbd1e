"""Install and dev-server subprocess supervision."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from gitpreview.errors import InstallFailedError, StartupFailedError

logger = logging.getLogger(__name__)

OUTPUT_TAIL_LINES = 20


@dataclass(slots=True)
class LogRead:
    """Server log read payload with cursor metadata."""

    logs: list[str]
    cursor: int
    start_cursor: int
    end_cursor: int
    truncated: bool
    has_more: bool


def bind_port(command: str, port: int) -> str:
    """Return ``command`` rewritten to listen on ``port`` where its syntax needs a flag.

    npm scripts, interpreters and JVM launchers read ``PORT`` or
    ``SERVER_PORT`` from the environment instead and are left untouched.
    """
    if "npm start" in command or "npm run dev" in command:
        return command
    if "flask run" in command or "uvicorn" in command or "ng serve" in command:
        return f"{command} --port {port}"
    if "manage.py runserver" in command:
        return f"{command} {port}"
    if "serve" in command:
        return f"{command} -p {port}"
    return command


def _session_kwargs() -> dict[str, Any]:
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _child_env(port: int | None = None) -> dict[str, str]:
    env = os.environ.copy()
    if port is not None:
        env["PORT"] = str(port)
        env["SERVER_PORT"] = str(port)
    return env


class ServerHandle:
    """Live dev-server process owned by the supervisor.

    Output is drained on a daemon thread into a bounded buffer so the pipe
    never fills up; it is kept for diagnostics only.
    """

    def __init__(
        self,
        process: subprocess.Popen[str],
        *,
        command: str,
        port: int,
        max_log_lines: int = 1000,
    ) -> None:
        self._process = process
        self.command = command
        self.port = port
        self._logs: deque[str] = deque(maxlen=max_log_lines)
        self._logs_lock = threading.Lock()
        self._lines_seen = 0
        self._reader_thread: threading.Thread | None = None

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.poll()

    def is_alive(self) -> bool:
        return self._process.poll() is None

    def wait(self, timeout: float) -> int:
        return self._process.wait(timeout=timeout)

    def kill(self) -> None:
        if self.is_alive():
            self._process.kill()

    def start_reader(self) -> None:
        reader = threading.Thread(target=self._drain_output, daemon=True)
        self._reader_thread = reader
        reader.start()

    def close(self) -> None:
        if self._reader_thread is not None and self._reader_thread.is_alive():
            self._reader_thread.join(timeout=1.0)
        self._reader_thread = None

    def tail(self, lines: int = OUTPUT_TAIL_LINES) -> str:
        with self._logs_lock:
            return "\n".join(list(self._logs)[-lines:])

    def read_logs(self, *, cursor: int | None = None, limit: int | None = None) -> LogRead:
        """Page through buffered output by absolute line number.

        Without a cursor the newest ``limit`` lines (or all of them) are
        returned. A cursor older than the buffer is moved up to its first
        line and the read is flagged ``truncated``.
        """
        with self._logs_lock:
            buffered = list(self._logs)
            total = self._lines_seen
        oldest = total - len(buffered)
        size = limit if limit is not None and limit > 0 else None

        if cursor is None:
            start = oldest if size is None else max(oldest, total - size)
        else:
            start = min(max(cursor, oldest), total)
        page = buffered[start - oldest :]
        if size is not None:
            page = page[:size]
        after = start + len(page)
        return LogRead(
            logs=page,
            cursor=after,
            start_cursor=start,
            end_cursor=total,
            truncated=cursor is not None and max(cursor, 0) < oldest,
            has_more=after < total,
        )

    def _drain_output(self) -> None:
        if self._process.stdout is None:
            return
        with self._process.stdout as stream:
            for raw in stream:
                with self._logs_lock:
                    self._logs.append(raw.rstrip("\n"))
                    self._lines_seen += 1


class ProcessSupervisor:
    """Run install commands and supervise dev servers through the platform shell."""

    def __init__(
        self,
        *,
        grace_seconds: float = 2.0,
        install_timeout_seconds: float | None = None,
        stop_timeout_seconds: float = 10.0,
        max_log_lines: int = 1000,
    ) -> None:
        self._grace_seconds = grace_seconds
        self._install_timeout_seconds = install_timeout_seconds
        self._stop_timeout_seconds = stop_timeout_seconds
        self._max_log_lines = max_log_lines

    async def run_install(self, path: Path, command: str) -> None:
        """Run ``command`` in ``path`` and wait for it to exit.

        Cancelling the caller kills the install process tree.
        """
        if not command.strip():
            return
        logger.info("Installing dependencies in %s: %s", path, command)
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=path,
                env=_child_env(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                **_session_kwargs(),
            )
        except OSError as exc:
            msg = f"Install command could not be started: {exc}"
            raise InstallFailedError(msg) from exc

        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), timeout=self._install_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            await self._kill_install(process)
            msg = f"Install command timed out after {self._install_timeout_seconds}s"
            raise InstallFailedError(msg) from exc
        except asyncio.CancelledError:
            await self._kill_install(process)
            raise

        output = _tail(stdout.decode("utf-8", errors="replace"))
        if process.returncode != 0:
            msg = f"Install command failed with exit code: {process.returncode}"
            raise InstallFailedError(msg, exit_code=process.returncode, output=output)

    async def start_server(self, path: Path, command: str, port: int) -> ServerHandle:
        """Launch the dev server and check it survives the grace window.

        Surviving the window does not prove the server is listening yet.
        """
        bound = bind_port(command, port)
        logger.info("Starting dev server in %s on port %s: %s", path, port, bound)
        try:
            process = subprocess.Popen(
                bound,
                shell=True,
                cwd=path,
                env=_child_env(port),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                bufsize=1,
                **_session_kwargs(),
            )
        except OSError as exc:
            msg = f"Dev server could not be started: {exc}"
            raise StartupFailedError(msg) from exc

        handle = ServerHandle(process, command=bound, port=port, max_log_lines=self._max_log_lines)
        handle.start_reader()
        try:
            await asyncio.sleep(self._grace_seconds)
        except asyncio.CancelledError:
            await asyncio.to_thread(self.terminate, handle)
            raise

        if not handle.is_alive():
            returncode = handle.returncode
            # The shell is gone but its group may still hold children.
            _kill_group(handle.pid)
            handle.close()
            msg = f"Dev server failed to start (exit code: {returncode})"
            raise StartupFailedError(msg, exit_code=returncode, output=handle.tail())
        return handle

    def terminate(self, handle: ServerHandle) -> None:
        """Kill the server and everything its shell spawned. Dead handles are a no-op."""
        if os.name == "nt":
            if handle.is_alive():
                _kill_group(handle.pid)
        else:
            _signal_group(handle.pid, signal.SIGTERM)

        if handle.is_alive():
            try:
                handle.wait(timeout=self._stop_timeout_seconds)
            except subprocess.TimeoutExpired:
                if os.name != "nt":
                    _signal_group(handle.pid, signal.SIGKILL)
                handle.kill()
                handle.wait(timeout=5)
        handle.close()
        logger.info("Terminated dev server pid %s on port %s", handle.pid, handle.port)

    async def _kill_install(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        if os.name != "nt":
            _signal_group(process.pid, signal.SIGKILL)
        else:
            process.kill()
        await process.wait()


def _kill_group(pid: int) -> None:
    if os.name == "nt":
        subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(pid)],
            capture_output=True,
            check=False,
        )
    else:
        _signal_group(pid, signal.SIGKILL)


def _signal_group(pid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def _tail(output: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    return "\n".join(output.strip().splitlines()[-lines:])
