"""Clone-or-pull source acquisition over the git CLI."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from gitpreview.errors import RefNotFoundError, SourceAcquisitionError

logger = logging.getLogger(__name__)

_MISSING_REF_PATTERNS = (
    re.compile(r"remote branch .+ not found", re.IGNORECASE),
    re.compile(r"couldn't find remote ref", re.IGNORECASE),
    re.compile(r"pathspec .+ did not match", re.IGNORECASE),
)


@dataclass(slots=True)
class GitResult:
    """Result from running a git command."""

    command: str
    output: str


def checkout_dir_name(ref: str) -> str:
    """Directory name for a ref; nested branch names are flattened."""
    name = ref.removeprefix("refs/heads/").strip("/").replace("/", "-")
    if not name or name in {".", ".."}:
        msg = f"Invalid ref: {ref!r}"
        raise SourceAcquisitionError(msg)
    return name


class GitSource:
    """Fetch a branch of a remote repository into a local working tree."""

    def __init__(self, git_executable: str = "git") -> None:
        self._git = git_executable

    async def acquire(self, remote_url: str, ref: str, base_dir: Path) -> Path:
        """Clone ``ref`` under ``base_dir``, or refresh the existing checkout.

        Raises:
            RefNotFoundError: ``ref`` does not exist upstream.
            SourceAcquisitionError: Any other git failure.
        """
        branch = ref.removeprefix("refs/heads/")
        target = base_dir / checkout_dir_name(ref)
        try:
            base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            msg = f"Failed to create base directory {base_dir}: {exc}"
            raise SourceAcquisitionError(msg) from exc

        if (target / ".git").exists():
            logger.info("Pulling branch %s in %s", branch, target)
            await self._run_git(target, "fetch", "origin", branch)
            await self._run_git(target, "checkout", branch)
            await self._run_git(target, "pull", "--ff-only", "origin", branch)
        else:
            logger.info("Cloning branch %s of %s into %s", branch, remote_url, target)
            await self._run_git(
                base_dir,
                "clone",
                "--branch",
                branch,
                "--single-branch",
                remote_url,
                str(target),
            )
        return target.resolve()

    async def _run_git(self, cwd: Path, *args: str) -> GitResult:
        command = [self._git, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            msg = f"{' '.join(command)} could not be started: {exc}"
            raise SourceAcquisitionError(msg) from exc
        stdout, stderr = await process.communicate()
        output = stdout.decode("utf-8", errors="replace") + stderr.decode("utf-8", errors="replace")
        if process.returncode != 0:
            msg = f"{' '.join(command)} failed: {output.strip()}"
            if any(pattern.search(output) for pattern in _MISSING_REF_PATTERNS):
                raise RefNotFoundError(msg)
            raise SourceAcquisitionError(msg)
        return GitResult(command=" ".join(command), output=output.strip())
