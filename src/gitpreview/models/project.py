"""Project domain models."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class StackKind(str, Enum):
    """Technology stacks the classifier can report."""

    NEXTJS = "nextjs"
    VITE = "vite"
    REACT = "react"
    VUE = "vue"
    ANGULAR = "angular"
    EXPRESS = "express"
    NODE = "node"
    FLASK = "flask"
    DJANGO = "django"
    FASTAPI = "fastapi"
    PYTHON_GENERIC = "python-generic"
    JAVA_MAVEN = "java-maven"
    JAVA_GRADLE = "java-gradle"
    STATIC = "static"
    UNKNOWN = "unknown"


class StackProfile(BaseModel):
    """How to install and serve a detected stack."""

    model_config = ConfigDict(frozen=True)

    kind: StackKind
    label: str
    install_command: str = ""
    run_command: str = ""
    default_port: int = Field(default=0, ge=0, le=65535)

    @property
    def runnable(self) -> bool:
        return self.kind is not StackKind.UNKNOWN and bool(self.run_command)


class ProjectStatus(str, Enum):
    """Lifecycle status for a registered project."""

    STOPPED = "stopped"
    INSTALLING = "installing"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


ACTIVE_STATUSES = frozenset(
    {ProjectStatus.INSTALLING, ProjectStatus.STARTING, ProjectStatus.RUNNING}
)


class ProjectRecord(BaseModel):
    """Registered source tree and its preview state."""

    id: str = Field(min_length=1)
    source_path: Path
    origin_url: str = ""
    stack_profile: StackProfile
    status: ProjectStatus = ProjectStatus.STOPPED
    assigned_port: int = 0
    preview_url: str = ""
    last_error: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def running(self) -> bool:
        return self.status is ProjectStatus.RUNNING

    def touch(self) -> None:
        """Update mutation timestamp."""
        self.updated_at = datetime.now(UTC)
