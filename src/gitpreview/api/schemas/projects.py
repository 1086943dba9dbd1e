"""Project API schemas."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

from gitpreview.models.events import ProjectEvent
from gitpreview.models.project import ProjectRecord, ProjectStatus, StackProfile


class RegisterProjectRequest(BaseModel):
    """Payload for registering an existing checkout."""

    id: str = Field(min_length=1)
    path: Path
    origin_url: str = ""


class CloneProjectRequest(BaseModel):
    """Payload for cloning a branch and registering it under the branch name."""

    repo_url: str = Field(min_length=1)
    branch: str = Field(min_length=1)
    base_dir: Path | None = None


class ProjectResponse(BaseModel):
    """Single project response."""

    project: ProjectRecord


class ProjectsResponse(BaseModel):
    """Collection response for projects."""

    items: list[ProjectRecord]


class ProjectStatusResponse(BaseModel):
    """Flat status summary for polling clients."""

    id: str
    running: bool
    status: ProjectStatus
    preview_url: str
    port: int
    stack_profile: StackProfile
    last_error: str


class RunResponse(BaseModel):
    """Outcome of a run request; failures keep the record inspectable."""

    success: bool
    project: ProjectRecord
    preview_url: str = ""
    port: int = 0
    error: str = ""


class StopResponse(BaseModel):
    """Outcome of a stop request."""

    success: bool
    project: ProjectRecord


class DeleteResponse(BaseModel):
    """Outcome of a delete request."""

    deleted: bool


class LogsResponse(BaseModel):
    """Dev server output page."""

    logs: list[str]
    cursor: int
    start_cursor: int
    end_cursor: int
    truncated: bool
    has_more: bool


class EventsResponse(BaseModel):
    """Lifecycle events for one project."""

    items: list[ProjectEvent]
