"""Lifecycle events recorded for registered projects."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Transitions worth keeping in the audit log."""

    PROJECT_REGISTERED = "project.registered"
    PROJECT_INSTALLING = "project.installing"
    PROJECT_STARTING = "project.starting"
    PROJECT_RUNNING = "project.running"
    PROJECT_FAILED = "project.failed"
    PROJECT_STOPPED = "project.stopped"
    PROJECT_DELETED = "project.deleted"


class ProjectEvent(BaseModel):
    """Append-only event emitted by the registry."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    project_id: str
    event_type: EventType
    payload: dict[str, str | int | float | bool | None] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
