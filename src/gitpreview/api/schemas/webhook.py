"""Push webhook schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class PushRepository(BaseModel):
    """Repository block of a push payload."""

    clone_url: str


class PushPayload(BaseModel):
    """Subset of a GitHub-style push event."""

    ref: str
    repository: PushRepository


class WebhookResponse(BaseModel):
    """What the webhook did with the pushed branch."""

    action: Literal["registered", "updated", "ignored"]
    project_id: str = ""
    path: str = ""
