"""Push webhook route."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from gitpreview.api.deps import get_git_source, get_registry, get_settings
from gitpreview.api.routes.common import http_error
from gitpreview.api.schemas.webhook import PushPayload, WebhookResponse
from gitpreview.config import Settings
from gitpreview.core.git_source import GitSource
from gitpreview.core.project_registry import ProjectRegistry
from gitpreview.errors import DuplicateProjectError, PreviewError

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "refs/heads/"

router = APIRouter(prefix="/api/v1/webhook", tags=["webhook"])


@router.post("", response_model=WebhookResponse)
async def receive_push(
    payload: PushPayload,
    registry: ProjectRegistry = Depends(get_registry),
    git_source: GitSource = Depends(get_git_source),
    settings: Settings = Depends(get_settings),
) -> WebhookResponse:
    """Refresh the pushed branch's checkout and register it if it is new.

    Existing registrations keep their stack profile; nothing is re-classified.
    """
    if not payload.ref.startswith(BRANCH_PREFIX):
        logger.info("Ignoring push to non-branch ref %s", payload.ref)
        return WebhookResponse(action="ignored")

    branch = payload.ref.removeprefix(BRANCH_PREFIX)
    try:
        path = await git_source.acquire(
            payload.repository.clone_url, branch, settings.workspace_dir
        )
    except PreviewError as exc:
        raise http_error(exc) from exc

    try:
        await registry.register(branch, path, payload.repository.clone_url)
    except DuplicateProjectError:
        return WebhookResponse(action="updated", project_id=branch, path=str(path))
    return WebhookResponse(action="registered", project_id=branch, path=str(path))
