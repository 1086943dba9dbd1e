"""Project routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from gitpreview.api.deps import get_git_source, get_registry, get_settings
from gitpreview.api.routes.common import http_error
from gitpreview.api.schemas.projects import (
    CloneProjectRequest,
    DeleteResponse,
    EventsResponse,
    LogsResponse,
    ProjectResponse,
    ProjectsResponse,
    ProjectStatusResponse,
    RegisterProjectRequest,
    RunResponse,
    StopResponse,
)
from gitpreview.config import Settings
from gitpreview.core.git_source import GitSource
from gitpreview.core.project_registry import ProjectRegistry
from gitpreview.errors import PreviewError
from gitpreview.models.project import ProjectStatus

router = APIRouter(prefix="/api/v1/projects", tags=["projects"])


@router.get("", response_model=ProjectsResponse)
async def list_projects(registry: ProjectRegistry = Depends(get_registry)) -> ProjectsResponse:
    return ProjectsResponse(items=await registry.list())


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ProjectResponse)
async def register_project(
    request: RegisterProjectRequest,
    registry: ProjectRegistry = Depends(get_registry),
) -> ProjectResponse:
    try:
        project = await registry.register(request.id, request.path, request.origin_url)
    except PreviewError as exc:
        raise http_error(exc) from exc
    return ProjectResponse(project=project)


@router.post("/clone", status_code=status.HTTP_201_CREATED, response_model=ProjectResponse)
async def clone_project(
    request: CloneProjectRequest,
    registry: ProjectRegistry = Depends(get_registry),
    git_source: GitSource = Depends(get_git_source),
    settings: Settings = Depends(get_settings),
) -> ProjectResponse:
    base_dir = request.base_dir or settings.workspace_dir
    try:
        path = await git_source.acquire(request.repo_url, request.branch, base_dir)
        project = await registry.register(request.branch, path, request.repo_url)
    except PreviewError as exc:
        raise http_error(exc) from exc
    return ProjectResponse(project=project)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str, registry: ProjectRegistry = Depends(get_registry)
) -> ProjectResponse:
    try:
        project = await registry.get(project_id)
    except PreviewError as exc:
        raise http_error(exc) from exc
    return ProjectResponse(project=project)


@router.get("/{project_id}/status", response_model=ProjectStatusResponse)
async def get_project_status(
    project_id: str, registry: ProjectRegistry = Depends(get_registry)
) -> ProjectStatusResponse:
    try:
        project = await registry.get(project_id)
    except PreviewError as exc:
        raise http_error(exc) from exc
    return ProjectStatusResponse(
        id=project.id,
        running=project.running,
        status=project.status,
        preview_url=project.preview_url,
        port=project.assigned_port,
        stack_profile=project.stack_profile,
        last_error=project.last_error,
    )


@router.post("/{project_id}/run", response_model=RunResponse)
async def run_project(
    project_id: str, registry: ProjectRegistry = Depends(get_registry)
) -> RunResponse:
    try:
        project = await registry.run(project_id)
    except PreviewError as exc:
        raise http_error(exc) from exc
    return RunResponse(
        success=project.status is ProjectStatus.RUNNING,
        project=project,
        preview_url=project.preview_url,
        port=project.assigned_port,
        error=project.last_error,
    )


@router.post("/{project_id}/stop", response_model=StopResponse)
async def stop_project(
    project_id: str, registry: ProjectRegistry = Depends(get_registry)
) -> StopResponse:
    try:
        project = await registry.stop(project_id)
    except PreviewError as exc:
        raise http_error(exc) from exc
    return StopResponse(success=True, project=project)


@router.delete("/{project_id}", response_model=DeleteResponse)
async def delete_project(
    project_id: str, registry: ProjectRegistry = Depends(get_registry)
) -> DeleteResponse:
    try:
        deleted = await registry.delete(project_id)
    except PreviewError as exc:
        raise http_error(exc) from exc
    return DeleteResponse(deleted=deleted)


@router.get("/{project_id}/logs", response_model=LogsResponse)
async def project_logs(
    project_id: str,
    cursor: int | None = None,
    limit: int | None = None,
    registry: ProjectRegistry = Depends(get_registry),
) -> LogsResponse:
    try:
        log_read = await registry.logs(project_id, cursor=cursor, limit=limit)
    except PreviewError as exc:
        raise http_error(exc) from exc
    return LogsResponse(
        logs=log_read.logs,
        cursor=log_read.cursor,
        start_cursor=log_read.start_cursor,
        end_cursor=log_read.end_cursor,
        truncated=log_read.truncated,
        has_more=log_read.has_more,
    )


@router.get("/{project_id}/events", response_model=EventsResponse)
async def project_events(
    project_id: str, registry: ProjectRegistry = Depends(get_registry)
) -> EventsResponse:
    try:
        events = await registry.events(project_id)
    except PreviewError as exc:
        raise http_error(exc) from exc
    return EventsResponse(items=events)
