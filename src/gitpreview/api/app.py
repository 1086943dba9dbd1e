"""FastAPI app entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from gitpreview.api.deps import build_registry
from gitpreview.api.routes.projects import router as projects_router
from gitpreview.api.routes.webhook import router as webhook_router
from gitpreview.config import Settings, configure_logging
from gitpreview.core.git_source import GitSource
from gitpreview.core.project_registry import ProjectRegistry


def create_app(
    settings: Settings | None = None,
    *,
    registry: ProjectRegistry | None = None,
    git_source: GitSource | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    registry = registry or build_registry(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await registry.load()
        try:
            yield
        finally:
            await registry.shutdown()

    app = FastAPI(title="gitpreview API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.git_source = git_source or GitSource()
    app.include_router(projects_router)
    app.include_router(webhook_router)

    @app.get("/api/v1/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


def run() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
