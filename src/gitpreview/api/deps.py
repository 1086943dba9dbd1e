"""Shared API dependency providers."""

from __future__ import annotations

from fastapi import Request

from gitpreview.config import Settings
from gitpreview.core.git_source import GitSource
from gitpreview.core.port_allocator import PortAllocator
from gitpreview.core.process_supervisor import ProcessSupervisor
from gitpreview.core.project_registry import ProjectRegistry
from gitpreview.db.store import MemoryStore, ProjectStore, SQLiteStore


def build_store(settings: Settings) -> ProjectStore:
    if settings.db_path is None:
        return MemoryStore()
    return SQLiteStore(db_path=settings.db_path)


def build_registry(settings: Settings) -> ProjectRegistry:
    return ProjectRegistry(
        build_store(settings),
        ports=PortAllocator(host=settings.bind_host, fallback_port=settings.fallback_port),
        supervisor=ProcessSupervisor(
            grace_seconds=settings.grace_seconds,
            install_timeout_seconds=settings.install_timeout_seconds,
            stop_timeout_seconds=settings.stop_timeout_seconds,
            max_log_lines=settings.max_log_lines,
        ),
        preview_host=settings.preview_host,
    )


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> ProjectRegistry:
    return request.app.state.registry


def get_git_source(request: Request) -> GitSource:
    return request.app.state.git_source
