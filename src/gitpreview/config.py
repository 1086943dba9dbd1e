"""Runtime settings for the preview engine."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field

ENV_PREFIX = "GITPREVIEW_"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _default_workspace() -> Path:
    return Path(tempfile.gettempdir()) / "gitviewer"


class Settings(BaseModel):
    """Engine and API settings."""

    workspace_dir: Path = Field(default_factory=_default_workspace)
    db_path: Path | None = Path(".gitpreview/gitpreview.db")
    preview_host: str = "localhost"
    bind_host: str = "127.0.0.1"
    fallback_port: int = Field(default=3000, gt=0, le=65535)
    grace_seconds: float = Field(default=2.0, ge=0)
    install_timeout_seconds: float | None = Field(default=None, gt=0)
    stop_timeout_seconds: float = Field(default=10.0, gt=0)
    max_log_lines: int = Field(default=1000, gt=0)
    log_level: str = "INFO"
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Settings:
        """Build settings from ``GITPREVIEW_*`` variables.

        An empty ``GITPREVIEW_DB_PATH`` selects the in-memory store.
        """
        source = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for name in cls.model_fields:
            raw = source.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if name == "db_path" and not raw.strip():
                values[name] = None
                continue
            values[name] = raw
        return cls.model_validate(values)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
