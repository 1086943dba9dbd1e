from __future__ import annotations

import sys
import time
import urllib.error
import urllib.request
from pathlib import Path

from fastapi.testclient import TestClient

from gitpreview.api.app import create_app
from gitpreview.config import Settings
from gitpreview.core.process_supervisor import ProcessSupervisor
from gitpreview.core.project_registry import ProjectRegistry
from gitpreview.core.stack_classifier import StackClassifier
from gitpreview.db.store import SQLiteStore
from gitpreview.models.project import StackKind, StackProfile

APP_SOURCE = """\
import http.server
import os

port = int(os.environ["PORT"])
handler = http.server.SimpleHTTPRequestHandler
http.server.ThreadingHTTPServer(("127.0.0.1", port), handler).serve_forever()
"""


class _PythonAppClassifier(StackClassifier):
    def classify(self, path: Path) -> StackProfile:
        if not (path / "app.py").is_file():
            return super().classify(path)
        return StackProfile(
            kind=StackKind.PYTHON_GENERIC,
            label="Python",
            run_command=f'"{sys.executable}" app.py',
            default_port=18765,
        )


def _fetch(url: str, attempts: int = 50) -> bytes:
    for _ in range(attempts):
        try:
            with urllib.request.urlopen(url, timeout=1) as response:
                return response.read()
        except (urllib.error.URLError, ConnectionError):
            time.sleep(0.1)
    raise AssertionError(f"{url} never answered")


def test_preview_lifecycle(tmp_path: Path) -> None:
    source = tmp_path / "checkout"
    source.mkdir()
    (source / "app.py").write_text(APP_SOURCE, encoding="utf-8")
    (source / "index.html").write_text("<h1>preview</h1>\n", encoding="utf-8")

    db_path = tmp_path / "gitpreview.db"
    settings = Settings(db_path=db_path, workspace_dir=tmp_path)
    registry = ProjectRegistry(
        SQLiteStore(db_path),
        classifier=_PythonAppClassifier(),
        supervisor=ProcessSupervisor(grace_seconds=0.5, stop_timeout_seconds=5),
    )

    with TestClient(create_app(settings, registry=registry)) as client:
        created = client.post("/api/v1/projects", json={"id": "main", "path": str(source)})
        assert created.status_code == 201

        run = client.post("/api/v1/projects/main/run")
        assert run.status_code == 200
        body = run.json()
        assert body["success"] is True, body["error"]
        assert body["port"] >= 18765

        page = _fetch(f"http://127.0.0.1:{body['port']}/index.html")
        assert b"preview" in page

        stopped = client.post("/api/v1/projects/main/stop")
        assert stopped.json()["project"]["status"] == "stopped"

        rerun = client.post("/api/v1/projects/main/run")
        assert rerun.json()["success"] is True

        deleted = client.delete("/api/v1/projects/main")
        assert deleted.json() == {"deleted": True}

    assert not source.exists()
