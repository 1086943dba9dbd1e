"""Technology stack detection for checked-out source trees."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from gitpreview.models.project import StackKind, StackProfile

logger = logging.getLogger(__name__)

NPM_INSTALL = "npm install"
PIP_REQUIREMENTS = "pip install -r requirements.txt"

PROFILES: dict[StackKind, StackProfile] = {
    StackKind.NEXTJS: StackProfile(
        kind=StackKind.NEXTJS,
        label="Next.js",
        install_command=NPM_INSTALL,
        run_command="npm run dev",
        default_port=3000,
    ),
    StackKind.VITE: StackProfile(
        kind=StackKind.VITE,
        label="Vite",
        install_command=NPM_INSTALL,
        run_command="npm run dev",
        default_port=5173,
    ),
    StackKind.REACT: StackProfile(
        kind=StackKind.REACT,
        label="React.js",
        install_command=NPM_INSTALL,
        run_command="npm start",
        default_port=3000,
    ),
    StackKind.VUE: StackProfile(
        kind=StackKind.VUE,
        label="Vue.js",
        install_command=NPM_INSTALL,
        run_command="npm run dev",
        default_port=5173,
    ),
    StackKind.ANGULAR: StackProfile(
        kind=StackKind.ANGULAR,
        label="Angular",
        install_command=NPM_INSTALL,
        run_command="ng serve",
        default_port=4200,
    ),
    StackKind.EXPRESS: StackProfile(
        kind=StackKind.EXPRESS,
        label="Express.js",
        install_command=NPM_INSTALL,
        run_command="npm start",
        default_port=3000,
    ),
    StackKind.NODE: StackProfile(
        kind=StackKind.NODE,
        label="Node.js",
        install_command=NPM_INSTALL,
        run_command="npm start",
        default_port=3000,
    ),
    StackKind.FLASK: StackProfile(
        kind=StackKind.FLASK,
        label="Flask",
        install_command=PIP_REQUIREMENTS,
        run_command="flask run",
        default_port=5000,
    ),
    StackKind.DJANGO: StackProfile(
        kind=StackKind.DJANGO,
        label="Django",
        install_command=PIP_REQUIREMENTS,
        run_command="python manage.py runserver",
        default_port=8000,
    ),
    StackKind.FASTAPI: StackProfile(
        kind=StackKind.FASTAPI,
        label="FastAPI",
        install_command=PIP_REQUIREMENTS,
        run_command="uvicorn main:app --reload",
        default_port=8000,
    ),
    StackKind.JAVA_MAVEN: StackProfile(
        kind=StackKind.JAVA_MAVEN,
        label="Java (Maven)",
        install_command="mvn clean install",
        run_command="mvn spring-boot:run",
        default_port=8080,
    ),
    StackKind.JAVA_GRADLE: StackProfile(
        kind=StackKind.JAVA_GRADLE,
        label="Java (Gradle)",
        install_command="gradle build",
        run_command="gradle bootRun",
        default_port=8080,
    ),
    StackKind.STATIC: StackProfile(
        kind=StackKind.STATIC,
        label="Static HTML",
        run_command="npx serve -s .",
        default_port=3000,
    ),
    StackKind.UNKNOWN: StackProfile(kind=StackKind.UNKNOWN, label="Unknown"),
}

# Checked in order against the merged dependency maps; first hit wins.
RUNTIME = ("dependencies",)
DEV = ("devDependencies",)

# Each marker only counts in the manifest sections listed next to it.
NODE_MARKERS: tuple[tuple[str, StackKind, tuple[str, ...]], ...] = (
    ("next", StackKind.NEXTJS, RUNTIME + DEV),
    ("vite", StackKind.VITE, DEV),
    ("react", StackKind.REACT, RUNTIME),
    ("vue", StackKind.VUE, RUNTIME),
    ("@angular/core", StackKind.ANGULAR, RUNTIME),
    ("express", StackKind.EXPRESS, RUNTIME),
)

PYTHON_MARKERS: tuple[tuple[str, StackKind], ...] = (
    ("flask", StackKind.FLASK),
    ("django", StackKind.DJANGO),
    ("fastapi", StackKind.FASTAPI),
)

PYTHON_MANIFESTS = ("requirements.txt", "setup.py", "pyproject.toml")
GRADLE_MANIFESTS = ("build.gradle", "build.gradle.kts")


class StackClassifier:
    """Detect the stack of a project directory from its marker files.

    Detection order: ``package.json``, Python dependency files, ``pom.xml``,
    Gradle build files, a root ``index.html``. Anything else is ``unknown``.
    Classification only reads files and never raises.
    """

    def classify(self, path: Path) -> StackProfile:
        if not path.is_dir():
            return PROFILES[StackKind.UNKNOWN]

        package_json = path / "package.json"
        if package_json.is_file():
            return self._classify_node(package_json)

        if any((path / name).is_file() for name in PYTHON_MANIFESTS):
            return self._classify_python(path)

        if (path / "pom.xml").is_file():
            return PROFILES[StackKind.JAVA_MAVEN]

        if any((path / name).is_file() for name in GRADLE_MANIFESTS):
            return PROFILES[StackKind.JAVA_GRADLE]

        if (path / "index.html").is_file():
            return PROFILES[StackKind.STATIC]

        return PROFILES[StackKind.UNKNOWN]

    def _classify_node(self, package_json: Path) -> StackProfile:
        try:
            manifest = json.loads(package_json.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable %s, assuming plain Node.js: %s", package_json, exc)
            return PROFILES[StackKind.NODE]
        if not isinstance(manifest, dict):
            logger.warning("%s is not a JSON object, assuming plain Node.js", package_json)
            return PROFILES[StackKind.NODE]

        sections = {name: _dependency_map(manifest.get(name)) for name in RUNTIME + DEV}
        for marker, kind, names in NODE_MARKERS:
            if any(marker in sections[name] for name in names):
                return PROFILES[kind]
        return PROFILES[StackKind.NODE]

    def _classify_python(self, project_dir: Path) -> StackProfile:
        requirements = project_dir / "requirements.txt"
        if requirements.is_file():
            try:
                content = requirements.read_text(encoding="utf-8", errors="replace").lower()
            except OSError as exc:
                logger.warning("Unreadable %s: %s", requirements, exc)
            else:
                for marker, kind in PYTHON_MARKERS:
                    if marker in content:
                        return PROFILES[kind]

        entry = "app.py"
        if (project_dir / "main.py").is_file() and not (project_dir / "app.py").is_file():
            entry = "main.py"
        install = PIP_REQUIREMENTS if requirements.is_file() else "pip install ."
        return StackProfile(
            kind=StackKind.PYTHON_GENERIC,
            label="Python",
            install_command=install,
            run_command=f"python {entry}",
            default_port=5000,
        )


def _dependency_map(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}
