"""Typed failures raised by the preview engine."""

from __future__ import annotations


class PreviewError(Exception):
    """Base class for engine failures."""


class ProjectNotFoundError(PreviewError):
    """No project is registered under the requested id."""


class DuplicateProjectError(PreviewError):
    """A project with the same id is already registered."""


class AlreadyRunningError(PreviewError):
    """Run was requested while a launch is in flight or the server is up."""


class ClassificationUnknownError(PreviewError):
    """The project stack could not be detected, so it cannot be run."""


class PortExhaustionError(PreviewError):
    """No free TCP port was found."""


class InstallFailedError(PreviewError):
    """The dependency install command failed or timed out."""

    def __init__(self, message: str, *, exit_code: int | None = None, output: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class StartupFailedError(PreviewError):
    """The dev server exited within the grace window."""

    def __init__(self, message: str, *, exit_code: int | None = None, output: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class FilesystemError(PreviewError):
    """Removing a project tree left entries behind."""


class SourceAcquisitionError(PreviewError):
    """Cloning or refreshing a checkout failed."""


class RefNotFoundError(SourceAcquisitionError):
    """The requested branch or ref does not exist upstream."""
