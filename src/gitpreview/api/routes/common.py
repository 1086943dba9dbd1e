"""Common route helpers."""

from __future__ import annotations

from fastapi import HTTPException, status

from gitpreview.errors import (
    AlreadyRunningError,
    ClassificationUnknownError,
    DuplicateProjectError,
    PortExhaustionError,
    PreviewError,
    ProjectNotFoundError,
    RefNotFoundError,
    SourceAcquisitionError,
)

# Most specific classes first.
_STATUS_BY_ERROR: tuple[tuple[type[PreviewError], int], ...] = (
    (ProjectNotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateProjectError, status.HTTP_409_CONFLICT),
    (AlreadyRunningError, status.HTTP_409_CONFLICT),
    (ClassificationUnknownError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (PortExhaustionError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RefNotFoundError, status.HTTP_400_BAD_REQUEST),
    (SourceAcquisitionError, status.HTTP_502_BAD_GATEWAY),
)


def http_error(exc: PreviewError) -> HTTPException:
    """Translate an engine failure into an HTTP error response."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
