"""Mapping of domain errors onto HTTP responses."""

from fastapi import HTTPException, status

from catalog_monitor.exceptions import (
    ActionError,
    DetectedReleaseNotFound,
    InvalidTransitionError,
    TokenAlreadyUsedError,
    TokenExpiredError,
)


def action_http_error(error: ActionError) -> HTTPException:
    """Translate an action error into the HTTPException to raise."""
    if isinstance(error, DetectedReleaseNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, (InvalidTransitionError, TokenAlreadyUsedError)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, TokenExpiredError):
        code = status.HTTP_410_GONE
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(error))
