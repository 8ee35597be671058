"""Middleware: API key authentication and error-to-status mapping."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from snapclassify.errors import (
    AllocationError,
    DecodeError,
    InferenceError,
    ModelLoadError,
    ModelNotReadyError,
    PlatformInitError,
    SnapClassifyError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI

    from snapclassify.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

# Most specific first: ModelNotReadyError is also an InferenceError.
_ERROR_STATUS: list[tuple[type[SnapClassifyError], int]] = [
    (ModelNotReadyError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (DecodeError, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (PlatformInitError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ModelLoadError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (AllocationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (InferenceError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def _get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against the configured API key.

    If no API key is configured (SNAPCLASSIFY_API_KEY not set), all requests pass.
    """
    api_key = _get_settings_from_request(request).api_key
    if api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


def status_for_error(exc: Exception) -> int:
    """Return the HTTP status code for an error kind."""
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def snapclassify_error_handler(request: Request, exc: Exception) -> JSONResponse:
    code = status_for_error(exc)
    logger.warning("%s %s failed with %s: %s", request.method, request.url.path, type(exc).__name__, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})


def register_error_handlers(app: FastAPI) -> None:
    """Map SnapClassify error kinds to JSON error responses."""
    app.add_exception_handler(SnapClassifyError, snapclassify_error_handler)
