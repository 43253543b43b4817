"""Middleware: bearer-token guard for every digitread route."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from digitread.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


def _configured_key(request: Request) -> str | None:
    settings: Settings = request.app.state.settings
    return settings.api_key


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Reject the request unless it carries the configured key.

    With DIGITREAD_API_KEY unset every request passes; otherwise the request
    needs 'Authorization: Bearer <key>'.
    """
    expected = _configured_key(request)
    if expected is None:
        return
    if credentials is not None and secrets.compare_digest(credentials.credentials.encode(), expected.encode()):
        return

    logger.warning("Rejected %s %s: invalid or missing API key", request.method, request.url.path)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing API key",
        headers={"WWW-Authenticate": "Bearer"},
    )
