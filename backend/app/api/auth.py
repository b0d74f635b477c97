"""Minimal auth dependency.

Stub implementation that extracts user_id from a bearer token or uses a test default.
Real token validation belongs to the identity provider in front of this service.
"""

import uuid
from typing import Annotated

from fastapi import Header, HTTPException, status

from backend.app.db.context import RequestContext

DEFAULT_TEST_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")


async def get_current_context(
    authorization: Annotated[str | None, Header()] = None,
) -> RequestContext:
    """Extract request context from authorization header.

    Stub implementation that either:
    - Parses a simple "Bearer <user_id>" format
    - Returns the test default if no header

    Args:
        authorization: Authorization header (e.g., "Bearer <token>")

    Returns:
        RequestContext with user_id

    Raises:
        HTTPException: If authorization is invalid
    """
    if not authorization:
        return RequestContext(user_id=DEFAULT_TEST_USER_ID)

    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = authorization[7:]  # Strip "Bearer "

    try:
        return RequestContext(user_id=uuid.UUID(token))
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token format (expected user_id)",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
