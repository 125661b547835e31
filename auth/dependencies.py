"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

Access tokens arrive in the Authorization: Bearer <token> header and are
resolved through AuthManager.validate_access_token(), so signature, expiry,
session revocation, and the owner's active flag are all checked in one place.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Role checks are not done here; authorization wiring lives outside the auth
core.

Layer rule: this is the only auth/ module that imports fastapi, and only
api/ imports it.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import InvalidToken
from auth.models import User
from auth.service import AuthManager


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Return the authenticated User, or None on any failure. Never raises."""
    token = bearer_token(request)
    if not token:
        return None
    manager: AuthManager = request.app.state.auth_manager
    try:
        return manager.validate_access_token(token)
    except InvalidToken:
        return None


def get_current_user(request: Request) -> User:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
