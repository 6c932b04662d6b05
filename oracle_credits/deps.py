"""Shared FastAPI dependencies."""

from fastapi import Header, Request

from oracle_credits.core.exceptions import ForbiddenError, UnauthorizedError
from oracle_credits.core.logging import bind_request_context
from oracle_credits.core.security import load_session_cookie, normalize_idempotency_key
from oracle_credits.models.user import User

SESSION_COOKIE_NAME = "oracle_session"


async def get_current_user(request: Request) -> User:
    """Dependency: load session from cookie and return User."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    user = await User.get(user_id)
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    bind_request_context(getattr(request.state, "request_id", ""), user_id=str(user.id))
    return user


async def require_admin(request: Request) -> User:
    """Dependency: require current user to have role admin."""
    user = await get_current_user(request)
    if user.role != "admin":
        raise ForbiddenError("Admin only")
    return user


async def idempotency_key(key: str | None = Header(None, alias="Idempotency-Key")) -> str | None:
    """Dependency: optional client idempotency key, stripped and length-checked."""
    return normalize_idempotency_key(key)
