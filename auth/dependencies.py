"""
auth/dependencies.py -- Request auth context and FastAPI Depends() helpers.

Two credential sources are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. The auth cookie (Settings.auth_cookie_name, default "auth_token") --
     set by POST /auth/login for browser clients.

Extraction is fail-open: auth_context_middleware runs on every request and
attaches an AuthInfo to request.state.auth when a credential validates, or
None when there is no credential or it is rejected. A rejected credential is
logged, never answered with an error here.

Authorization is fail-closed: get_current_user() raises 401 when
request.state.auth is None, and require_role() raises 403 unless the role
matches exactly. There is no hierarchy -- an Admin does not pass a
require_role("Manager") gate.

Layer rule: no imports from api/. fastapi/starlette are allowed here because
this module is part of the dependency injection system.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool

from auth.models import Role, User
from auth.sessions import AuthSessionManager
from auth.tokens import token_fingerprint
from core.config import get_settings
from core.errors import PermissionDeniedError, ServiceError, UnauthorizedError

logger = logging.getLogger("suiteauth.auth")

_BEARER_PREFIX = "Bearer "


@dataclass(frozen=True)
class AuthInfo:
    """Identity attached to an authenticated request."""

    user_id: str
    username: str
    role: Role

    @classmethod
    def from_user(cls, user: User) -> "AuthInfo":
        return cls(user_id=user.id, username=user.username, role=user.role)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def extract_token(authorization: Optional[str], cookie: Optional[str]) -> Optional[str]:
    """Return the bearer credential from the header, else the cookie, else None."""
    if authorization and authorization.startswith(_BEARER_PREFIX):
        token = authorization[len(_BEARER_PREFIX) :].strip()
        if token:
            return token
    return cookie or None


def resolve_identity(sessions: AuthSessionManager, token: Optional[str]) -> Optional[AuthInfo]:
    """Validate token and return its AuthInfo, or None. Never raises ServiceError."""
    if not token:
        return None
    try:
        user = sessions.validate_token(token)
    except ServiceError as exc:
        logger.info("credential %s rejected: %s", token_fingerprint(token), exc.message)
        return None
    return AuthInfo.from_user(user)


async def auth_context_middleware(request: Request, call_next):
    """Attach request.state.auth (AuthInfo or None) before the route runs."""
    token = extract_token(
        request.headers.get("Authorization"),
        request.cookies.get(get_settings().auth_cookie_name),
    )
    request.state.auth = None
    if token:
        sessions: AuthSessionManager = request.app.state.sessions
        request.state.auth = await run_in_threadpool(resolve_identity, sessions, token)
    return await call_next(request)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


def get_auth_info(request: Request) -> Optional[AuthInfo]:
    """Soft variant: the request's AuthInfo, or None when unauthenticated."""
    return getattr(request.state, "auth", None)


def is_authenticated(request: Request) -> bool:
    return get_auth_info(request) is not None


def has_role(info: Optional[AuthInfo], role: str) -> bool:
    """Exact string match between the caller's role and role."""
    return info is not None and str(info.role) == str(role)


def get_current_user(request: Request) -> AuthInfo:
    """Require authentication. Raises UnauthorizedError (401) otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(auth: AuthInfo = Depends(get_current_user)): ...
    """
    info = get_auth_info(request)
    if info is None:
        raise UnauthorizedError("authentication required")
    return info


def require_role(role: str) -> Callable[[Request], AuthInfo]:
    """Build a dependency admitting only callers whose role equals role.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(auth: AuthInfo = Depends(require_role("Admin"))): ...
    """

    def _gate(request: Request) -> AuthInfo:
        info = get_current_user(request)
        if not has_role(info, role):
            logger.info("user %s with role %s denied %s gate", info.user_id, info.role, role)
            raise PermissionDeniedError("insufficient permissions").with_context(required=str(role))
        return info

    return _gate


# ---------------------------------------------------------------------------
# Cookie transport
# ---------------------------------------------------------------------------


def set_auth_cookie(response: Response, token: str, max_age: int) -> None:
    """Write the access token as an httpOnly cookie.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the token lifetime so both expire together.
    """
    settings = get_settings()
    response.set_cookie(
        settings.auth_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=max(max_age, 0),
    )


def clear_auth_cookie(response: Response) -> None:
    response.delete_cookie(get_settings().auth_cookie_name)
