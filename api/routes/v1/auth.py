"""
api/routes/v1/auth.py -- Login, token refresh, logout and session endpoints.

Routes:
  POST /api/v1/auth/login                -- password login; returns token pair, sets cookie
  POST /api/v1/auth/refresh              -- exchange a refresh token for a new pair
  POST /api/v1/auth/logout               -- revoke a refresh token; clears cookie; always 200
  GET  /api/v1/auth/me                   -- current identity (requires auth)
  GET  /api/v1/auth/sessions             -- caller's refresh tokens (requires auth)
  POST /api/v1/auth/sessions/revoke-all  -- revoke every caller refresh token (requires auth)
  POST /api/v1/auth/sweep                -- delete expired refresh tokens (Admin only)

Security:
  POST /login is rate-limited per client IP (Settings.login_rate_limit).
  Token-bearing responses carry Cache-Control: no-store.
  Unknown username and wrong password produce the same 401 body.
  Route handlers are sync `def` so bcrypt and store I/O run in the threadpool.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    SessionListResponse,
    SessionRow,
    SweepResponse,
    TokenPairResponse,
    UserInfo,
)
from auth.cancel import CancelToken
from auth.dependencies import AuthInfo, clear_auth_cookie, get_current_user, require_role, set_auth_cookie
from auth.models import Role
from auth.sessions import AuthSessionManager, LoginResult
from core.config import get_settings

# Auth policy:
# - POST /api/v1/auth/login:                public
# - POST /api/v1/auth/refresh:              public -- the refresh token is the credential
# - POST /api/v1/auth/logout:               public -- idempotent, needs no prior auth
# - GET  /api/v1/auth/me:                   requires auth (get_current_user)
# - GET  /api/v1/auth/sessions:             requires auth (get_current_user)
# - POST /api/v1/auth/sessions/revoke-all:  requires auth (get_current_user)
# - POST /api/v1/auth/sweep:                requires role "Admin" (exact match)
router = APIRouter()

_CLIENT_INFO_MAX = 255


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenPairResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    Returns the access/refresh pair and sets the access token cookie. Any
    credential problem is a 401 with the same body.
    """
    sessions = _sessions(request)
    result = sessions.login(
        body.username,
        body.password,
        client_info=_client_info(request),
        ip=_client_ip(request),
        cancel=_cancel_token(),
    )
    return _token_pair_response(result)


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Issue a new token pair. The presented refresh token stays valid."""
    sessions = _sessions(request)
    result = sessions.refresh_token(
        body.refresh_token,
        client_info=_client_info(request),
        ip=_client_ip(request),
        cancel=_cancel_token(),
    )
    return _token_pair_response(result)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Revoke the refresh token (if given) and clear the auth cookie.

    Unknown or already-revoked tokens still return 200.
    """
    if body is not None:
        _sessions(request).logout(body.refresh_token, cancel=_cancel_token())
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(auth: AuthInfo = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse(user_id=auth.user_id, username=auth.username, role=str(auth.role))


@router.get("/auth/sessions", response_model=SessionListResponse)
def list_sessions(request: Request, auth: AuthInfo = Depends(get_current_user)) -> SessionListResponse:
    """List the caller's refresh tokens, newest first. Token strings are never returned."""
    sessions = _sessions(request)
    cancel = _cancel_token()
    records = sessions.list_sessions(auth.user_id, cancel=cancel)
    return SessionListResponse(
        active_count=sessions.active_session_count(auth.user_id, cancel=cancel),
        sessions=[
            SessionRow(
                id=r.id,
                issued_at=r.issued_at,
                expires_at=r.expires_at,
                last_used_at=r.last_used_at,
                revoked=r.is_revoked,
                active=r.is_valid(),
                client_info=r.client_info,
                ip=r.ip,
            )
            for r in records
        ],
    )


@router.post("/auth/sessions/revoke-all", response_model=MessageResponse)
def revoke_all_sessions(request: Request, auth: AuthInfo = Depends(get_current_user)) -> JSONResponse:
    """Revoke every refresh token the caller holds ("log out everywhere")."""
    _sessions(request).logout_all(auth.user_id, cancel=_cancel_token())
    resp = JSONResponse(content=MessageResponse(message="All sessions revoked.").model_dump())
    clear_auth_cookie(resp)
    return resp


@router.post("/auth/sweep", response_model=SweepResponse)
def sweep(request: Request, auth: AuthInfo = Depends(require_role(Role.ADMIN.value))) -> SweepResponse:
    """Delete expired refresh-token records now. Admin only."""
    return SweepResponse(deleted=_sessions(request).sweep_expired(cancel=_cancel_token()))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sessions(request: Request) -> AuthSessionManager:
    return request.app.state.sessions


def _cancel_token() -> CancelToken:
    return CancelToken(timeout=get_settings().store_timeout_seconds)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _client_info(request: Request) -> Optional[str]:
    agent = request.headers.get("User-Agent")
    return agent[:_CLIENT_INFO_MAX] if agent else None


def _token_pair_response(result: LoginResult) -> JSONResponse:
    body = TokenPairResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_at=result.expires_at,
        refresh_expires_at=result.refresh_expires_at,
        user=UserInfo(
            id=result.user.id,
            username=result.user.username,
            role=str(result.user.role),
            last_login_at=result.user.last_login_at,
        ),
    )
    resp = JSONResponse(status_code=200, content=body.model_dump(mode="json"))
    set_auth_cookie(resp, result.access_token, get_settings().access_token_expire_seconds)
    resp.headers["Cache-Control"] = "no-store"
    return resp
