"""
API request and response models for the suiteauth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Lengths are bounded so an oversized body is rejected with 422 before it
    reaches bcrypt.
    """

    model_config = ConfigDict(str_strip_whitespace=False)

    username: str = Field(min_length=1, max_length=150)
    password: str = Field(min_length=1, max_length=1024)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh and /auth/logout."""

    refresh_token: str = Field(min_length=1, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserInfo(BaseModel):
    """Public projection of a User. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    role: str
    last_login_at: Optional[datetime] = None


class TokenPairResponse(BaseModel):
    """Response for POST /api/v1/auth/login and /auth/refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime
    user: UserInfo


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    role: str


class SessionRow(BaseModel):
    """One refresh-token record. The token string itself is never returned."""

    model_config = ConfigDict(frozen=True)

    id: str
    issued_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    revoked: bool
    active: bool
    client_info: Optional[str] = None
    ip: Optional[str] = None


class SessionListResponse(BaseModel):
    """Response for GET /api/v1/auth/sessions."""

    model_config = ConfigDict(frozen=True)

    active_count: int
    sessions: list[SessionRow] = Field(default_factory=list)


class SweepResponse(BaseModel):
    """Response for POST /api/v1/auth/sweep."""

    model_config = ConfigDict(frozen=True)

    deleted: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    refresh_store: str
