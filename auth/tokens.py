"""
auth/tokens.py -- Signed access and refresh tokens.

Security design decisions:
  JWT: python-jose, HMAC-SHA256. Access tokens carry
       {sub, user_id, role, iat, exp}; refresh tokens carry the same minus
       role, plus a random jti so two refresh tokens minted for one user in
       the same second are still distinct strings. `perms` is reserved on
       access tokens and not populated.

  Algorithm pinning: decode() is given the HMAC family only. A token whose
       header names "none" or an asymmetric algorithm is rejected before
       the signature is looked at -- this blocks alg-substitution attacks.

  Expiry: checked here rather than by jose so the boundary is exact: a token
       is expired once now >= exp. A zero or negative duration therefore
       signs fine and fails validation immediately; generation and
       validation stay decoupled.

  Failures: every validation failure is an UnauthorizedError. The message
       names the coarse cause ("token expired", "failed to parse token",
       "invalid token: missing user ID"); the log line carries the detail.

Refresh-token validation is a strategy picked once at construction:
  StoredRefreshTokens     -- a RefreshTokenStore is configured. Issuance
                             persists a record; validation is a store lookup,
                             so tokens can be revoked before they expire.
  StatelessRefreshTokens  -- no store. Validation is the signature/exp check
                             used for access tokens; tokens cannot be revoked.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from jose import jwt
from jose.exceptions import JOSEError

from auth.cancel import CancelToken
from auth.models import RefreshToken, User, utcnow
from auth.store import RefreshTokenStore
from core.errors import (
    InternalServerError,
    NotFoundError,
    OperationCancelledError,
    ServiceError,
    UnauthorizedError,
    ValidationError,
)

logger = logging.getLogger("suiteauth.auth")

_ALGORITHM = "HS256"
_ACCEPTED_ALGORITHMS = ["HS256", "HS384", "HS512"]

# Signature and structure are verified by jose; exp is verified below.
_DECODE_OPTIONS = {"verify_exp": False, "require_exp": True}


def token_fingerprint(token: str) -> str:
    """Short, non-reversible reference to a token for log lines."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


# ---------------------------------------------------------------------------
# Refresh strategies
# ---------------------------------------------------------------------------


class RefreshStrategy(Protocol):
    def issue(self, record: RefreshToken, *, cancel: Optional[CancelToken] = None) -> None: ...

    def validate(self, token: str, *, cancel: Optional[CancelToken] = None) -> str: ...


class StatelessRefreshTokens:
    """Refresh tokens are self-verifying; nothing is persisted."""

    def __init__(self, validate_signed: Callable[[str], str]) -> None:
        self._validate_signed = validate_signed

    def issue(self, record: RefreshToken, *, cancel: Optional[CancelToken] = None) -> None:
        return None

    def validate(self, token: str, *, cancel: Optional[CancelToken] = None) -> str:
        return self._validate_signed(token)


class StoredRefreshTokens:
    """Refresh tokens are backed by a RefreshTokenStore record."""

    def __init__(self, store: RefreshTokenStore) -> None:
        self.store = store

    def issue(self, record: RefreshToken, *, cancel: Optional[CancelToken] = None) -> None:
        try:
            self.store.store(record, cancel=cancel)
        except OperationCancelledError:
            raise
        except ServiceError as exc:
            logger.error("failed to store refresh token for user %s: %s", record.user_id, exc.message)
            raise InternalServerError("failed to store refresh token") from exc

    def validate(self, token: str, *, cancel: Optional[CancelToken] = None) -> str:
        try:
            record = self.store.get_by_token(token, cancel=cancel)
        except NotFoundError:
            raise NotFoundError("refresh token not found") from None
        except OperationCancelledError:
            raise
        except ServiceError as exc:
            raise InternalServerError("failed to retrieve refresh token") from exc

        if not record.is_valid():
            logger.info(
                "refresh token %s rejected (revoked=%s, expires_at=%s)",
                token_fingerprint(token),
                record.is_revoked,
                record.expires_at.isoformat(),
            )
            raise UnauthorizedError("refresh token is invalid or expired").with_context(token_id=record.id)

        try:
            self.store.update_last_used(record.id, utcnow(), cancel=cancel)
        except ServiceError as exc:
            logger.warning("could not update last_used_at for refresh token %s: %s", record.id, exc.message)
        return record.user_id


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class JWTService:
    """Issues and validates HMAC-signed access and refresh tokens.

    Usage:
        svc = JWTService(secret, timedelta(minutes=15), timedelta(hours=24))
        token, expires_at = svc.generate_token(user)
        user_id = svc.validate_token(token)

    Pass `store` to make refresh tokens revocable.
    """

    def __init__(
        self,
        secret_key: str,
        access_token_duration: timedelta,
        refresh_token_duration: timedelta,
        store: Optional[RefreshTokenStore] = None,
    ) -> None:
        self._secret_key = secret_key
        self.access_token_duration = access_token_duration
        self.refresh_token_duration = refresh_token_duration
        self.store = store
        self.refresh_strategy: RefreshStrategy = (
            StoredRefreshTokens(store) if store is not None else StatelessRefreshTokens(self.validate_token)
        )

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def generate_token(self, user: Optional[User]) -> tuple[str, datetime]:
        """Return (signed access token, expiry). Raises ValidationError when user is None."""
        if user is None:
            raise ValidationError("user cannot be nil")
        now = _now_seconds()
        expires_at = now + self.access_token_duration
        claims = {
            "sub": user.id,
            "user_id": user.id,
            "role": str(user.role),
            "iat": now,
            "exp": expires_at,
        }
        return self._sign(claims), expires_at

    def validate_token(self, token: str) -> str:
        """Verify signature, algorithm and expiry; return the user_id claim."""
        if not token:
            raise ValidationError("token cannot be empty")
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=_ACCEPTED_ALGORITHMS, options=_DECODE_OPTIONS)
        except JOSEError as exc:
            logger.info("token %s failed to parse: %s", token_fingerprint(token), exc)
            raise UnauthorizedError("failed to parse token") from exc

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            raise UnauthorizedError("failed to parse token")
        if utcnow().timestamp() >= exp:
            logger.info("token %s expired at %s", token_fingerprint(token), exp)
            raise UnauthorizedError("token expired")

        user_id = payload.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            raise UnauthorizedError("invalid token: missing user ID")
        return user_id

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def generate_refresh_token(
        self,
        user_id: str,
        *,
        client_info: Optional[str] = None,
        ip: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> tuple[str, datetime]:
        """Return (signed refresh token, expiry), persisting a record when a store is configured.

        With a store, no token is returned unless its record was stored.
        """
        if not user_id:
            raise ValidationError("user ID cannot be empty")
        now = _now_seconds()
        expires_at = now + self.refresh_token_duration
        claims = {
            "sub": user_id,
            "user_id": user_id,
            "iat": now,
            "exp": expires_at,
            "jti": uuid.uuid4().hex,
        }
        token = self._sign(claims)
        self.refresh_strategy.issue(
            RefreshToken(
                token=token,
                user_id=user_id,
                issued_at=now,
                expires_at=expires_at,
                client_info=client_info,
                ip=ip,
            ),
            cancel=cancel,
        )
        return token, expires_at

    def validate_refresh_token(self, token: str, *, cancel: Optional[CancelToken] = None) -> str:
        """Return the owning user id.

        Stored mode: NotFoundError if unknown, UnauthorizedError if revoked or
        expired. Stateless mode: same rules as validate_token().
        """
        return self.refresh_strategy.validate(token, cancel=cancel)

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def _sign(self, claims: dict[str, Any]) -> str:
        if not self._secret_key:
            raise InternalServerError("failed to sign token").with_context(reason="signing secret is empty")
        try:
            return jwt.encode(claims, self._secret_key, algorithm=_ALGORITHM)
        except JOSEError as exc:
            logger.error("token signing failed: %s", exc)
            raise InternalServerError("failed to sign token") from exc


def _now_seconds() -> datetime:
    # JWT NumericDate has one-second resolution; truncate so the returned
    # expiry equals the exp claim exactly.
    return utcnow().replace(microsecond=0)
