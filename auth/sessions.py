"""
auth/sessions.py -- AuthSessionManager: login, token validation, refresh, logout.

Composes the UserRepository, PasswordHasher, JWTService and (optionally) a
RefreshTokenStore. Transport code talks to this class only.

Error policy:
  Login never reveals whether a username exists. Unknown user, wrong password,
  empty password and an unreadable stored hash all raise the same
  UnauthorizedError("invalid credentials"); the log line carries the cause.
  When the username is unknown a throwaway bcrypt verification still runs so
  response time does not reveal it either.

  A user deleted after its token was issued is Unauthorized, not NotFound.

  Recording the last-login timestamp is best-effort. A failure is logged at
  WARNING and the login still succeeds.

Refresh does NOT revoke the refresh token it was called with. Both the old
and the new token stay valid until they expire or are revoked explicitly;
callers wanting rotation call logout(old) after a successful refresh.
"""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import cached_property
from typing import Optional

from auth.cancel import CancelToken
from auth.models import RefreshToken, User
from auth.passwords import PasswordHasher
from auth.store import RefreshTokenStore
from auth.tokens import JWTService, token_fingerprint
from auth.users import UserRepository
from core.errors import (
    InternalServerError,
    NotFoundError,
    OperationCancelledError,
    ServiceError,
    UnauthorizedError,
    ValidationError,
)

logger = logging.getLogger("suiteauth.auth")

_INVALID_CREDENTIALS = "invalid credentials"


@dataclass
class LoginResult:
    """Token pair handed back by login() and refresh_token()."""

    access_token: str
    refresh_token: str
    user: User
    expires_at: datetime
    refresh_expires_at: datetime


class AuthSessionManager:
    def __init__(
        self,
        users: UserRepository,
        hasher: PasswordHasher,
        tokens: JWTService,
        store: Optional[RefreshTokenStore] = None,
    ) -> None:
        self.users = users
        self.hasher = hasher
        self.tokens = tokens
        # Defaults to the store the token service persists into.
        self.store = store if store is not None else tokens.store

    # ------------------------------------------------------------------
    # Login / validation
    # ------------------------------------------------------------------

    def login(
        self,
        username: str,
        password: str,
        *,
        client_info: Optional[str] = None,
        ip: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> LoginResult:
        """Verify credentials and issue an access/refresh token pair.

        Raises UnauthorizedError for any credential problem and
        InternalServerError when a token cannot be issued.
        """
        try:
            user = self.users.find_by_username(username)
        except Exception as exc:
            logger.info("login rejected for %r: user lookup failed (%s)", username, exc)
            self._equalize_timing(password)
            raise UnauthorizedError(_INVALID_CREDENTIALS) from None

        try:
            self.hasher.verify_password(password, user.password_hash)
        except InternalServerError:
            logger.error("login rejected for user %s: stored password hash is malformed", user.id)
            raise UnauthorizedError(_INVALID_CREDENTIALS) from None
        except ServiceError as exc:
            logger.info("login rejected for user %s: %s", user.id, exc.message)
            raise UnauthorizedError(_INVALID_CREDENTIALS) from None

        try:
            self.users.update_last_login(user.id)
        except Exception as exc:
            logger.warning("could not record last login for user %s: %s", user.id, exc)

        result = self._issue(user, client_info=client_info, ip=ip, cancel=cancel)
        logger.info("user %s logged in", user.id)
        return result

    def validate_token(self, token: str) -> User:
        """Return the User an access token belongs to."""
        user_id = self.tokens.validate_token(token)
        try:
            return self.users.find_by_id(user_id)
        except NotFoundError:
            logger.info("token %s names unknown user %s", token_fingerprint(token), user_id)
            raise UnauthorizedError("user not found") from None

    # ------------------------------------------------------------------
    # Refresh / logout
    # ------------------------------------------------------------------

    def refresh_token(
        self,
        refresh_token: str,
        *,
        client_info: Optional[str] = None,
        ip: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> LoginResult:
        """Exchange a valid refresh token for a new token pair.

        The presented refresh token is left untouched.
        """
        try:
            user_id = self.tokens.validate_refresh_token(refresh_token, cancel=cancel)
        except NotFoundError:
            logger.info("refresh with unknown token %s", token_fingerprint(refresh_token))
            raise UnauthorizedError("invalid refresh token") from None

        try:
            user = self.users.find_by_id(user_id)
        except NotFoundError:
            logger.info("refresh token %s names unknown user %s", token_fingerprint(refresh_token), user_id)
            raise UnauthorizedError("user not found") from None

        return self._issue(user, client_info=client_info, ip=ip, cancel=cancel)

    def logout(self, refresh_token: str, *, cancel: Optional[CancelToken] = None) -> None:
        """Revoke a refresh token. Unknown, stale and repeated tokens succeed silently."""
        if self.store is None or not refresh_token:
            return
        try:
            record = self.store.get_by_token(refresh_token, cancel=cancel)
        except NotFoundError:
            return
        if record.is_revoked:
            return
        try:
            self.store.revoke(record.id, cancel=cancel)
        except NotFoundError:
            # Swept between lookup and revoke.
            return
        except OperationCancelledError:
            raise
        except ServiceError as exc:
            raise InternalServerError("failed to revoke refresh token") from exc
        logger.info("refresh token %s revoked for user %s", record.id, record.user_id)

    # ------------------------------------------------------------------
    # Session administration
    # ------------------------------------------------------------------

    def logout_all(self, user_id: str, *, cancel: Optional[CancelToken] = None) -> None:
        """Revoke every refresh token the user holds."""
        _require_user_id(user_id)
        if self.store is None:
            return
        self.store.revoke_all_for_user(user_id, cancel=cancel)
        logger.info("all refresh tokens revoked for user %s", user_id)

    def active_session_count(self, user_id: str, *, cancel: Optional[CancelToken] = None) -> int:
        _require_user_id(user_id)
        if self.store is None:
            return 0
        return self.store.count(user_id, cancel=cancel)

    def list_sessions(self, user_id: str, *, cancel: Optional[CancelToken] = None) -> list[RefreshToken]:
        _require_user_id(user_id)
        if self.store is None:
            return []
        return self.store.get_by_user_id(user_id, cancel=cancel)

    def sweep_expired(self, *, cancel: Optional[CancelToken] = None) -> int:
        """Delete expired refresh-token records. Returns the number removed."""
        if self.store is None:
            return 0
        removed = self.store.delete_expired(cancel=cancel)
        if removed:
            logger.info("swept %d expired refresh tokens", removed)
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _issue(
        self,
        user: User,
        *,
        client_info: Optional[str],
        ip: Optional[str],
        cancel: Optional[CancelToken],
    ) -> LoginResult:
        access_token, expires_at = self.tokens.generate_token(user)
        refresh_token, refresh_expires_at = self.tokens.generate_refresh_token(
            user.id, client_info=client_info, ip=ip, cancel=cancel
        )
        return LoginResult(
            access_token=access_token,
            refresh_token=refresh_token,
            user=user,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    @cached_property
    def _dummy_hash(self) -> str:
        return self.hasher.hash_password("suiteauth-timing-equalizer")

    def _equalize_timing(self, password: str) -> None:
        if not password:
            return
        with contextlib.suppress(ServiceError):
            self.hasher.verify_password(password, self._dummy_hash)


def _require_user_id(user_id: str) -> None:
    if not user_id:
        raise ValidationError("user ID cannot be empty")
