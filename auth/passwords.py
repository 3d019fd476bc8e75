"""
auth/passwords.py -- bcrypt password hashing.

bcrypt is used directly rather than through passlib: passlib's wrap-bug
detection builds a password longer than 72 bytes, which bcrypt 4.x rejects.

Inputs are truncated to 72 bytes before hashing and before verification.
bcrypt only ever looks at the first 72 bytes; newer releases raise instead of
truncating silently, so the truncation is done here, identically on both
paths.

The work factor is fixed at construction. A cost outside bcrypt's supported
range is clamped to DEFAULT_COST rather than rejected, so a bad config value
degrades to a sane default instead of preventing startup.
"""

from __future__ import annotations

import logging
from typing import Protocol

import bcrypt

from core.errors import InternalServerError, UnauthorizedError, ValidationError

logger = logging.getLogger("suiteauth.auth")

MIN_COST = 4
MAX_COST = 31
DEFAULT_COST = 10

_BCRYPT_MAX_BYTES = 72


class PasswordHasher(Protocol):
    def hash_password(self, password: str) -> str: ...

    def verify_password(self, password: str, password_hash: str) -> None: ...


class BcryptPasswordHasher:
    """Salted bcrypt hashing. Every hash_password() call draws a fresh salt."""

    def __init__(self, cost: int = DEFAULT_COST) -> None:
        if cost < MIN_COST or cost > MAX_COST:
            logger.warning("bcrypt cost %d out of range [%d, %d]; using %d", cost, MIN_COST, MAX_COST, DEFAULT_COST)
            cost = DEFAULT_COST
        self.cost = cost

    def hash_password(self, password: str) -> str:
        """Return a bcrypt hash of password. Raises ValidationError on an empty password."""
        if password == "":
            raise ValidationError("password cannot be empty")
        try:
            hashed = bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=self.cost))
        except ValueError as exc:
            raise InternalServerError("failed to hash password") from exc
        return hashed.decode("utf-8")

    def verify_password(self, password: str, password_hash: str) -> None:
        """Return None when password matches password_hash.

        Raises:
            ValidationError:     either argument is empty.
            UnauthorizedError:   well-formed hash, wrong password.
            InternalServerError: password_hash is not a bcrypt hash.
        """
        if password == "":
            raise ValidationError("password cannot be empty")
        if password_hash == "":
            raise ValidationError("hash cannot be empty")
        try:
            matched = bcrypt.checkpw(_encode(password), password_hash.encode("utf-8"))
        except ValueError as exc:
            raise InternalServerError("failed to verify password") from exc
        if not matched:
            raise UnauthorizedError("password does not match")


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]
