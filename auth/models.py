"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class. Dataclasses own domain shape and the few derived
predicates that belong to the entity itself (RefreshToken.is_valid()); stores
and services do the work.

User is owned by an external repository and is read-only here. Its role must
be one of the Role members -- an unknown role fails at construction time.

Layer rule: no imports from api/. core/ is allowed.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

from core.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "Admin"
    MANAGER = "Manager"
    TESTER = "Tester"

    def __str__(self) -> str:
        return self.value


def parse_role(value: object) -> Role:
    """Coerce a role string (or Role) to Role. Unknown values raise ValidationError."""
    try:
        return Role(value)
    except ValueError as exc:
        raise ValidationError(f"invalid user role: {value!r}") from exc


@dataclass
class User:
    """An account known to the external UserRepository.

    role is coerced to Role in __post_init__ so every User in the process
    holds a recognised role; string comparisons (role == "Admin") still work
    because Role is a str Enum.
    """

    id: str
    username: str
    password_hash: str
    role: Role
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.role = parse_role(self.role)

    def update_last_login(self) -> None:
        now = utcnow()
        self.last_login_at = now
        self.updated_at = now

    # Permission helpers used by the test-management features built on top
    # of this subsystem. Role gating in auth.dependencies is a separate,
    # exact-match check and does not consult these.

    def can_create_test_suite(self) -> bool:
        return self.role in (Role.ADMIN, Role.MANAGER)

    def can_update_test_suite(self) -> bool:
        return self.role in (Role.ADMIN, Role.MANAGER)

    def can_view_test_suite(self) -> bool:
        return True

    def can_update_test_case(self) -> bool:
        return True

    def can_record_effort(self) -> bool:
        return True


class UserErrorFactory(Protocol):
    """Builds the errors raised by new_user(). Injected, never global."""

    def empty_user_id(self) -> Exception: ...

    def empty_username(self) -> Exception: ...

    def empty_password_hash(self) -> Exception: ...

    def invalid_user_role(self) -> Exception: ...


class DefaultUserErrors:
    def empty_user_id(self) -> Exception:
        return ValidationError("user ID is required")

    def empty_username(self) -> Exception:
        return ValidationError("username is required")

    def empty_password_hash(self) -> Exception:
        return ValidationError("password hash is required")

    def invalid_user_role(self) -> Exception:
        return ValidationError("invalid user role")


def new_user(
    user_id: str,
    username: str,
    password_hash: str,
    role: object,
    *,
    errors: UserErrorFactory | None = None,
) -> User:
    """Validate and build a User, raising errors produced by `errors`."""
    errors = errors or DefaultUserErrors()
    if not user_id:
        raise errors.empty_user_id()
    if not username:
        raise errors.empty_username()
    if not password_hash:
        raise errors.empty_password_hash()
    try:
        parsed = Role(role)
    except ValueError:
        raise errors.invalid_user_role() from None
    return User(id=user_id, username=username, password_hash=password_hash, role=parsed)


@dataclass
class RefreshToken:
    """A persisted refresh-token record.

    id is assigned by the store: a uuid hex string for the in-memory backend,
    the decimal form of the autoincrement key for the durable backend.

    is_revoked is terminal -- nothing clears it. Expired records are not
    revoked; they fail is_valid() until DeleteExpired removes them.
    """

    token: str
    user_id: str
    expires_at: datetime
    issued_at: datetime = field(default_factory=utcnow)
    id: str = ""
    last_used_at: Optional[datetime] = None
    is_revoked: bool = False
    client_info: Optional[str] = None
    ip: Optional[str] = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_valid(self, now: datetime | None = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)

    def id_as_int(self) -> int:
        """Return id as an int, or 0 when it is not a decimal integer."""
        try:
            return int(self.id)
        except ValueError:
            return 0

    def copy(self) -> "RefreshToken":
        return replace(self)
