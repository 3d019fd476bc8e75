"""
auth/users.py -- UserRepository contract consumed by AuthSessionManager.

User persistence belongs to the host application. The session manager only
needs three calls:

  find_by_username(username) -> User    NotFoundError if absent
  find_by_id(user_id)        -> User    NotFoundError if absent
  update_last_login(user_id) -> None    any ServiceError on failure

InMemoryUserRepository is the reference implementation used by the CLI,
the development server and the test suite.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Protocol

from auth.models import User, new_user
from core.errors import ConflictError, NotFoundError, ValidationError


class UserRepository(Protocol):
    def find_by_username(self, username: str) -> User: ...

    def find_by_id(self, user_id: str) -> User: ...

    def update_last_login(self, user_id: str) -> None: ...


class InMemoryUserRepository:
    def __init__(self, users: list[User] | None = None) -> None:
        self._lock = threading.Lock()
        self._by_id: dict[str, User] = {}
        self._by_username: dict[str, str] = {}
        for user in users or []:
            self.add(user)

    @classmethod
    def from_json_file(cls, path: str) -> "InMemoryUserRepository":
        """Load users from a JSON list of {id, username, password_hash, role} objects.

        Every entry goes through new_user(), so a missing field or an unknown
        role fails the whole load with ValidationError.
        """
        file_path = Path(path).resolve()
        if not file_path.is_file():
            raise ValidationError(f"users file not found: {path}")
        try:
            entries = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ValidationError(f"users file is not readable JSON: {path}") from exc
        if not isinstance(entries, list):
            raise ValidationError("users file must contain a JSON list")
        return cls(
            [
                new_user(
                    str(e.get("id", "")),
                    e.get("username", ""),
                    e.get("password_hash", ""),
                    e.get("role", ""),
                )
                for e in entries
            ]
        )

    def add(self, user: User) -> User:
        if user is None:
            raise ValidationError("user cannot be nil")
        with self._lock:
            if user.id in self._by_id or user.username in self._by_username:
                raise ConflictError("user already exists").with_context(user_id=user.id)
            self._by_id[user.id] = user
            self._by_username[user.username] = user.id
        return user

    def remove(self, user_id: str) -> None:
        with self._lock:
            user = self._by_id.pop(user_id, None)
            if user is None:
                raise NotFoundError("user not found")
            self._by_username.pop(user.username, None)

    def find_by_username(self, username: str) -> User:
        with self._lock:
            user_id = self._by_username.get(username)
            if user_id is None:
                raise NotFoundError("user not found")
            return self._by_id[user_id]

    def find_by_id(self, user_id: str) -> User:
        with self._lock:
            user = self._by_id.get(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def update_last_login(self, user_id: str) -> None:
        with self._lock:
            user = self._by_id.get(user_id)
            if user is None:
                raise NotFoundError("user not found")
            user.update_last_login()
