"""
auth/memory_store.py -- In-memory RefreshTokenStore.

Three structures are kept in step:
  _tokens    id -> RefreshToken        (primary)
  _by_token  token string -> id
  _by_user   user id -> [id, ...]      (insertion order)

One lock guards all three. Every operation that touches more than one of them
(store, delete_expired) runs as a single critical section, so a concurrent
reader never sees a record gone from _tokens but still listed under its user.

Records handed out are copies; mutating a returned RefreshToken does not
change what the store holds.

The lock is acquired in short timed waits when the caller passes a
CancelToken, so a call queued behind a long sweep gives up as soon as the
token fires instead of waiting its turn.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from auth.cancel import CancelToken, check
from auth.models import RefreshToken, utcnow
from core.errors import ConflictError, NotFoundError, ValidationError

_LOCK_POLL_SECONDS = 0.05


class MemoryRefreshTokenStore:
    def __init__(self) -> None:
        self._tokens: dict[str, RefreshToken] = {}
        self._by_token: dict[str, str] = {}
        self._by_user: dict[str, list[str]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self, cancel: Optional[CancelToken]) -> Iterator[None]:
        check(cancel)
        if cancel is None:
            self._lock.acquire()
        else:
            while not self._lock.acquire(timeout=_LOCK_POLL_SECONDS):
                cancel.check()
        try:
            check(cancel)
            yield
        finally:
            self._lock.release()

    def store(self, token: RefreshToken, *, cancel: Optional[CancelToken] = None) -> str:
        if token is None:
            raise ValidationError("token cannot be nil")
        with self._locked(cancel):
            if token.token in self._by_token:
                raise ConflictError("token already exists").with_context(user_id=token.user_id)
            token_id = uuid.uuid4().hex
            record = token.copy()
            record.id = token_id
            self._tokens[token_id] = record
            self._by_token[record.token] = token_id
            self._by_user.setdefault(record.user_id, []).append(token_id)
        token.id = token_id
        return token_id

    def get_by_token(self, token: str, *, cancel: Optional[CancelToken] = None) -> RefreshToken:
        with self._locked(cancel):
            token_id = self._by_token.get(token)
            record = self._tokens.get(token_id) if token_id is not None else None
            if record is None:
                raise NotFoundError("token not found")
            return record.copy()

    def revoke(self, token_id: str, *, cancel: Optional[CancelToken] = None) -> None:
        with self._locked(cancel):
            self._get(token_id).is_revoked = True

    def get_by_user_id(self, user_id: str, *, cancel: Optional[CancelToken] = None) -> list[RefreshToken]:
        with self._locked(cancel):
            return [self._tokens[i].copy() for i in self._by_user.get(user_id, []) if i in self._tokens]

    def update_last_used(
        self, token_id: str, last_used_at: datetime, *, cancel: Optional[CancelToken] = None
    ) -> None:
        with self._locked(cancel):
            self._get(token_id).last_used_at = last_used_at

    def revoke_all_for_user(self, user_id: str, *, cancel: Optional[CancelToken] = None) -> None:
        with self._locked(cancel):
            for token_id in self._by_user.get(user_id, []):
                record = self._tokens.get(token_id)
                if record is not None:
                    record.is_revoked = True

    def delete_expired(self, *, cancel: Optional[CancelToken] = None) -> int:
        with self._locked(cancel):
            now = utcnow()
            expired = {i for i, t in self._tokens.items() if t.expires_at < now}
            if not expired:
                return 0
            for user_id in list(self._by_user):
                remaining = [i for i in self._by_user[user_id] if i not in expired]
                if remaining:
                    self._by_user[user_id] = remaining
                else:
                    del self._by_user[user_id]
            for token_id in expired:
                del self._by_token[self._tokens.pop(token_id).token]
            return len(expired)

    def count(self, user_id: str, *, cancel: Optional[CancelToken] = None) -> int:
        with self._locked(cancel):
            now = utcnow()
            return sum(
                1
                for i in self._by_user.get(user_id, [])
                if i in self._tokens and self._tokens[i].is_valid(now)
            )

    def close(self) -> None:
        """Nothing to release; present so both backends share a lifecycle."""

    def _get(self, token_id: str) -> RefreshToken:
        record = self._tokens.get(token_id)
        if record is None:
            raise NotFoundError("token not found")
        return record
