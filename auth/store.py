"""
auth/store.py -- RefreshTokenStore contract and its durable SQLAlchemy backend.

Pattern: Repository + Data Mapper. SqlRefreshTokenStore is the repository;
_row_to_token is the mapper. Service code never touches SQL directly.

Contract (shared with auth.memory_store.MemoryRefreshTokenStore):
  store()               ConflictError on a duplicate token string; assigns id.
  get_by_token()        NotFoundError if absent; returns a detached copy.
  revoke()              NotFoundError if the id is unknown; idempotent.
  get_by_user_id()      [] when the user has no tokens.
  update_last_used()    NotFoundError if the id is unknown; no-op when the
                        schema has no last_used_at column.
  revoke_all_for_user() succeeds for users with zero tokens.
  delete_expired()      removes every record with expires_at < now; returns
                        the number removed.
  count()               live count of records with is_valid() true.

Every method takes an optional `cancel` (auth.cancel.CancelToken).

Concurrency:
  Duplicate detection relies on the UNIQUE(token) constraint. The insert is
  attempted directly and IntegrityError is translated to ConflictError --
  there is no SELECT-then-INSERT window for two writers to race through.

Schema compatibility:
  Tables created by older releases may lack issued_at, last_used_at,
  client_info and ip_address. The store introspects the live table once at
  startup and only reads/writes the columns that exist; issued_at falls back
  to created_at. Missing columns are not added automatically -- schema changes
  belong to migrations.

Timestamps are stored as fixed-width UTC ISO 8601 strings (microsecond
precision) so lexicographic comparison in SQL matches chronological order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.cancel import CancelToken, check
from auth.models import RefreshToken, utcnow
from core.errors import ConflictError, InternalServerError, NotFoundError, ValidationError

logger = logging.getLogger("suiteauth.auth")

_DEFAULT_DB_URL = "sqlite:///./suiteauth.db"


class RefreshTokenStore(Protocol):
    def store(self, token: RefreshToken, *, cancel: Optional[CancelToken] = None) -> str: ...

    def get_by_token(self, token: str, *, cancel: Optional[CancelToken] = None) -> RefreshToken: ...

    def revoke(self, token_id: str, *, cancel: Optional[CancelToken] = None) -> None: ...

    def get_by_user_id(self, user_id: str, *, cancel: Optional[CancelToken] = None) -> list[RefreshToken]: ...

    def update_last_used(
        self, token_id: str, last_used_at: datetime, *, cancel: Optional[CancelToken] = None
    ) -> None: ...

    def revoke_all_for_user(self, user_id: str, *, cancel: Optional[CancelToken] = None) -> None: ...

    def delete_expired(self, *, cancel: Optional[CancelToken] = None) -> int: ...

    def count(self, user_id: str, *, cancel: Optional[CancelToken] = None) -> int: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", Text, nullable=False, unique=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    # Optional columns -- may be absent on tables created by older releases.
    Column("issued_at", String(32)),
    Column("last_used_at", String(32)),
    Column("client_info", Text),
    Column("ip_address", String(45)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked by the sweep's DELETE."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _parse_id(token_id: str) -> int:
    try:
        return int(token_id)
    except (TypeError, ValueError):
        raise ValidationError("invalid token id format").with_context(token_id=token_id) from None


@contextmanager
def _db_errors(message: str) -> Iterator[None]:
    """Translate driver errors into InternalServerError, keeping the cause chain."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception(message)
        raise InternalServerError(message) from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class SqlRefreshTokenStore:
    """Durable RefreshTokenStore on any SQLAlchemy-supported database.

    Usage:
        store = SqlRefreshTokenStore("postgresql+psycopg://...")
        token_id = store.store(RefreshToken(token=raw, user_id="u1", expires_at=exp))
        store.revoke(token_id)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._columns = self._existing_columns()
        self._select_columns = [c for c in _refresh_tokens.c if c.name in self._columns]
        missing = sorted(set(_refresh_tokens.c.keys()) - self._columns)
        if missing:
            logger.info("refresh_tokens table is missing optional columns %s; they will be skipped", missing)

    def _existing_columns(self) -> set[str]:
        return {col["name"] for col in inspect(self.engine).get_columns("refresh_tokens")}

    @property
    def tracks_last_used(self) -> bool:
        return "last_used_at" in self._columns

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def store(self, token: RefreshToken, *, cancel: Optional[CancelToken] = None) -> str:
        """Insert a refresh token, set token.id to the generated key and return it."""
        if token is None:
            raise ValidationError("token cannot be nil")
        check(cancel)
        values = {
            "token": token.token,
            "user_id": token.user_id,
            "expires_at": _to_iso(token.expires_at),
            "revoked": 1 if token.is_revoked else 0,
            "created_at": _to_iso(utcnow()),
        }
        optional = {
            "issued_at": _to_iso(token.issued_at),
            "last_used_at": _to_iso(token.last_used_at),
            "client_info": token.client_info,
            "ip_address": token.ip,
        }
        values.update({k: v for k, v in optional.items() if k in self._columns})
        try:
            with self.engine.connect() as conn:
                result = conn.execute(_refresh_tokens.insert().values(**values))
                check(cancel)
                conn.commit()
        except IntegrityError as exc:
            raise ConflictError("token already exists").with_context(user_id=token.user_id) from exc
        except SQLAlchemyError as exc:
            logger.exception("failed to store refresh token")
            raise InternalServerError("failed to store refresh token") from exc
        token.id = str(result.inserted_primary_key[0])
        return token.id

    def revoke(self, token_id: str, *, cancel: Optional[CancelToken] = None) -> None:
        pk = _parse_id(token_id)
        check(cancel)
        with _db_errors("failed to revoke refresh token"), self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.update().where(_refresh_tokens.c.id == pk).values(revoked=1))
            check(cancel)
            conn.commit()
        if result.rowcount == 0:
            raise NotFoundError("token not found")

    def update_last_used(
        self, token_id: str, last_used_at: datetime, *, cancel: Optional[CancelToken] = None
    ) -> None:
        if not self.tracks_last_used:
            return
        pk = _parse_id(token_id)
        check(cancel)
        with _db_errors("failed to update last used timestamp"), self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update().where(_refresh_tokens.c.id == pk).values(last_used_at=_to_iso(last_used_at))
            )
            check(cancel)
            conn.commit()
        if result.rowcount == 0:
            raise NotFoundError("token not found")

    def revoke_all_for_user(self, user_id: str, *, cancel: Optional[CancelToken] = None) -> None:
        check(cancel)
        with _db_errors("failed to revoke all tokens for user"), self.engine.connect() as conn:
            conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
            check(cancel)
            conn.commit()

    def delete_expired(self, *, cancel: Optional[CancelToken] = None) -> int:
        """Delete every record whose expires_at is in the past. Returns rows removed."""
        check(cancel)
        now = _to_iso(utcnow())
        with _db_errors("failed to delete expired tokens"), self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < now))
            check(cancel)
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_token(self, token: str, *, cancel: Optional[CancelToken] = None) -> RefreshToken:
        check(cancel)
        with _db_errors("failed to get refresh token"), self.engine.connect() as conn:
            row = conn.execute(select(*self._select_columns).where(_refresh_tokens.c.token == token)).fetchone()
        if row is None:
            raise NotFoundError("token not found")
        return _row_to_token(row)

    def get_by_user_id(self, user_id: str, *, cancel: Optional[CancelToken] = None) -> list[RefreshToken]:
        """Return all tokens for user_id, newest first. Revoked and expired rows included."""
        check(cancel)
        with _db_errors("failed to get refresh tokens for user"), self.engine.connect() as conn:
            rows = conn.execute(
                select(*self._select_columns)
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.created_at.desc(), _refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_token(r) for r in rows]

    def count(self, user_id: str, *, cancel: Optional[CancelToken] = None) -> int:
        check(cancel)
        now = _to_iso(utcnow())
        with _db_errors("failed to count active tokens"), self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_refresh_tokens)
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > now)
                )
            ).scalar()
        return result or 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_token(row) -> RefreshToken:
    # Optional columns are absent from the row when the table predates them.
    created_at = _from_iso(row.created_at)
    return RefreshToken(
        id=str(row.id),
        token=row.token,
        user_id=row.user_id,
        expires_at=_from_iso(row.expires_at),
        issued_at=_from_iso(getattr(row, "issued_at", None)) or created_at,
        last_used_at=_from_iso(getattr(row, "last_used_at", None)),
        is_revoked=bool(row.revoked),
        client_info=getattr(row, "client_info", None),
        ip=getattr(row, "ip_address", None),
    )
