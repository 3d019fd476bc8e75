"""Contract tests for RefreshTokenStore -- run against both backends.

Every test taking the `store` fixture runs twice: once on
MemoryRefreshTokenStore and once on SqlRefreshTokenStore (named shared-memory
SQLite). Backend-specific behaviour follows in separate classes:

- Memory: thread safety of duplicate detection, lock-wait cancellation
- SQL: id format validation, tolerance of tables missing optional columns
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine

from auth.cancel import CancelToken
from auth.memory_store import MemoryRefreshTokenStore
from auth.models import RefreshToken, utcnow
from auth.store import SqlRefreshTokenStore
from core.errors import ConflictError, NotFoundError, OperationCancelledError, ValidationError


def _token(token: str, user_id: str = "u1", expires_in: timedelta = timedelta(hours=1), **kw) -> RefreshToken:
    return RefreshToken(token=token, user_id=user_id, expires_at=utcnow() + expires_in, **kw)


# ---------------------------------------------------------------------------
# Shared contract
# ---------------------------------------------------------------------------


class TestStoreAndLookup:
    def test_store_assigns_id(self, store) -> None:
        t = _token("tok-a")
        token_id = store.store(t)
        assert token_id
        assert t.id == token_id

    def test_get_by_token_returns_stored_fields(self, store) -> None:
        t = _token("tok-a", client_info="cli/2.0", ip="192.0.2.1")
        store.store(t)
        got = store.get_by_token("tok-a")
        assert got.id == t.id
        assert got.user_id == "u1"
        assert got.expires_at == t.expires_at
        assert got.issued_at == t.issued_at
        assert got.client_info == "cli/2.0"
        assert got.ip == "192.0.2.1"
        assert got.is_revoked is False

    def test_get_by_token_missing_is_not_found(self, store) -> None:
        with pytest.raises(NotFoundError):
            store.get_by_token("nope")

    def test_duplicate_token_is_conflict_and_keeps_one_record(self, store) -> None:
        """A second Store() with the same token string fails and does not overwrite."""
        store.store(_token("dup", user_id="u1"))
        with pytest.raises(ConflictError):
            store.store(_token("dup", user_id="u2"))
        assert store.get_by_token("dup").user_id == "u1"
        assert len(store.get_by_user_id("u1")) == 1
        assert store.get_by_user_id("u2") == []

    def test_returned_record_is_a_copy(self, store) -> None:
        """Mutating a returned record must not change what the store holds."""
        store.store(_token("tok-a"))
        got = store.get_by_token("tok-a")
        got.is_revoked = True
        got.user_id = "someone-else"
        fresh = store.get_by_token("tok-a")
        assert fresh.is_revoked is False
        assert fresh.user_id == "u1"

    def test_caller_mutation_after_store_does_not_leak(self, store) -> None:
        t = _token("tok-a")
        store.store(t)
        t.is_revoked = True
        assert store.get_by_token("tok-a").is_revoked is False

    def test_nil_token_rejected(self, store) -> None:
        with pytest.raises(ValidationError):
            store.store(None)


class TestRevoke:
    def test_revoke_sets_flag(self, store) -> None:
        t = _token("tok-a")
        store.store(t)
        store.revoke(t.id)
        assert store.get_by_token("tok-a").is_revoked is True

    def test_revoke_is_idempotent(self, store) -> None:
        t = _token("tok-a")
        store.store(t)
        store.revoke(t.id)
        store.revoke(t.id)
        assert store.get_by_token("tok-a").is_revoked is True

    def test_revoke_unknown_id_is_not_found(self, store) -> None:
        with pytest.raises(NotFoundError):
            store.revoke("999999")

    def test_revoke_all_for_user(self, store) -> None:
        for name in ("a", "b", "c"):
            store.store(_token(name, user_id="u1"))
        store.store(_token("other", user_id="u2"))
        store.revoke_all_for_user("u1")
        assert all(t.is_revoked for t in store.get_by_user_id("u1"))
        assert store.get_by_token("other").is_revoked is False

    def test_revoke_all_for_user_without_tokens(self, store) -> None:
        store.revoke_all_for_user("ghost")


class TestUserQueries:
    def test_get_by_user_id_empty(self, store) -> None:
        assert store.get_by_user_id("ghost") == []

    def test_get_by_user_id_includes_revoked_and_expired(self, store) -> None:
        live = _token("live")
        revoked = _token("revoked")
        store.store(live)
        store.store(revoked)
        store.store(_token("expired", expires_in=timedelta(seconds=-5)))
        store.revoke(revoked.id)
        assert {t.token for t in store.get_by_user_id("u1")} == {"live", "revoked", "expired"}

    def test_count_only_valid_tokens(self, store) -> None:
        store.store(_token("a"))
        store.store(_token("b"))
        c = _token("c")
        store.store(c)
        store.store(_token("old", expires_in=timedelta(seconds=-1)))
        store.store(_token("elsewhere", user_id="u2"))
        assert store.count("u1") == 3
        store.revoke(c.id)
        assert store.count("u1") == 2

    def test_count_unknown_user_is_zero(self, store) -> None:
        assert store.count("ghost") == 0


class TestUpdateLastUsed:
    def test_sets_timestamp(self, store) -> None:
        t = _token("tok-a")
        store.store(t)
        when = utcnow()
        store.update_last_used(t.id, when)
        assert store.get_by_token("tok-a").last_used_at == when

    def test_unknown_id_is_not_found(self, store) -> None:
        with pytest.raises(NotFoundError):
            store.update_last_used("424242", utcnow())


class TestDeleteExpired:
    def test_sweep_removes_only_expired(self, store) -> None:
        """Expired A disappears from every lookup path; valid B survives."""
        store.store(_token("A", expires_in=timedelta(seconds=-1)))
        store.store(_token("B"))
        assert store.delete_expired() == 1
        with pytest.raises(NotFoundError):
            store.get_by_token("A")
        assert store.get_by_token("B").token == "B"
        assert [t.token for t in store.get_by_user_id("u1")] == ["B"]

    def test_sweep_keeps_revoked_unexpired(self, store) -> None:
        t = _token("revoked")
        store.store(t)
        store.revoke(t.id)
        assert store.delete_expired() == 0
        assert store.get_by_token("revoked").is_revoked is True

    def test_sweep_frees_token_string(self, store) -> None:
        store.store(_token("reuse", expires_in=timedelta(seconds=-1)))
        store.delete_expired()
        store.store(_token("reuse"))
        assert store.get_by_token("reuse").is_valid()

    def test_sweep_with_nothing_expired(self, store) -> None:
        store.store(_token("fresh"))
        assert store.delete_expired() == 0


class TestCancellation:
    def test_cancelled_token_short_circuits(self, store) -> None:
        cancel = CancelToken()
        cancel.cancel()
        with pytest.raises(OperationCancelledError):
            store.store(_token("never"), cancel=cancel)
        with pytest.raises(NotFoundError):
            store.get_by_token("never")

    def test_past_deadline_short_circuits(self, store) -> None:
        with pytest.raises(OperationCancelledError, match="deadline"):
            store.count("u1", cancel=CancelToken(timeout=0))

    def test_live_token_does_not_interfere(self, store) -> None:
        cancel = CancelToken(timeout=30)
        store.store(_token("tok-a"), cancel=cancel)
        assert store.get_by_token("tok-a", cancel=cancel).token == "tok-a"


# ---------------------------------------------------------------------------
# Memory backend
# ---------------------------------------------------------------------------


class TestMemoryConcurrency:
    def test_concurrent_duplicate_store_admits_exactly_one(self) -> None:
        store = MemoryRefreshTokenStore()
        results: list[str] = []
        barrier = threading.Barrier(8)

        def worker(n: int) -> None:
            barrier.wait()
            try:
                store.store(_token("same", user_id=f"u{n}"))
                results.append("ok")
            except ConflictError:
                results.append("conflict")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert results.count("ok") == 1
        assert results.count("conflict") == 7

    def test_sweep_and_readers_never_see_torn_state(self) -> None:
        """While sweeps run, every id listed for a user still resolves by token."""
        store = MemoryRefreshTokenStore()
        for n in range(200):
            expires_in = timedelta(seconds=-1) if n % 2 else timedelta(hours=1)
            store.store(_token(f"t{n}", expires_in=expires_in))
        errors: list[str] = []

        def reader() -> None:
            for _ in range(50):
                for t in store.get_by_user_id("u1"):
                    try:
                        store.get_by_token(t.token)
                    except NotFoundError:
                        # Deleted after the listing was taken; fine as long as it was expired.
                        if t.is_valid():
                            errors.append(t.token)

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for r in readers:
            r.start()
        removed = store.delete_expired()
        for r in readers:
            r.join()
        assert removed == 100
        assert errors == []
        assert store.count("u1") == 100

    def test_waiting_for_lock_honours_cancel(self) -> None:
        """A call blocked behind a held lock gives up when its deadline passes."""
        store = MemoryRefreshTokenStore()
        outcome: list[BaseException] = []
        store._lock.acquire()
        try:

            def blocked() -> None:
                try:
                    store.count("u1", cancel=CancelToken(timeout=0.2))
                except OperationCancelledError as exc:
                    outcome.append(exc)

            t = threading.Thread(target=blocked)
            t.start()
            t.join(timeout=5)
        finally:
            store._lock.release()
        assert len(outcome) == 1



# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------


class TestSqlIdentifiers:
    def test_ids_are_decimal_integers(self, db_url: str) -> None:
        store = SqlRefreshTokenStore(db_url=db_url)
        try:
            t = _token("tok-a")
            store.store(t)
            assert t.id_as_int() > 0
        finally:
            store.close()

    @pytest.mark.parametrize("bad_id", ["abc", "", "1.5"])
    def test_non_integer_id_is_validation_error(self, bad_id: str, db_url: str) -> None:
        store = SqlRefreshTokenStore(db_url=db_url)
        try:
            with pytest.raises(ValidationError, match="invalid token id format"):
                store.revoke(bad_id)
        finally:
            store.close()


class TestSqlLegacySchema:
    """A refresh_tokens table created before the optional columns existed."""

    @pytest.fixture
    def legacy_store(self, db_url: str):
        url = db_url
        # Keep one engine open so the shared in-memory database survives.
        keeper = create_engine(url)
        metadata = MetaData()
        Table(
            "refresh_tokens",
            metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("token", Text, nullable=False, unique=True),
            Column("user_id", String(64), nullable=False),
            Column("expires_at", String(32), nullable=False),
            Column("revoked", Integer, nullable=False, server_default="0"),
            Column("created_at", String(32), nullable=False),
        )
        metadata.create_all(keeper)
        store = SqlRefreshTokenStore(db_url=url)
        yield store
        store.close()
        keeper.dispose()

    def test_missing_last_used_column_detected(self, legacy_store: SqlRefreshTokenStore) -> None:
        assert legacy_store.tracks_last_used is False

    def test_store_and_lookup_without_optional_columns(self, legacy_store: SqlRefreshTokenStore) -> None:
        t = _token("legacy-tok", client_info="ignored", ip="203.0.113.9")
        legacy_store.store(t)
        got = legacy_store.get_by_token("legacy-tok")
        assert got.user_id == "u1"
        assert got.client_info is None
        assert got.ip is None
        assert got.last_used_at is None
        assert isinstance(got.issued_at, datetime)

    def test_update_last_used_is_noop(self, legacy_store: SqlRefreshTokenStore) -> None:
        t = _token("legacy-tok")
        legacy_store.store(t)
        legacy_store.update_last_used(t.id, utcnow())
        assert legacy_store.get_by_token("legacy-tok").last_used_at is None

    def test_revoke_and_count_still_work(self, legacy_store: SqlRefreshTokenStore) -> None:
        t = _token("legacy-tok")
        legacy_store.store(t)
        assert legacy_store.count("u1") == 1
        legacy_store.revoke(t.id)
        assert legacy_store.count("u1") == 0
