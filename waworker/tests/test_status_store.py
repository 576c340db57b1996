from __future__ import annotations

from datetime import datetime, timezone

import pytest

from waworker import status_store as status_module
from waworker.status_store import PostgresStatusStore, StatusStoreError


class _FakeConnection:
    def __init__(self, calls: list[tuple]) -> None:
        self._calls = calls

    async def execute(self, sql: str, *args):
        self._calls.append((sql, args))
        return "UPDATE 1"


class _FakeAcquire:
    def __init__(self, calls: list[tuple]) -> None:
        self._calls = calls

    async def __aenter__(self) -> _FakeConnection:
        return _FakeConnection(self._calls)

    async def __aexit__(self, *exc_info) -> None:
        return None


class _FakePool:
    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.closed = False

    def acquire(self) -> _FakeAcquire:
        return _FakeAcquire(self.calls)

    async def close(self) -> None:
        self.closed = True


def test_rejects_unsafe_identifiers() -> None:
    with pytest.raises(ValueError):
        PostgresStatusStore("postgresql://db/app", table="clients; drop table x")
    with pytest.raises(ValueError):
        PostgresStatusStore("postgresql://db/app", column="1column")


@pytest.mark.anyio
async def test_without_database_writes_are_skipped() -> None:
    store = PostgresStatusStore("")

    await store.set_status("t1", "connected", datetime.now(timezone.utc))
    await store.clear_status("t1")
    await store.close()


@pytest.mark.anyio
async def test_set_and_clear_issue_updates(monkeypatch: pytest.MonkeyPatch) -> None:
    pool = _FakePool()
    created: list[str] = []

    async def _create_pool(dsn: str, **kwargs):
        created.append(dsn)
        return pool

    monkeypatch.setattr(status_module.asyncpg, "create_pool", _create_pool)
    store = PostgresStatusStore("postgresql+asyncpg://app@postgres/app")
    updated_at = datetime(2026, 1, 1, tzinfo=timezone.utc)

    await store.set_status("t1", "connected", updated_at)
    await store.clear_status("t1")
    await store.close()

    assert created == ["postgresql://app@postgres/app"]
    (set_sql, set_args), (clear_sql, clear_args) = pool.calls
    assert set_sql.startswith('UPDATE "clients" SET "whatsapp_access_token" = $1')
    assert set_args == ("connected", updated_at, "t1")
    assert "= NULL" in clear_sql
    assert clear_args == ("t1",)
    assert pool.closed


@pytest.mark.anyio
async def test_pool_failure_raises_store_error(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _create_pool(dsn: str, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(status_module.asyncpg, "create_pool", _create_pool)
    store = PostgresStatusStore("postgresql://db/app")

    with pytest.raises(StatusStoreError):
        await store.clear_status("t1")
