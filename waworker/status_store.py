"""Durable connection status in the ``clients`` table.

Writes are best-effort: callers log and count failures, the in-memory session
state never depends on them.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Optional

import asyncpg


LOGGER = logging.getLogger("waworker.status_store")

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StatusStoreError(RuntimeError):
    """Raised when a status write cannot be applied."""


def _quote_identifier(name: str) -> str:
    if not _IDENTIFIER_RE.match(name or ""):
        raise ValueError(f"invalid sql identifier: {name!r}")
    return f'"{name}"'


class PostgresStatusStore:
    def __init__(
        self,
        database_url: str,
        *,
        table: str = "clients",
        column: str = "whatsapp_access_token",
        min_size: int = 1,
        max_size: int = 5,
    ) -> None:
        self._dsn = (database_url or "").replace("postgresql+asyncpg://", "postgresql://")
        table_sql = _quote_identifier(table)
        column_sql = _quote_identifier(column)
        self._update_sql = (
            f"UPDATE {table_sql} SET {column_sql} = $1, updated_at = $2 WHERE id::text = $3"
        )
        self._clear_sql = f"UPDATE {table_sql} SET {column_sql} = NULL WHERE id::text = $1"
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Any = None
        self._pool_lock = asyncio.Lock()

    async def _ensure_pool(self) -> Any:
        if self._pool is not None:
            return self._pool
        if not self._dsn:
            return None
        async with self._pool_lock:
            if self._pool is None:
                try:
                    self._pool = await asyncpg.create_pool(
                        self._dsn, min_size=self._min_size, max_size=self._max_size
                    )
                except (OSError, asyncpg.PostgresError) as exc:
                    raise StatusStoreError(f"pool_unavailable: {exc}") from exc
        return self._pool

    async def _execute(self, sql: str, *args: Any) -> None:
        pool = await self._ensure_pool()
        if pool is None:
            LOGGER.debug("stage=status_skip reason=no_database")
            return
        try:
            async with pool.acquire() as con:
                await con.execute(sql, *args)
        except (OSError, asyncpg.PostgresError) as exc:
            raise StatusStoreError(str(exc)) from exc

    async def set_status(self, tenant_id: str, value: str, updated_at: datetime) -> None:
        await self._execute(self._update_sql, value, updated_at, str(tenant_id))

    async def clear_status(self, tenant_id: str) -> None:
        await self._execute(self._clear_sql, str(tenant_id))

    async def close(self) -> None:
        pool: Optional[Any] = self._pool
        self._pool = None
        if pool is not None:
            await pool.close()


__all__ = ["PostgresStatusStore", "StatusStoreError"]
