from __future__ import annotations

from datetime import datetime
from typing import Optional

from loguru import logger
import psycopg
from psycopg import sql as psql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from ..errors import map_db_error
from .models import WorkItem, WorkItemState

_SELECT_COLS = (
    "id",
    "status",
    "attempts",
    "cancelled_at",
    "updated_at",
    "error",
    "s3_key",
    "user_id",
    "prompt",
    "seed",
    "width",
    "height",
)


def _row_to_item(row: dict) -> WorkItem:
    return WorkItem(
        id=str(row["id"]),
        state=WorkItemState(row["status"]),
        attempts=row["attempts"] or 0,
        cancelled_at=row["cancelled_at"],
        updated_at=row["updated_at"],
        error=row["error"],
        output_key=row["s3_key"],
        user_id=str(row["user_id"] or ""),
        prompt=row["prompt"],
        seed=row["seed"],
        width=row["width"],
        height=row["height"],
    )


class PostgresWorkItemStore:
    """WorkItemStore over the request layer's ``media`` table.

    Transitions are single conditional UPDATE ... RETURNING statements, so a
    concurrent cancellation or a racing primary-path update is never
    overwritten.

    Usage:
        store = PostgresWorkItemStore("postgresql://...", table="media")
        await store.open()
        items = await store.find_stale(cutoff)
        await store.aclose()
    """

    def __init__(
        self,
        dsn: str,
        *,
        table: str = "media",
        pool_max: int = 5,
        source_type: Optional[str] = "generation",
    ):
        self._table = psql.Identifier(table)
        self._source_type = source_type
        self.pool = AsyncConnectionPool(
            conninfo=dsn,
            max_size=pool_max,
            kwargs={"autocommit": True},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open()

    async def aclose(self) -> None:
        await self.pool.close()

    def _select(self) -> psql.Composed:
        cols = psql.SQL(", ").join(psql.Identifier(c) for c in _SELECT_COLS)
        return psql.SQL("SELECT {} FROM {}").format(cols, self._table)

    async def _fetch(self, query: psql.Composable, params: dict) -> list[dict]:
        try:
            async with self.pool.connection() as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(query, params)
                    return await cur.fetchall()
        except psycopg.Error as exc:
            raise map_db_error(exc) from exc

    # ---------- reads ----------

    async def get(self, item_id: str) -> Optional[WorkItem]:
        q = psql.SQL("{} WHERE id = %(id)s").format(self._select())
        rows = await self._fetch(q, {"id": item_id})
        return _row_to_item(rows[0]) if rows else None

    async def find_stale(self, older_than: datetime, limit: int = 100) -> list[WorkItem]:
        where = [
            "status IN ('queued', 'processing')",
            "cancelled_at IS NULL",
            "updated_at < %(cutoff)s",
        ]
        params: dict = {"cutoff": older_than, "limit": limit}
        if self._source_type is not None:
            where.append("source_type = %(source_type)s")
            params["source_type"] = self._source_type
        q = psql.SQL("{} WHERE {} ORDER BY updated_at LIMIT %(limit)s").format(
            self._select(), psql.SQL(" AND ".join(where))
        )
        return [_row_to_item(r) for r in await self._fetch(q, params)]

    # ---------- transitions ----------

    async def _update(self, assignments: str, params: dict, *, require_uncancelled: bool = True) -> bool:
        guard = "status IN ('queued', 'processing')"
        if require_uncancelled:
            guard += " AND cancelled_at IS NULL"
        q = psql.SQL("UPDATE {} SET {}, updated_at = now() WHERE id = %(id)s AND {} RETURNING id").format(
            self._table, psql.SQL(assignments), psql.SQL(guard)
        )
        rows = await self._fetch(q, params)
        if not rows:
            logger.debug(f"Conditional update matched nothing id={params['id']}")
        return bool(rows)

    async def mark_processing(self, item_id: str) -> bool:
        return await self._update("status = 'processing'", {"id": item_id})

    async def mark_completed(self, item_id: str, output_key: str) -> bool:
        return await self._update(
            "status = 'completed', s3_key = %(key)s, error = NULL",
            {"id": item_id, "key": output_key},
        )

    async def mark_failed(self, item_id: str, error: str) -> bool:
        return await self._update("status = 'failed', error = %(error)s", {"id": item_id, "error": error})

    async def requeue(self, item_id: str, attempts: int, error: str) -> bool:
        return await self._update(
            "status = 'queued', attempts = %(attempts)s, error = %(error)s",
            {"id": item_id, "attempts": attempts, "error": error},
        )

    async def mark_cancelled(self, item_id: str, error: str = "Cancelled") -> bool:
        return await self._update(
            "status = 'failed', error = %(error)s, cancelled_at = COALESCE(cancelled_at, now())",
            {"id": item_id, "error": error},
            require_uncancelled=False,
        )
