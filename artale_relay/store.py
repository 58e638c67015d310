"""
SQLite persistence for user subscriptions.

Stores one row per user: destination channel, ordered keyword filters (as a
JSON array) and the receive-everything flag. The engine and the dispatcher
never cache rows; every call reads the database.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone

import aiosqlite
import structlog

from .errors import StoreError
from .models import KeywordFilter, Subscription

log = structlog.get_logger()

_SCHEMA = """
CREATE TABLE IF NOT EXISTS subscriptions (
    user_id         TEXT PRIMARY KEY,
    channel_id      TEXT NOT NULL,
    keyword_filters TEXT NOT NULL DEFAULT '[]',
    receive_all     INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_channel
    ON subscriptions(channel_id);
"""


def _encode_filters(filters: list[KeywordFilter]) -> str:
    return json.dumps(
        [f.model_dump(mode="json") for f in filters], ensure_ascii=False
    )


def _row_to_subscription(row: aiosqlite.Row) -> Subscription:
    return Subscription(
        user_id=row["user_id"],
        channel_id=row["channel_id"],
        keyword_filters=json.loads(row["keyword_filters"]),
        receive_all=bool(row["receive_all"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SubscriptionStore:
    """Async SQLite store keyed by user id."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self._db_path)
            self._db.row_factory = aiosqlite.Row
            await self._db.executescript(_SCHEMA)
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(str(exc), code="open_failed") from exc
        log.info("store.opened", db_path=self._db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def get(self, user_id: str) -> Subscription | None:
        assert self._db
        try:
            cursor = await self._db.execute(
                "SELECT * FROM subscriptions WHERE user_id = ?", (user_id,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreError(str(exc), code="read_failed") from exc
        return _row_to_subscription(row) if row else None

    async def list_all(self) -> list[Subscription]:
        assert self._db
        try:
            cursor = await self._db.execute(
                "SELECT * FROM subscriptions ORDER BY created_at, user_id"
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StoreError(str(exc), code="read_failed") from exc
        return [_row_to_subscription(r) for r in rows]

    async def count(self) -> int:
        assert self._db
        try:
            cursor = await self._db.execute("SELECT COUNT(*) FROM subscriptions")
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreError(str(exc), code="read_failed") from exc
        return int(row[0]) if row else 0

    async def upsert(
        self,
        user_id: str,
        channel_id: str,
        keyword_filters: list[KeywordFilter],
        receive_all: bool = False,
    ) -> Subscription:
        """Write a full record, replacing filters; created_at is kept on update."""
        assert self._db
        now = datetime.now(timezone.utc).isoformat()
        encoded = _encode_filters(keyword_filters)
        try:
            await self._db.execute(
                """INSERT INTO subscriptions
                   (user_id, channel_id, keyword_filters, receive_all, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(user_id) DO UPDATE SET
                       channel_id=excluded.channel_id,
                       keyword_filters=excluded.keyword_filters,
                       receive_all=excluded.receive_all,
                       updated_at=excluded.updated_at""",
                (user_id, channel_id, encoded, int(receive_all), now, now),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(str(exc), code="write_failed") from exc

        stored = await self.get(user_id)
        assert stored is not None
        return stored

    async def delete(self, user_id: str) -> bool:
        """Delete a record; returns whether one existed."""
        assert self._db
        try:
            cursor = await self._db.execute(
                "DELETE FROM subscriptions WHERE user_id = ?", (user_id,)
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(str(exc), code="write_failed") from exc
        return cursor.rowcount > 0
