"""Draft store: ``save(key, value)`` / ``load(key)`` persistence for records and autosaved forms."""

import asyncio
import json
import logging
import sqlite3
import time
from collections import Counter
from pathlib import Path
from typing import Protocol

import payd.constants as C

log = logging.getLogger("payd.store")


class Store(Protocol):
    async def save(self, key: str, value: dict) -> None: ...
    async def load(self, key: str) -> dict | None: ...
    async def delete(self, key: str) -> bool: ...
    async def find_by_state(self, *states: C.TxState | str) -> list[dict]: ...
    async def all_records(self) -> list[dict]: ...
    def snapshot_stats(self) -> dict: ...


def _is_record(key: str) -> bool:
    return key.startswith(C.RECORD_PREFIX)


class InMemoryStore:
    """Dict-backed store. Values are copied in and out so callers never share state with the store."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._values: dict[str, str] = {}
        self.count_by_state: dict[str, int] = {}

    def _recount(self) -> None:
        self.count_by_state = Counter(
            json.loads(v).get("state", "UNKNOWN") for k, v in self._values.items() if _is_record(k)
        )

    async def save(self, key: str, value: dict) -> None:
        if not key:
            raise ValueError("save() requires a key")
        blob = json.dumps(value)
        async with self._lock:
            self._values[key] = blob
            self._recount()
        log.debug("save %s", key)

    async def load(self, key: str) -> dict | None:
        async with self._lock:
            blob = self._values.get(key)
        return json.loads(blob) if blob is not None else None

    async def delete(self, key: str) -> bool:
        async with self._lock:
            existed = self._values.pop(key, None) is not None
            self._recount()
        return existed

    async def find_by_state(self, *states: C.TxState | str) -> list[dict]:
        wanted = {str(s) for s in states}
        return [rec for rec in await self.all_records() if rec.get("state") in wanted]

    async def all_records(self) -> list[dict]:
        async with self._lock:
            return [json.loads(v) for k, v in self._values.items() if _is_record(k)]

    def snapshot_stats(self) -> dict:
        return {
            "by_state": dict(self.count_by_state),
            "total_tracked": sum(self.count_by_state.values()),
        }


class SQLiteStore:
    """Persistent store backed by SQLite."""

    def __init__(self, db_path: str | Path = "payd_state.db") -> None:
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self.count_by_state: dict[str, int] = {}

        self._init_db()
        self._recount()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        conn = self._connect()
        try:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS drafts (
                    key TEXT PRIMARY KEY,
                    state TEXT,            -- NULL for non-record values (autosaved forms)
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    data TEXT NOT NULL     -- JSON blob for all fields
                );
                CREATE INDEX IF NOT EXISTS idx_drafts_state ON drafts(state);
                """
            )
            conn.commit()
            log.debug(f"SQLite database initialized at {self.db_path}")
        finally:
            conn.close()

    def _recount(self) -> None:
        conn = self._connect()
        try:
            cursor = conn.execute("SELECT state, COUNT(*) FROM drafts WHERE state IS NOT NULL GROUP BY state")
            self.count_by_state = dict(cursor.fetchall())
        finally:
            conn.close()

    async def save(self, key: str, value: dict) -> None:
        """Insert or replace ``key``. The row is written in a single statement, so readers see old or new, never a mix."""
        if not key:
            raise ValueError("save() requires a key")
        state = value.get("state") if _is_record(key) else None

        async with self._lock:
            conn = self._connect()
            try:
                now = time.time()
                conn.execute(
                    """
                    INSERT INTO drafts (key, state, created_at, updated_at, data)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        state = excluded.state,
                        updated_at = excluded.updated_at,
                        data = excluded.data
                    """,
                    (key, state, now, now, json.dumps(value)),
                )
                conn.commit()
                self._recount()
            finally:
                conn.close()
        log.debug("save %s state=%s", key, state)

    async def load(self, key: str) -> dict | None:
        async with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("SELECT data FROM drafts WHERE key = ?", (key,))
                row = cursor.fetchone()
                return json.loads(row[0]) if row else None
            finally:
                conn.close()

    async def delete(self, key: str) -> bool:
        async with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("DELETE FROM drafts WHERE key = ?", (key,))
                conn.commit()
                self._recount()
                return cursor.rowcount > 0
            finally:
                conn.close()

    async def find_by_state(self, *states: C.TxState | str) -> list[dict]:
        """Return records matching any of the given states."""
        wanted = [str(s) for s in states]
        if not wanted:
            return []
        placeholders = ",".join("?" * len(wanted))
        async with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute(
                    f"SELECT data FROM drafts WHERE state IN ({placeholders}) ORDER BY created_at", wanted
                )
                return [json.loads(row[0]) for row in cursor.fetchall()]
            finally:
                conn.close()

    async def all_records(self) -> list[dict]:
        async with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("SELECT data FROM drafts WHERE state IS NOT NULL ORDER BY created_at")
                return [json.loads(row[0]) for row in cursor.fetchall()]
            finally:
                conn.close()

    def snapshot_stats(self) -> dict:
        return {
            "by_state": dict(self.count_by_state),
            "total_tracked": sum(self.count_by_state.values()),
            "db_path": str(self.db_path),
        }
