"""
SQLite-backed store of conversations, their exchanges and exchange events.

Uses ``aiosqlite`` with a write lock to serialise mutations (SQLite allows a
single writer in WAL mode).  The schema is version-tracked through a
``schema_version`` table and migrated on ``init()``.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from toolrelay.session.events import ExchangeEvent

# ---------------------------------------------------------------------------
# Schema management
# ---------------------------------------------------------------------------

SCHEMA_VERSION = 1

MIGRATIONS: dict[int, list[str]] = {
    1: [
        """CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS conversations (
            conversation_id TEXT PRIMARY KEY,
            created_at TEXT NOT NULL,
            metadata TEXT NOT NULL DEFAULT '{}'
        )""",
        """CREATE TABLE IF NOT EXISTS exchanges (
            exchange_id TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            model TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            outcome TEXT,
            passes INTEGER NOT NULL DEFAULT 0,
            FOREIGN KEY (conversation_id) REFERENCES conversations(conversation_id) ON DELETE CASCADE
        )""",
        """CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            exchange_id TEXT NOT NULL,
            event_id TEXT NOT NULL UNIQUE,
            event_type TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            payload TEXT NOT NULL,
            FOREIGN KEY (exchange_id) REFERENCES exchanges(exchange_id) ON DELETE CASCADE
        )""",
        """CREATE INDEX IF NOT EXISTS idx_exchanges_conversation ON exchanges(conversation_id)""",
        """CREATE INDEX IF NOT EXISTS idx_events_exchange ON events(exchange_id)""",
    ],
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ExchangeStore:
    """
    Async SQLite store for conversations and the exchanges inside them.

    Usage::

        store = ExchangeStore("~/.toolrelay/history.db")
        await store.init()
        cid = await store.create_conversation()
        xid = await store.begin_exchange(cid, "openai", "gpt-4o")
        await store.append_event(event)
        await store.finish_exchange(xid, "completed", passes=2)
        await store.close()
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Open the database and ensure the schema is up to date."""
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._run_migrations()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> ExchangeStore:
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Migration runner
    # ------------------------------------------------------------------

    async def _get_schema_version(self) -> int:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
        )
        if await cursor.fetchone() is None:
            return 0
        cursor = await self._db.execute("SELECT version FROM schema_version LIMIT 1")
        row = await cursor.fetchone()
        return 0 if row is None else int(row[0])

    async def _run_migrations(self) -> None:
        """Apply any pending migrations sequentially."""
        assert self._db is not None
        current = await self._get_schema_version()
        if current >= SCHEMA_VERSION:
            return

        for version in range(current + 1, SCHEMA_VERSION + 1):
            stmts = MIGRATIONS.get(version)
            if stmts is None:
                raise RuntimeError(f"Missing migration for schema version {version}")
            for stmt in stmts:
                await self._db.execute(stmt)

        await self._db.execute("DELETE FROM schema_version")
        await self._db.execute(
            "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
        )
        await self._db.commit()

    async def get_schema_version(self) -> int:
        return await self._get_schema_version()

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(self, metadata: dict | None = None) -> str:
        assert self._db is not None
        conversation_id = str(uuid.uuid4())
        async with self._write_lock:
            await self._db.execute(
                "INSERT INTO conversations (conversation_id, created_at, metadata) VALUES (?, ?, ?)",
                (conversation_id, _now(), json.dumps(metadata or {})),
            )
            await self._db.commit()
        return conversation_id

    async def list_conversations(self) -> list[dict]:
        """All conversations, newest first."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT conversation_id, created_at, metadata FROM conversations ORDER BY created_at DESC"
        )
        return [
            {"conversation_id": row[0], "created_at": row[1], "metadata": json.loads(row[2])}
            for row in await cursor.fetchall()
        ]

    async def delete_conversation(self, conversation_id: str) -> None:
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                "DELETE FROM events WHERE exchange_id IN "
                "(SELECT exchange_id FROM exchanges WHERE conversation_id = ?)",
                (conversation_id,),
            )
            await self._db.execute(
                "DELETE FROM exchanges WHERE conversation_id = ?", (conversation_id,)
            )
            await self._db.execute(
                "DELETE FROM conversations WHERE conversation_id = ?", (conversation_id,)
            )
            await self._db.commit()

    # ------------------------------------------------------------------
    # Exchanges
    # ------------------------------------------------------------------

    async def begin_exchange(self, conversation_id: str, provider: str, model: str) -> str:
        assert self._db is not None
        exchange_id = str(uuid.uuid4())
        async with self._write_lock:
            await self._db.execute(
                """INSERT INTO exchanges
                   (exchange_id, conversation_id, provider, model, started_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (exchange_id, conversation_id, provider, model, _now()),
            )
            await self._db.commit()
        return exchange_id

    async def finish_exchange(self, exchange_id: str, outcome: str, passes: int = 0) -> None:
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                "UPDATE exchanges SET finished_at = ?, outcome = ?, passes = ? WHERE exchange_id = ?",
                (_now(), outcome, passes, exchange_id),
            )
            await self._db.commit()

    async def discard_exchange(self, exchange_id: str) -> None:
        """Remove an exchange and every event recorded for it."""
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute("DELETE FROM events WHERE exchange_id = ?", (exchange_id,))
            await self._db.execute("DELETE FROM exchanges WHERE exchange_id = ?", (exchange_id,))
            await self._db.commit()

    async def get_exchange(self, exchange_id: str) -> dict | None:
        assert self._db is not None
        cursor = await self._db.execute(
            """SELECT exchange_id, conversation_id, provider, model,
                      started_at, finished_at, outcome, passes
               FROM exchanges WHERE exchange_id = ?""",
            (exchange_id,),
        )
        row = await cursor.fetchone()
        return None if row is None else dict(row)

    async def list_exchanges(self, conversation_id: str) -> list[dict]:
        """Exchanges of a conversation in start order."""
        assert self._db is not None
        cursor = await self._db.execute(
            """SELECT exchange_id, conversation_id, provider, model,
                      started_at, finished_at, outcome, passes
               FROM exchanges WHERE conversation_id = ?
               ORDER BY started_at ASC, rowid ASC""",
            (conversation_id,),
        )
        return [dict(row) for row in await cursor.fetchall()]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def append_event(self, event: ExchangeEvent) -> None:
        assert self._db is not None
        async with self._write_lock:
            await self._db.execute(
                """INSERT INTO events
                   (exchange_id, event_id, event_type, timestamp, payload)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    event.exchange_id,
                    event.event_id,
                    event.event_type,
                    event.timestamp.isoformat(),
                    json.dumps(event.payload, default=str),
                ),
            )
            await self._db.commit()

    async def get_events(
        self,
        exchange_id: str,
        event_type: str | None = None,
    ) -> list[ExchangeEvent]:
        """Events of an exchange in insertion order, optionally filtered by type."""
        assert self._db is not None
        query = (
            "SELECT event_id, exchange_id, event_type, timestamp, payload "
            "FROM events WHERE exchange_id = ?"
        )
        params: tuple = (exchange_id,)
        if event_type is not None:
            query += " AND event_type = ?"
            params += (event_type,)
        cursor = await self._db.execute(query + " ORDER BY id ASC", params)
        return [
            ExchangeEvent(
                event_id=row[0],
                exchange_id=row[1],
                event_type=row[2],
                timestamp=datetime.fromisoformat(row[3]),
                payload=json.loads(row[4]),
            )
            for row in await cursor.fetchall()
        ]
