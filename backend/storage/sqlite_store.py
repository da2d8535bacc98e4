"""
SQLite structured store (+ raw log delegation).

Implements StorageProtocol:
- Dimension rows (channels, identities) are merge-upserted: NULL incoming
  values never overwrite stored values.
- Events and sessions are inserted keyed by id; an existing id is a
  silent no-op (INSERT OR IGNORE).
- The continuity watermark lives in a one-row-per-key table.

Write failures are raised as StorageWriteError with the operation name.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping

import aiosqlite

from errors import StorageWriteError
from ingestion.records import ChannelInfo, IdentityRecord, IngestRecord, SessionRecord
from storage.raw_log import JsonlRawLog


WATERMARK_KEY = "watermark_ms"

SCHEMA = """
CREATE TABLE IF NOT EXISTS channels (
    channel_id TEXT PRIMARY KEY,
    name TEXT,
    is_group INTEGER NOT NULL DEFAULT 0,
    last_activity_ts_ms INTEGER
);

CREATE TABLE IF NOT EXISTS identities (
    identity_id TEXT PRIMARY KEY,
    display_name TEXT,
    handle TEXT,
    last_seen_ts_ms INTEGER
);

CREATE TABLE IF NOT EXISTS events (
    event_id TEXT PRIMARY KEY,
    channel_id TEXT NOT NULL,
    channel_name TEXT,
    sender_id TEXT,
    sender_name TEXT,
    participant_id TEXT,
    participant_name TEXT,
    kind TEXT NOT NULL,
    body TEXT,
    ts_ms INTEGER NOT NULL,
    from_me INTEGER NOT NULL DEFAULT 0,
    ingested_at_ms INTEGER,
    metadata_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_channel_ts ON events (channel_id, ts_ms);
CREATE INDEX IF NOT EXISTS idx_events_sender_ts ON events (sender_id, ts_ms);
CREATE INDEX IF NOT EXISTS idx_events_ts ON events (ts_ms);

CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    channel_id TEXT NOT NULL,
    initiator_id TEXT,
    counterpart_id TEXT,
    is_video INTEGER NOT NULL DEFAULT 0,
    is_group INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    start_ts_ms INTEGER NOT NULL,
    end_ts_ms INTEGER,
    duration_ms INTEGER
);

CREATE TABLE IF NOT EXISTS continuity (
    key TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);
"""


class SqliteStore:
    def __init__(self, db_path: Path | str, raw_log: JsonlRawLog) -> None:
        self._db_path = str(db_path)
        self._raw_log = raw_log
        self._db: aiosqlite.Connection | None = None

    @property
    def raw_log(self) -> JsonlRawLog:
        return self._raw_log

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._raw_log.ensure_parent()

        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SqliteStore is not open")
        return self._db

    async def _write(self, operation: str, sql: str, params: tuple[Any, ...], **ids: Any) -> int:
        db = self._conn()
        try:
            cursor = await db.execute(sql, params)
            await db.commit()
        except aiosqlite.Error as e:
            raise StorageWriteError(operation, str(e), **ids) from e
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Raw log
    # ------------------------------------------------------------------

    async def append_raw(self, record: Mapping[str, Any]) -> None:
        await self._raw_log.append(record)

    # ------------------------------------------------------------------
    # Dimensions
    # ------------------------------------------------------------------

    async def upsert_channel(self, channel: ChannelInfo) -> None:
        await self._write(
            "upsert_channel",
            """
            INSERT INTO channels (channel_id, name, is_group, last_activity_ts_ms)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(channel_id) DO UPDATE SET
                name = COALESCE(excluded.name, channels.name),
                is_group = excluded.is_group,
                last_activity_ts_ms = MAX(
                    COALESCE(excluded.last_activity_ts_ms, 0),
                    COALESCE(channels.last_activity_ts_ms, 0)
                )
            WHERE channels.name IS NOT excluded.name
               OR channels.is_group IS NOT excluded.is_group
               OR COALESCE(excluded.last_activity_ts_ms, 0)
                  > COALESCE(channels.last_activity_ts_ms, 0)
            """,
            (
                channel.channel_id,
                channel.name,
                int(channel.is_group),
                channel.last_activity_ts_ms,
            ),
            channel_id=channel.channel_id,
        )

    async def upsert_identity(self, identity: IdentityRecord) -> None:
        await self._write(
            "upsert_identity",
            """
            INSERT INTO identities (identity_id, display_name, handle, last_seen_ts_ms)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(identity_id) DO UPDATE SET
                display_name = COALESCE(excluded.display_name, identities.display_name),
                handle = COALESCE(excluded.handle, identities.handle),
                last_seen_ts_ms = MAX(
                    COALESCE(excluded.last_seen_ts_ms, 0),
                    COALESCE(identities.last_seen_ts_ms, 0)
                )
            """,
            (
                identity.identity_id,
                identity.display_name,
                identity.handle,
                identity.last_seen_ts_ms,
            ),
            identity_id=identity.identity_id,
        )

    # ------------------------------------------------------------------
    # Facts
    # ------------------------------------------------------------------

    async def insert_event(self, record: IngestRecord) -> bool:
        rowcount = await self._write(
            "insert_event",
            """
            INSERT OR IGNORE INTO events (
                event_id, channel_id, channel_name, sender_id, sender_name,
                participant_id, participant_name, kind, body, ts_ms,
                from_me, ingested_at_ms, metadata_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.event_id,
                record.channel_id,
                record.channel_name,
                record.sender_id,
                record.sender_name,
                record.participant_id,
                record.participant_name,
                record.kind,
                record.body,
                record.ts_ms,
                int(record.from_me),
                record.ingested_at_ms,
                json.dumps(dict(record.metadata), ensure_ascii=False),
            ),
            event_id=record.event_id,
            channel_id=record.channel_id,
        )
        return rowcount == 1

    async def insert_session_record(self, record: SessionRecord) -> bool:
        rowcount = await self._write(
            "insert_session_record",
            """
            INSERT OR IGNORE INTO sessions (
                session_id, channel_id, initiator_id, counterpart_id,
                is_video, is_group, status, start_ts_ms, end_ts_ms, duration_ms
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.session_id,
                record.channel_id,
                record.initiator_id,
                record.counterpart_id,
                int(record.is_video),
                int(record.is_group),
                record.status,
                record.start_ts_ms,
                record.end_ts_ms,
                record.duration_ms,
            ),
            session_id=record.session_id,
            channel_id=record.channel_id,
        )
        return rowcount == 1

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_event_count(self, channel_id: str) -> int:
        async with self._conn().execute(
            "SELECT COUNT(*) FROM events WHERE channel_id = ?", (channel_id,)
        ) as cur:
            row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def get_active_channels(self, since_ts_ms: int, limit: int) -> list[str]:
        """Channel ids ordered by event volume since since_ts_ms (desc)."""
        async with self._conn().execute(
            """
            SELECT channel_id, COUNT(*) AS n
            FROM events
            WHERE ts_ms >= ?
            GROUP BY channel_id
            ORDER BY n DESC, channel_id ASC
            LIMIT ?
            """,
            (since_ts_ms, limit),
        ) as cur:
            rows = await cur.fetchall()
        return [str(row["channel_id"]) for row in rows]

    async def get_event(self, event_id: str) -> dict[str, Any] | None:
        async with self._conn().execute(
            "SELECT * FROM events WHERE event_id = ?", (event_id,)
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def get_channel(self, channel_id: str) -> dict[str, Any] | None:
        async with self._conn().execute(
            "SELECT * FROM channels WHERE channel_id = ?", (channel_id,)
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    async def get_identity(self, identity_id: str) -> dict[str, Any] | None:
        async with self._conn().execute(
            "SELECT * FROM identities WHERE identity_id = ?", (identity_id,)
        ) as cur:
            row = await cur.fetchone()
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # Continuity
    # ------------------------------------------------------------------

    async def get_watermark(self) -> int | None:
        async with self._conn().execute(
            "SELECT value FROM continuity WHERE key = ?", (WATERMARK_KEY,)
        ) as cur:
            row = await cur.fetchone()
        return int(row[0]) if row else None

    async def set_watermark(self, value: int) -> None:
        await self._write(
            "set_watermark",
            """
            INSERT INTO continuity (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = MAX(continuity.value, excluded.value)
            """,
            (WATERMARK_KEY, value),
        )
