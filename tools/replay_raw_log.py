"""
Replay the JSONL raw log into the SQLite store.

Inserts are keyed by id, so the replay can be run any number of times;
it heals structured storage after periods where only the raw append
succeeded.

    python tools/replay_raw_log.py --raw out/raw.jsonl --db data/app.sqlite
"""

from __future__ import annotations

import argparse
import asyncio
import time
from pathlib import Path
from typing import Any

from errors import StorageWriteError
from ingestion.records import (
    RECORD_EVENT,
    RECORD_SESSION,
    ChannelInfo,
    IngestRecord,
    SessionRecord,
)
from observability.logger import log_error, log_event
from storage.raw_log import JsonlRawLog
from storage.sqlite_store import SqliteStore


async def replay(raw_path: Path, db_path: Path) -> dict[str, Any]:
    raw_log = JsonlRawLog(raw_path)
    store = SqliteStore(db_path, raw_log)
    await store.open()

    totals = {"events_inserted": 0, "events_present": 0, "sessions_inserted": 0,
              "sessions_present": 0, "failed": 0, "skipped": 0}
    newest_ts = 0
    try:
        for data in raw_log.iter_records():
            record_type = data.get("record_type")
            try:
                if record_type == RECORD_EVENT:
                    record = IngestRecord.from_json_dict(data)
                    await store.upsert_channel(
                        ChannelInfo(channel_id=record.channel_id, name=record.channel_name)
                    )
                    if await store.insert_event(record):
                        totals["events_inserted"] += 1
                    else:
                        totals["events_present"] += 1
                    newest_ts = max(newest_ts, record.ts_ms)
                elif record_type == RECORD_SESSION:
                    session = SessionRecord.from_json_dict(data)
                    if await store.insert_session_record(session):
                        totals["sessions_inserted"] += 1
                    else:
                        totals["sessions_present"] += 1
                else:
                    totals["skipped"] += 1
            except (KeyError, ValueError, StorageWriteError) as e:
                totals["failed"] += 1
                log_error({
                    "ts_ms": int(time.time() * 1000),
                    "event_type": "REPLAY_RECORD_FAILED",
                    "record_type": record_type,
                    "event_id": data.get("event_id") or data.get("session_id"),
                }, e)

        if newest_ts:
            await store.set_watermark(newest_ts)
    finally:
        await store.close()

    return totals


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--raw", type=Path, default=Path("out/raw.jsonl"))
    parser.add_argument("--db", type=Path, default=Path("data/app.sqlite"))
    args = parser.parse_args()

    totals = asyncio.run(replay(args.raw, args.db))
    log_event({
        "ts_ms": int(time.time() * 1000),
        "event_type": "REPLAY_COMPLETED",
        "raw": str(args.raw),
        "db": str(args.db),
        **totals,
    })


if __name__ == "__main__":
    main()
