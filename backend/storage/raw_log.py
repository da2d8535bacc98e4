"""
Append-only JSONL raw log.

The durable first write for every captured record. One JSON object per
line, appended and flushed before any structured write is attempted.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Iterator, Mapping


class JsonlRawLog:
    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    async def append(self, record: Mapping[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
        async with self._lock:
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
                fh.flush()

    def iter_records(self) -> Iterator[dict[str, Any]]:
        """
        Yield every parseable line. Malformed lines (e.g. a torn final
        write) are skipped.
        """
        if not self._path.exists():
            return
        with self._path.open("r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    continue
