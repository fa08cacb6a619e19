"""JSONL journal of pipeline events, one file per UTC day."""

from __future__ import annotations

import json
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

_ALLOWED_EVENT_TYPES = {
    "cycle_start",
    "market_data",
    "signal",
    "ai_review",
    "risk_check",
    "order",
    "position_close",
    "cycle_end",
    "error",
}


class JournalStore:
    """Append-only event store shared by all worker threads."""

    def __init__(self, journal_dir: Path) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append(self, event_type: str, bot_id: str, payload: dict[str, Any]) -> None:
        if event_type not in _ALLOWED_EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        now = datetime.now(timezone.utc)
        record = {
            "timestamp": now.isoformat(),
            "event_type": event_type,
            "bot_id": bot_id,
            "payload": payload,
        }
        line = json.dumps(record, ensure_ascii=True, default=str) + "\n"
        with self._lock:
            with self._file_path_for_day(now.date()).open("a", encoding="utf-8") as f:
                f.write(line)

    def load_recent(self, limit: int, bot_id: str | None = None) -> list[dict[str, Any]]:
        """Most recent events, oldest first, optionally for one bot."""
        if limit <= 0:
            return []

        rows: list[dict[str, Any]] = []
        for file in sorted(self._journal_dir.glob("*.jsonl"), reverse=True):
            for line in reversed(file.read_text(encoding="utf-8").splitlines()):
                if not line.strip():
                    continue
                record = json.loads(line)
                if bot_id is not None and record.get("bot_id") != bot_id:
                    continue
                rows.append(record)
                if len(rows) >= limit:
                    return list(reversed(rows))
        return list(reversed(rows))

    def _file_path_for_day(self, day: date) -> Path:
        return self._journal_dir / f"{day.isoformat()}.jsonl"
