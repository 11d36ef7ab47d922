"""JSONL journal for scan cycles and engine events."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from impulse_trader.events import EngineEvent

_ALLOWED_EVENT_TYPES = {
    "cycle_start",
    "market_data",
    "setup_new",
    "setup_updated",
    "setup_removed",
    "position_opened",
    "breakeven_locked",
    "trailing_activated",
    "trailing_moved",
    "position_partially_closed",
    "position_closed",
    "position_failed",
    "rejection",
    "cycle_end",
    "error",
}


class JournalStore:
    """Append-only daily JSONL event store."""

    def __init__(self, journal_dir: Path) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)

    def append(self, event_type: str, payload: dict[str, Any]) -> None:
        """Append one event line to today's file."""
        if event_type not in _ALLOWED_EVENT_TYPES:
            raise ValueError(f"unsupported_event_type: {event_type}")
        now = datetime.now(timezone.utc)
        record = {
            "timestamp": now.isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        with self._file_path_for_day(now.date()).open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")

    def record_event(self, event: EngineEvent) -> None:
        """Journal an engine event under its own kind."""
        self.append(event.kind, event.to_payload())

    def load_recent(self, limit: int) -> list[dict[str, Any]]:
        """Load the most recent events, oldest first."""
        if limit <= 0:
            return []

        rows: list[dict[str, Any]] = []
        files = sorted(self._journal_dir.glob("*.jsonl"), reverse=True)
        for file in files:
            lines = file.read_text(encoding="utf-8").splitlines()
            for line in reversed(lines):
                if not line.strip():
                    continue
                rows.append(json.loads(line))
                if len(rows) >= limit:
                    return list(reversed(rows))
        return list(reversed(rows))

    def _file_path_for_day(self, day: date) -> Path:
        return self._journal_dir / f"{day.isoformat()}.jsonl"
