from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from impulse_trader.events import EngineEvent
from impulse_trader.journal.store import JournalStore


def test_append_and_load_recent(tmp_path: Path) -> None:
    store = JournalStore(tmp_path / "journal")
    store.append("cycle_start", {"cycle": 1})
    store.append("market_data", {"symbol": "BTCUSDT", "rows": 100})
    store.append("cycle_end", {"status": "completed"})

    rows = store.load_recent(2)
    assert [row["event_type"] for row in rows] == ["market_data", "cycle_end"]
    assert rows[0]["payload"]["symbol"] == "BTCUSDT"
    assert store.load_recent(0) == []
    assert len(store.load_recent(10)) == 3


def test_unknown_event_type_is_refused(tmp_path: Path) -> None:
    store = JournalStore(tmp_path)
    with pytest.raises(ValueError, match="unsupported_event_type"):
        store.append("order_placed", {})


def test_engine_events_are_journaled_under_their_kind(tmp_path: Path) -> None:
    store = JournalStore(tmp_path)
    at = datetime(2024, 3, 1, tzinfo=UTC)
    store.record_event(
        EngineEvent(kind="position_opened", key="BTCUSDT-1h-long-futures", snapshot={"at": at}, at=at)
    )

    (row,) = store.load_recent(1)
    assert row["event_type"] == "position_opened"
    assert row["payload"]["key"] == "BTCUSDT-1h-long-futures"
    assert row["payload"]["at"] == at.isoformat()
    assert row["payload"]["snapshot"]["at"] == str(at)
