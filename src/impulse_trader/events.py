"""Notifications emitted by the engines on lifecycle changes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Literal

EventKind = Literal[
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
]


@dataclass(frozen=True, slots=True)
class EngineEvent:
    """One state change with a snapshot taken at emission time."""

    kind: EventKind
    key: str
    snapshot: dict[str, Any]
    at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "key": self.key,
            "at": self.at.isoformat(),
            "snapshot": self.snapshot,
        }


EventCallback = Callable[[EngineEvent], None]
