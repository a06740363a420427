"""
chiptime/events.py
------------------
"Race updated" fan-out. The core publishes one RaceUpdated per change; views
(HTTP streams, the CLI watch loop, tests) subscribe by race name and redraw
themselves.

publish() runs callbacks synchronously on the publishing thread, which is
often a watcher's poller. Callbacks should hand off quickly. A callback that
raises is logged and the remaining subscribers still run.
"""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

log = logging.getLogger("chiptime.events")

# reasons
RECONCILED = "reconciled"
FILE_CHANGED = "file_changed"
INVALID_TOGGLED = "invalid_toggled"
MANUAL_ADDED = "manual_added"
LIVE_TOGGLED = "live_toggled"
RACE_CHANGED = "race_changed"
RACE_DELETED = "race_deleted"

REASONS = frozenset({
    RECONCILED, FILE_CHANGED, INVALID_TOGGLED, MANUAL_ADDED,
    LIVE_TOGGLED, RACE_CHANGED, RACE_DELETED,
})

ANY_RACE = "*"


@dataclass(frozen=True)
class RaceUpdated:
    race_name: str
    reason: str
    result_count: int = 0

    def to_json(self) -> Dict[str, object]:
        return {"race": self.race_name, "reason": self.reason, "results": self.result_count}


Callback = Callable[[RaceUpdated], None]


class RaceEventBus:
    def __init__(self):
        self._lock = threading.Lock()
        self._subs: Dict[int, Tuple[str, Callback]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, race_name: str, callback: Callback) -> int:
        """Register `callback` for one race, or for every race with ANY_RACE."""
        with self._lock:
            token = next(self._ids)
            self._subs[token] = (race_name, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subs.pop(token, None) is not None

    def subscriber_count(self, race_name: Optional[str] = None) -> int:
        with self._lock:
            if race_name is None:
                return len(self._subs)
            return sum(1 for name, _ in self._subs.values() if name == race_name)

    def publish(self, event: RaceUpdated) -> int:
        """Deliver `event`; returns how many callbacks ran without raising."""
        if event.reason not in REASONS:
            raise ValueError(f"unknown event reason: {event.reason!r}")
        with self._lock:
            targets: List[Callback] = [
                cb for name, cb in self._subs.values()
                if name == event.race_name or name == ANY_RACE
            ]
        delivered = 0
        for cb in targets:
            try:
                cb(event)
                delivered += 1
            except Exception:
                log.exception("subscriber failed for %s (%s)", event.race_name, event.reason)
        return delivered
