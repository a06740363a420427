"""
chiptime/registry.py
--------------------
Concurrency-safe store for the state the UI thread(s) and the live-update
pollers share:

    race name -> watcher handle      (at most one per race)
    view id   -> search text         (last write wins, "" when unknown)
    view id   -> ViewState           (last full + filtered result lists)

Reads take the shared side of a ReadWriteLock, mutations the exclusive side,
so no reader ever sees a half-applied change. The registry knows nothing
about races or results beyond storing them.

Stopping a watcher waits for its poller thread, and that thread's callback
may itself read the registry. remove_watcher() therefore takes the handle out
under the lock and stops it after releasing the lock.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .models import ViewState

log = logging.getLogger("chiptime.registry")


class ReadWriteLock:
    """Many concurrent readers or one writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class ConcurrencyRegistry:
    def __init__(self):
        self._lock = ReadWriteLock()
        self._watchers: Dict[str, Any] = {}       # handle: anything with .stop()
        self._searches: Dict[str, str] = {}
        self._views: Dict[str, ViewState] = {}

    # ---------------- watcher handles ----------------

    def add_watcher(self, race_name: str, handle: Any) -> bool:
        """Register `handle`; False (and no change) if the race already has one."""
        with self._lock.write():
            if race_name in self._watchers:
                return False
            self._watchers[race_name] = handle
            return True

    def remove_watcher(self, race_name: str) -> bool:
        """Stop and forget the race's watcher. False if there was none."""
        with self._lock.write():
            handle = self._watchers.pop(race_name, None)
        if handle is None:
            return False
        handle.stop()
        log.info("watcher removed: %s", race_name)
        return True

    def has_watcher(self, race_name: str) -> bool:
        with self._lock.read():
            return race_name in self._watchers

    def get_watcher(self, race_name: str) -> Optional[Any]:
        with self._lock.read():
            return self._watchers.get(race_name)

    def watcher_names(self) -> List[str]:
        with self._lock.read():
            return sorted(self._watchers)

    def stop_all_watchers(self) -> int:
        with self._lock.write():
            handles = list(self._watchers.items())
            self._watchers.clear()
        for name, handle in handles:
            try:
                handle.stop()
            except Exception:
                log.exception("stopping watcher %s failed", name)
        return len(handles)

    # ---------------- search text ----------------

    def set_search(self, view_id: str, text: str) -> None:
        with self._lock.write():
            self._searches[view_id] = text or ""

    def get_search(self, view_id: str) -> str:
        with self._lock.read():
            return self._searches.get(view_id, "")

    def clear_search(self, view_id: str) -> None:
        with self._lock.write():
            self._searches.pop(view_id, None)

    # ---------------- view state ----------------

    def add_view(self, view_id: str, state: ViewState) -> None:
        with self._lock.write():
            self._views[view_id] = state

    def remove_view(self, view_id: str) -> Optional[ViewState]:
        with self._lock.write():
            self._searches.pop(view_id, None)
            return self._views.pop(view_id, None)

    def get_view(self, view_id: str) -> Tuple[Optional[ViewState], bool]:
        with self._lock.read():
            state = self._views.get(view_id)
            return state, state is not None

    def update_view(self, view_id: str, fn: Callable[[ViewState], ViewState]) -> Optional[ViewState]:
        """Replace the view's state with fn(copy). None if the view is gone."""
        with self._lock.write():
            state = self._views.get(view_id)
            if state is None:
                return None
            new = fn(replace(state))
            self._views[view_id] = new
            return new

    def views_for_race(self, race_name: str) -> List[Tuple[str, ViewState]]:
        with self._lock.read():
            return [(vid, st) for vid, st in self._views.items() if st.race_name == race_name]

    def view_ids(self) -> List[str]:
        with self._lock.read():
            return list(self._views)
