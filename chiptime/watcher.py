"""
chiptime/watcher.py
-------------------
Live update: one poller thread per race that re-reconciles when the race's
punch file changes.

State machine
-------------
    IDLE --start()--> POLLING --stop()--> STOPPED (terminal)
    IDLE --stop()--> STOPPED

Each tick (default 1 s) asks a ChangeDetector whether the file changed. On a
change the cached results are dropped, the race is reloaded from the store
and reconciled, and notify(race_name, results) gets the reconciled list. An
unreadable file is logged and polling continues.

stop() is synchronous: it joins the poller thread with no timeout, so once
it returns no further notify() can happen. Called from inside the poller's
own notify() it cannot join itself; it flags the watcher STOPPED and the
loop exits when the callback returns. Stopping twice is a WatcherStateError.

Change detection sits behind ChangeDetector so an OS file-notification
backend can replace mtime polling without touching the reconciler.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from .config_loader import DEFAULT_WATCH_INTERVAL_S
from .errors import ChipTimeError, WatcherConfigError, WatcherStateError
from .models import Race, TimedResult
from .reconciler import ResultReconciler

log = logging.getLogger("chiptime.watcher")

NotifyFn = Callable[[str, List[TimedResult]], None]
LoadRaceFn = Callable[[], Race]


# ---------- change detection ----------

class ChangeDetector(ABC):
    @abstractmethod
    def prime(self) -> None:
        """Record the current state. Raises OSError if the source is unreadable."""

    @abstractmethod
    def poll(self) -> bool:
        """True if the source changed since the last prime()/poll(). May raise OSError."""


class MtimeChangeDetector(ChangeDetector):
    """Changed means st_mtime_ns strictly advanced."""

    def __init__(self, path: str):
        self.path = path
        self.last_mtime_ns: Optional[int] = None

    def prime(self) -> None:
        self.last_mtime_ns = os.stat(self.path).st_mtime_ns

    def poll(self) -> bool:
        mtime = os.stat(self.path).st_mtime_ns
        if self.last_mtime_ns is None or mtime > self.last_mtime_ns:
            self.last_mtime_ns = mtime
            return True
        return False


# ---------- watcher ----------

class WatcherState(enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    STOPPED = "stopped"


class LiveWatcher:
    def __init__(
        self,
        race_name: str,
        detector: ChangeDetector,
        reconciler: ResultReconciler,
        load_race: LoadRaceFn,
        notify: NotifyFn,
        interval_s: float = DEFAULT_WATCH_INTERVAL_S,
    ):
        self.race_name = race_name
        self.detector = detector
        self.reconciler = reconciler
        self.load_race = load_race
        self.notify = notify
        self.interval_s = interval_s

        self._state = WatcherState.IDLE
        self._state_lock = threading.Lock()
        self._stop = threading.Event()
        self._t: Optional[threading.Thread] = None
        self.triggers = 0
        self.last_error: Optional[str] = None

    @classmethod
    def for_race(
        cls,
        race: Race,
        reconciler: ResultReconciler,
        load_race: LoadRaceFn,
        notify: NotifyFn,
        interval_s: float = DEFAULT_WATCH_INTERVAL_S,
    ) -> "LiveWatcher":
        if not race.results_file:
            raise WatcherConfigError(f"race {race.name!r} has no results file to watch")
        return cls(race.name, MtimeChangeDetector(race.results_file), reconciler,
                   load_race, notify, interval_s)

    # ---------- lifecycle ----------

    @property
    def state(self) -> WatcherState:
        return self._state

    def start(self) -> None:
        with self._state_lock:
            if self._state is not WatcherState.IDLE:
                raise WatcherStateError(f"watcher for {self.race_name!r} is {self._state.value}, cannot start")
            try:
                self.detector.prime()
            except OSError as ex:
                raise WatcherConfigError(f"cannot watch {self.race_name!r}: {ex}") from ex
            self._state = WatcherState.POLLING
            self._t = threading.Thread(target=self._run_loop, name=f"LiveWatcher[{self.race_name}]", daemon=True)
            self._t.start()
        log.info("live update started: %s (every %.2fs)", self.race_name, self.interval_s)

    def stop(self) -> None:
        with self._state_lock:
            if self._state is WatcherState.STOPPED:
                raise WatcherStateError(f"watcher for {self.race_name!r} already stopped")
            self._state = WatcherState.STOPPED
            self._stop.set()
            t = self._t
        if t is threading.current_thread():
            # inside our own notify; the loop sees _stop once the callback returns
            log.info("live update stopped from its own callback: %s", self.race_name)
            return
        if t is not None:
            t.join()
        log.info("live update stopped: %s", self.race_name)

    def is_running(self) -> bool:
        return bool(self._t and self._t.is_alive())

    def status(self) -> Dict[str, Any]:
        return {
            "race": self.race_name,
            "state": self._state.value,
            "running": self.is_running(),
            "triggers": self.triggers,
            "last_error": self.last_error,
        }

    # ---------- poller ----------

    def _run_loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                changed = self.detector.poll()
            except OSError as ex:
                self.last_error = str(ex)
                log.warning("%s: punch file unreadable, still polling: %s", self.race_name, ex)
                continue
            if changed:
                self._trigger()

    def _trigger(self) -> None:
        self.triggers += 1
        self.reconciler.cache.invalidate(self.race_name)
        try:
            race = self.load_race()
            results = self.reconciler.reconcile(race)
        except (ChipTimeError, OSError, ValueError) as ex:
            self.last_error = str(ex)
            log.error("%s: reconcile after file change failed: %s", self.race_name, ex)
            return
        if self._stop.is_set():
            return
        log.debug("%s: file changed, %d results", self.race_name, len(results))
        try:
            self.notify(self.race_name, results)
        except Exception:
            log.exception("%s: notify failed", self.race_name)
