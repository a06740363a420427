"""
chiptime/models.py
------------------
Plain data records: Race, TimedResult, ManualEntry, ViewState.

JSON shapes (camelCase keys, kept compatible with existing race files):

    Race         {name, startTime, minTime, chips, resultsFile, invalidTimes, liveUpdate}
    TimedResult  {chip, time, duration, invalid, manual}
    ManualEntry  {chip, time, raceName}

`minTime` and `duration` are duration strings ("10m0s"), never raw numbers.
Timestamps are wall-clock naive datetimes; an ISO string carrying an offset
is reduced to its wall-clock part so it compares with device punches.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .durations import format_duration, parse_duration


# ---------- timestamp helpers ----------

def parse_iso(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    return dt.replace(tzinfo=None)


def format_iso(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds" if dt.microsecond else "seconds")


# ---------- records ----------

@dataclass
class Race:
    name: str
    start_time: datetime
    min_time: timedelta = timedelta(0)
    chips: Dict[str, bool] = field(default_factory=dict)
    results_file: str = ""
    invalid_times: Dict[str, bool] = field(default_factory=dict)
    live_update: bool = False

    def has_chip(self, chip: str) -> bool:
        return bool(self.chips.get(chip))

    def qualifies(self, ts: datetime) -> bool:
        """Strictly after start and at least min_time elapsed."""
        return ts > self.start_time and (ts - self.start_time) >= self.min_time

    def copy(self) -> "Race":
        return replace(self, chips=dict(self.chips), invalid_times=dict(self.invalid_times))

    def to_json(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "startTime": format_iso(self.start_time),
            "minTime": format_duration(self.min_time),
            "chips": dict(self.chips),
            "resultsFile": self.results_file,
            "invalidTimes": dict(self.invalid_times),
            "liveUpdate": self.live_update,
        }

    @classmethod
    def from_json(cls, d: Dict[str, Any]) -> "Race":
        """Strict on minTime: an unparseable duration raises DurationParseError."""
        name = str(d.get("name") or "").strip()
        if not name:
            raise ValueError("race is missing required key 'name'")
        return cls(
            name=name,
            start_time=parse_iso(d["startTime"]),
            min_time=parse_duration(d.get("minTime", "0s")),
            chips={str(k): bool(v) for k, v in (d.get("chips") or {}).items()},
            results_file=str(d.get("resultsFile") or ""),
            invalid_times={str(k): bool(v) for k, v in (d.get("invalidTimes") or {}).items()},
            live_update=bool(d.get("liveUpdate", False)),
        )


@dataclass
class TimedResult:
    chip: str
    time: datetime
    duration: timedelta
    invalid: bool = False
    manual: bool = False

    def same_punch(self, other: "TimedResult") -> bool:
        return self.chip == other.chip and self.time == other.time

    def to_json(self) -> Dict[str, Any]:
        return {
            "chip": self.chip,
            "time": format_iso(self.time),
            "duration": format_duration(self.duration),
            "invalid": self.invalid,
            "manual": self.manual,
        }

    @classmethod
    def from_json(cls, d: Dict[str, Any]) -> "TimedResult":
        return cls(
            chip=str(d["chip"]),
            time=parse_iso(d["time"]),
            duration=parse_duration(d["duration"]),
            invalid=bool(d.get("invalid", False)),
            manual=bool(d.get("manual", False)),
        )


@dataclass(frozen=True)
class ManualEntry:
    chip: str
    time: datetime
    race_name: str

    def to_json(self) -> Dict[str, Any]:
        return {"chip": self.chip, "time": format_iso(self.time), "raceName": self.race_name}

    @classmethod
    def from_json(cls, d: Dict[str, Any]) -> "ManualEntry":
        return cls(chip=str(d["chip"]), time=parse_iso(d["time"]), race_name=str(d.get("raceName", "")))


@dataclass
class ViewState:
    """One open result view: search text plus its last full and filtered lists."""
    race_name: str
    search: str = ""
    all_results: List[TimedResult] = field(default_factory=list)
    current_results: List[TimedResult] = field(default_factory=list)
    warning: Optional[str] = None


def sort_by_time(results: List[TimedResult]) -> List[TimedResult]:
    """Stable ascending sort by timestamp."""
    return sorted(results, key=lambda r: r.time)
