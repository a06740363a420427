"""
chiptime/errors.py
------------------
Exception taxonomy shared by the core and the HTTP layer.

Transient I/O and malformed punch lines never raise; they are logged and
skipped. What remains here is what a direct caller must handle:
contract violations, persistence failures and bad user input.
"""

from __future__ import annotations


class ChipTimeError(Exception):
    """Base class for every error raised on purpose by chiptime."""


# ---------- contract violations ----------

class WatcherStateError(ChipTimeError):
    """Start/stop called in a state that does not allow it (double stop, ...)."""


class WatcherConfigError(ChipTimeError):
    """Live update requested for a race that cannot be watched."""


# ---------- persistence ----------

class PersistenceError(ChipTimeError):
    """A JSON file could not be written. In-memory state stays authoritative."""

    def __init__(self, path, cause: Exception):
        super().__init__(f"could not write {path}: {cause}")
        self.path = path
        self.cause = cause


# ---------- input ----------

class DurationParseError(ChipTimeError, ValueError):
    pass


class ManualTimeError(ChipTimeError, ValueError):
    pass


class RaceNotFoundError(ChipTimeError, KeyError):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"race not found: {self.name!r}"


class RaceExistsError(ChipTimeError):
    def __init__(self, name: str):
        super().__init__(f"race already exists: {name!r}")
        self.name = name


class ResultNotFoundError(ChipTimeError, LookupError):
    def __init__(self, chip: str, ts):
        super().__init__(f"no result for chip {chip!r} at {ts}")
        self.chip = chip
        self.ts = ts


class ViewNotFoundError(ChipTimeError, KeyError):
    def __init__(self, view_id: str):
        super().__init__(view_id)
        self.view_id = view_id

    def __str__(self) -> str:
        return f"view not found: {self.view_id!r}"
