"""
chiptime/durations.py
---------------------
Human-readable duration strings for the JSON files.

Race minimum times and cached result durations are stored as strings like
"10m0s" or "1h2m3.5s" rather than raw nanoseconds, so races.json stays
readable and portable. The grammar is the one the timing desk's files have
always used: an optional sign followed by one or more <decimal><unit> pairs,
units ns, us (or µs), ms, s, m, h. A bare "0" is accepted.

Clock strings ("HH:MM:SS") typed by the operator for manual entries are
handled by parse_clock().
"""

from __future__ import annotations

import re
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from .errors import DurationParseError

_UNIT_NS = {
    "ns": Decimal(1),
    "us": Decimal(1_000),
    "µs": Decimal(1_000),
    "μs": Decimal(1_000),
    "ms": Decimal(1_000_000),
    "s":  Decimal(1_000_000_000),
    "m":  Decimal(60_000_000_000),
    "h":  Decimal(3_600_000_000_000),
}

# longest units first so "ms" wins over "m"
_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def timedelta_to_ns(td: timedelta) -> int:
    return ((td.days * 86_400 + td.seconds) * 1_000_000 + td.microseconds) * 1_000


def parse_duration(text: str) -> timedelta:
    """Parse "1h30m", "10m0s", "-1.5s", "250ms" into a timedelta.

    Raises DurationParseError for anything else, including the empty string.
    """
    if not isinstance(text, str):
        raise DurationParseError(f"duration must be a string, got {type(text).__name__}")
    s = text.strip()
    orig = s
    neg = False
    if s[:1] in ("+", "-"):
        neg = s[0] == "-"
        s = s[1:]
    if s == "0":
        return timedelta(0)
    if not s:
        raise DurationParseError(f"invalid duration {orig!r}")

    total_ns = Decimal(0)
    pos = 0
    while pos < len(s):
        m = _PART_RE.match(s, pos)
        if m is None:
            raise DurationParseError(f"invalid duration {orig!r}")
        try:
            total_ns += Decimal(m.group(1)) * _UNIT_NS[m.group(2)]
        except InvalidOperation:
            raise DurationParseError(f"invalid duration {orig!r}") from None
        pos = m.end()

    # timedelta has microsecond resolution; sub-microsecond parts are dropped
    micros = int(total_ns // 1_000)
    td = timedelta(microseconds=micros)
    return -td if neg else td


def _frac(value: int, digits: int) -> str:
    text = f"{value:0{digits}d}".rstrip("0")
    return f".{text}" if text else ""


def format_duration(td: timedelta) -> str:
    """Inverse of parse_duration: timedelta(minutes=10) -> "10m0s"."""
    ns = timedelta_to_ns(td)
    if ns == 0:
        return "0s"
    sign = "-" if ns < 0 else ""
    ns = abs(ns)

    if ns < 1_000_000_000:
        # sub-second values use the smallest unit that keeps an integer part
        if ns < 1_000:
            return f"{sign}{ns}ns"
        if ns < 1_000_000:
            return f"{sign}{ns // 1_000}{_frac(ns % 1_000, 3)}µs"
        return f"{sign}{ns // 1_000_000}{_frac(ns % 1_000_000, 6)}ms"

    total_s, frac_ns = divmod(ns, 1_000_000_000)
    hours, rem = divmod(total_s, 3600)
    minutes, seconds = divmod(rem, 60)

    out = f"{seconds}{_frac(frac_ns, 9)}s"
    if hours or minutes:
        out = f"{minutes}m{out}"
    if hours:
        out = f"{hours}h{out}"
    return sign + out


def parse_clock(text: str) -> timedelta:
    """Operator input "HH:MM:SS" (hours may exceed 23) -> timedelta."""
    parts = (text or "").strip().split(":")
    if len(parts) != 3:
        raise ValueError("invalid time, use format HH:MM:SS")
    try:
        hours, minutes, seconds = (int(p) for p in parts)
    except ValueError:
        raise ValueError(f"invalid time {text!r}") from None
    if hours < 0 or not (0 <= minutes < 60) or not (0 <= seconds < 60):
        raise ValueError(f"invalid time {text!r}")
    return timedelta(hours=hours, minutes=minutes, seconds=seconds)
