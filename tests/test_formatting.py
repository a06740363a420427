from __future__ import annotations

from datetime import timedelta

from chiptime.formatting import finisher_count, format_elapsed, format_results, results_to_csv
from chiptime.models import TimedResult

from conftest import at


def test_format_elapsed() -> None:
    assert format_elapsed(timedelta(minutes=10)) == "10:00"
    assert format_elapsed(timedelta(minutes=59, seconds=59)) == "59:59"
    assert format_elapsed(timedelta(hours=1, minutes=2, seconds=3)) == "01:02:03"
    assert format_elapsed(timedelta(0)) == "00:00"


def _results():
    return [
        TimedResult("42", at(9, 10), timedelta(minutes=10), invalid=True),
        TimedResult("7", at(9, 11), timedelta(minutes=11)),
        TimedResult("42", at(9, 15), timedelta(minutes=15)),
        TimedResult("3", at(9, 20), timedelta(minutes=20), manual=True),
    ]


def test_format_results_sheet(make_race) -> None:
    text = format_results(make_race(min_time=timedelta(minutes=10, seconds=30)), _results())
    assert text.splitlines() == [
        "Results: Spring 10k",
        "Start: 2024-01-01 09:00",
        "Minimum time: 10:30",
        "",
        "42\t10:00\t(invalid)",
        "7\t11:00",
        "42\t15:00",
        "3\t20:00\t(manual)",
    ]


def test_results_to_csv_places_skip_invalid() -> None:
    lines = results_to_csv(_results()).splitlines()
    assert lines == [
        "place,chip,elapsed,status,manual",
        ",42,10:00,invalid,no",
        "1,7,11:00,ok,no",
        "2,42,15:00,ok,no",
        "3,3,20:00,ok,yes",
    ]


def test_finisher_count() -> None:
    assert finisher_count(_results()) == 3
    assert finisher_count([]) == 0
