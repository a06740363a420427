from __future__ import annotations

import threading
import time
from datetime import timedelta
from pathlib import Path

import pytest

from chiptime import events
from chiptime.errors import RaceExistsError, RaceNotFoundError, ViewNotFoundError, WatcherConfigError
from chiptime.events import ANY_RACE, RaceUpdated
from chiptime.models import ManualEntry
from chiptime.service import TimingService, chip_map, parse_chip_text

from conftest import at, bump_mtime


@pytest.fixture
def svc(data_dir: Path):
    s = TimingService(data_dir, watch_interval=0.02)
    yield s
    s.shutdown()


def _collect(svc: TimingService):
    seen = []
    svc.bus.subscribe(ANY_RACE, seen.append)
    return seen


def test_create_list_and_duplicate(svc: TimingService, make_race) -> None:
    seen = _collect(svc)
    svc.create_race(make_race())
    assert [r.name for r in svc.list_races()] == ["Spring 10k"]
    assert seen[-1].reason == events.RACE_CHANGED
    with pytest.raises(RaceExistsError):
        svc.create_race(make_race())


def test_create_live_race_without_file_is_refused(svc: TimingService, make_race) -> None:
    with pytest.raises(WatcherConfigError):
        svc.create_race(make_race(live_update=True))
    assert svc.list_races() == []


def test_create_live_race_starts_watching(svc: TimingService, make_race, scenario_file: Path) -> None:
    race = svc.create_race(make_race(results_file=scenario_file, live_update=True))
    assert race.live_update is True
    assert svc.registry.has_watcher(race.name)


def test_enable_live_update_contract_error(svc: TimingService, make_race) -> None:
    svc.create_race(make_race())
    with pytest.raises(WatcherConfigError):
        svc.enable_live_update("Spring 10k")
    assert not svc.registry.has_watcher("Spring 10k")
    assert svc.get_race("Spring 10k").live_update is False


def test_enable_is_idempotent_and_disable_stops(svc: TimingService, make_race, scenario_file: Path) -> None:
    svc.create_race(make_race(results_file=scenario_file))
    svc.enable_live_update("Spring 10k")
    handle = svc.registry.get_watcher("Spring 10k")
    svc.enable_live_update("Spring 10k")
    assert svc.registry.get_watcher("Spring 10k") is handle
    assert svc.get_race("Spring 10k").live_update is True

    race = svc.set_live_update("Spring 10k", False)
    assert race.live_update is False
    assert not svc.registry.has_watcher("Spring 10k")
    assert not handle.is_running()
    assert svc.get_race("Spring 10k").live_update is False


def test_watcher_trigger_refreshes_views_and_publishes(svc: TimingService, make_race, scenario_file: Path) -> None:
    svc.create_race(make_race(chips=("42", "7"), results_file=scenario_file))
    view_id = svc.open_view("Spring 10k")
    narrow = svc.open_view("Spring 10k")
    svc.set_search(narrow, "7")
    assert [r.chip for r in svc.view(view_id).current_results] == ["42"]

    changed = threading.Event()
    got = []

    def on_update(evt: RaceUpdated) -> None:
        if evt.reason == events.FILE_CHANGED:
            got.append(evt)
            changed.set()

    svc.bus.subscribe("Spring 10k", on_update)
    svc.enable_live_update("Spring 10k")

    with scenario_file.open("a", encoding="utf-8") as f:
        f.write("7\t2024-01-01 09:11:00.000\n")
    bump_mtime(scenario_file)

    assert changed.wait(2.0)
    assert got[0].result_count == 2
    assert [r.chip for r in svc.view(view_id).current_results] == ["42", "7"]
    assert [r.chip for r in svc.view(narrow).current_results] == ["7"]
    assert svc.view(narrow).search == "7"


def test_disable_from_file_change_subscriber_stops_poller(svc: TimingService, make_race, scenario_file: Path) -> None:
    svc.create_race(make_race(results_file=scenario_file))
    svc.enable_live_update("Spring 10k")
    watcher = svc.registry.get_watcher("Spring 10k")
    disabled = threading.Event()

    def on_update(evt: RaceUpdated) -> None:
        if evt.reason == events.FILE_CHANGED:
            svc.disable_live_update(evt.race_name)
            disabled.set()

    svc.bus.subscribe("Spring 10k", on_update)
    bump_mtime(scenario_file)
    assert disabled.wait(2.0)

    deadline = time.monotonic() + 2.0
    while watcher.is_running() and time.monotonic() < deadline:
        time.sleep(0.02)
    assert not watcher.is_running()
    assert not svc.registry.has_watcher("Spring 10k")
    assert svc.get_race("Spring 10k").live_update is False

    svc.enable_live_update("Spring 10k")
    assert svc.registry.get_watcher("Spring 10k") is not watcher
    assert svc.registry.get_watcher("Spring 10k").is_running()


def test_restore_and_shutdown(svc: TimingService, make_race, scenario_file: Path) -> None:
    svc.races.add(make_race(results_file=scenario_file, live_update=True))
    svc.races.add(make_race(name="Broken", results_file=scenario_file.parent / "gone.txt", live_update=True))

    assert svc.restore_live_updates() == ["Spring 10k"]
    assert svc.registry.watcher_names() == ["Spring 10k"]
    assert svc.get_race("Broken").live_update is False

    svc.shutdown()
    assert svc.registry.watcher_names() == []
    # the saved flag survives shutdown so the next start restores it
    assert svc.get_race("Spring 10k").live_update is True


def test_views_and_search(svc: TimingService, make_race, write_punches) -> None:
    path = write_punches([("142", "2024-01-01 09:11:00.000"), ("7", "2024-01-01 09:12:00.000")])
    svc.create_race(make_race(chips=("142", "7"), results_file=path))

    vid = svc.open_view("Spring 10k")
    assert len(svc.view(vid).current_results) == 2
    state = svc.set_search(vid, "4")
    assert [r.chip for r in state.current_results] == ["142"]
    assert svc.registry.get_search(vid) == "4"
    assert len(state.all_results) == 2

    svc.close_view(vid)
    with pytest.raises(ViewNotFoundError):
        svc.view(vid)
    with pytest.raises(ViewNotFoundError):
        svc.close_view(vid)
    with pytest.raises(RaceNotFoundError):
        svc.open_view("Nope")


def test_toggle_and_manual_through_service(svc: TimingService, make_race, scenario_file: Path) -> None:
    seen = _collect(svc)
    svc.create_race(make_race(results_file=scenario_file))
    vid = svc.open_view("Spring 10k")

    out = svc.toggle_invalid("Spring 10k", "42", at(9, 10))
    assert out.added.time == at(9, 15)
    assert seen[-1].reason == events.INVALID_TOGGLED
    assert [(r.time, r.invalid) for r in svc.view(vid).all_results] == [(at(9, 10), True), (at(9, 15), False)]

    rec = svc.add_manual_time("Spring 10k", "42", "00:13:00")
    assert seen[-1].reason == events.MANUAL_ADDED
    assert [(r.time, r.manual) for r in rec.results] == [(at(9, 13), True)]
    assert svc.results("Spring 10k", search="42")[0].duration == timedelta(minutes=13)


def test_update_race_rename_moves_manual_times_and_views(svc: TimingService, make_race) -> None:
    svc.create_race(make_race(chips=("7",)))
    svc.manual.save("Spring 10k", [ManualEntry(chip="7", time=at(9, 20), race_name="Spring 10k")])
    vid = svc.open_view("Spring 10k")

    race = svc.update_race("Spring 10k", new_name="Spring 12k", min_time=timedelta(minutes=15))

    assert race.name == "Spring 12k"
    assert race.min_time == timedelta(minutes=15)
    assert svc.manual.load("Spring 10k") == []
    assert [e.race_name for e in svc.manual.load("Spring 12k")] == ["Spring 12k"]
    assert svc.view(vid).race_name == "Spring 12k"
    assert [r.chip for r in svc.results("Spring 12k")] == ["7"]


def test_update_race_keeps_ledger(svc: TimingService, make_race, scenario_file: Path) -> None:
    svc.create_race(make_race(results_file=scenario_file))
    svc.toggle_invalid("Spring 10k", "42", at(9, 10))
    race = svc.update_race("Spring 10k", chips=["42", "7"])
    assert race.chips == {"42": True, "7": True}
    assert len(race.invalid_times) == 1


def test_delete_race_stops_watcher_and_drops_cache(svc: TimingService, make_race, scenario_file: Path) -> None:
    seen = _collect(svc)
    svc.create_race(make_race(results_file=scenario_file))
    svc.enable_live_update("Spring 10k")
    svc.reconcile("Spring 10k")
    handle = svc.registry.get_watcher("Spring 10k")
    assert svc.cache.path("Spring 10k").exists()

    svc.delete_race("Spring 10k")

    assert not handle.is_running()
    assert not svc.registry.has_watcher("Spring 10k")
    assert not svc.cache.path("Spring 10k").exists()
    assert svc.list_races() == []
    assert seen[-1].reason == events.RACE_DELETED


def test_chip_helpers() -> None:
    assert chip_map(["42", " 7 ", "", "42"]) == {"42": True, "7": True}
    assert parse_chip_text("1\n2, 3\n\n 4") == ["1", "2", "3", "4"]
