from __future__ import annotations

import threading
from dataclasses import replace

from chiptime.models import ViewState
from chiptime.registry import ConcurrencyRegistry, ReadWriteLock


class FakeHandle:
    def __init__(self):
        self.stopped = 0

    def stop(self) -> None:
        self.stopped += 1


def test_add_watcher_is_noop_when_present() -> None:
    reg = ConcurrencyRegistry()
    first, second = FakeHandle(), FakeHandle()

    assert reg.add_watcher("Spring 10k", first) is True
    assert reg.add_watcher("Spring 10k", second) is False
    assert reg.get_watcher("Spring 10k") is first


def test_remove_watcher_stops_handle() -> None:
    reg = ConcurrencyRegistry()
    h = FakeHandle()
    reg.add_watcher("Spring 10k", h)

    assert reg.remove_watcher("Spring 10k") is True
    assert h.stopped == 1
    assert not reg.has_watcher("Spring 10k")
    assert reg.remove_watcher("Spring 10k") is False
    assert h.stopped == 1


def test_stop_all_watchers() -> None:
    reg = ConcurrencyRegistry()
    handles = [FakeHandle() for _ in range(3)]
    for i, h in enumerate(handles):
        reg.add_watcher(f"race {i}", h)

    assert reg.stop_all_watchers() == 3
    assert [h.stopped for h in handles] == [1, 1, 1]
    assert reg.watcher_names() == []


def test_search_text_last_write_wins() -> None:
    reg = ConcurrencyRegistry()
    assert reg.get_search("unknown") == ""
    reg.set_search("v1", "4")
    reg.set_search("v1", "42")
    assert reg.get_search("v1") == "42"
    reg.clear_search("v1")
    assert reg.get_search("v1") == ""


def test_views() -> None:
    reg = ConcurrencyRegistry()
    assert reg.get_view("v1") == (None, False)

    reg.add_view("v1", ViewState(race_name="Spring 10k"))
    reg.add_view("v2", ViewState(race_name="Autumn 5k"))
    state, found = reg.get_view("v1")
    assert found and state.race_name == "Spring 10k"
    assert [vid for vid, _ in reg.views_for_race("Spring 10k")] == ["v1"]

    before = state
    after = reg.update_view("v1", lambda st: replace(st, search="7"))
    assert after.search == "7"
    assert before.search == ""
    assert reg.update_view("missing", lambda st: st) is None

    reg.set_search("v1", "7")
    assert reg.remove_view("v1") is not None
    assert reg.get_view("v1") == (None, False)
    assert reg.get_search("v1") == ""


def test_writer_waits_for_reader() -> None:
    lock = ReadWriteLock()
    entered = threading.Event()

    def writer() -> None:
        with lock.write():
            entered.set()

    t = threading.Thread(target=writer)
    with lock.read():
        t.start()
        assert not entered.wait(0.1)
    assert entered.wait(2.0)
    t.join(2.0)


def test_readers_share_the_lock() -> None:
    lock = ReadWriteLock()
    entered = threading.Event()

    def reader() -> None:
        with lock.read():
            entered.set()

    with lock.read():
        t = threading.Thread(target=reader)
        t.start()
        assert entered.wait(2.0)
    t.join(2.0)


def test_concurrent_search_updates() -> None:
    reg = ConcurrencyRegistry()
    errors = []

    def work(n: int) -> None:
        try:
            for i in range(200):
                reg.set_search(f"v{n}", str(i))
                reg.get_search(f"v{(n + 1) % 4}")
        except Exception as ex:  # pragma: no cover - surfaced by the assert below
            errors.append(ex)

    threads = [threading.Thread(target=work, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5.0)

    assert errors == []
    assert {reg.get_search(f"v{n}") for n in range(4)} == {"199"}
