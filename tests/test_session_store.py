from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from autohub.exceptions import InvalidNameError
from autohub.state.events import ChangeEvent
from autohub.state.hooks import HookDispatcher
from autohub.state.session import SessionStore
from autohub.state.stats import ThroughputTracker


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _store(**kwargs: object) -> SessionStore:
    return SessionStore(dispatcher=HookDispatcher(), **kwargs)  # type: ignore[arg-type]


def test_set_canonicalises_key_and_strips_strings() -> None:
    store = _store()

    key = store.set("  key  state ", "  FALSE ")

    assert key == "KEY_STATE"
    entry = store.get("key state")
    assert entry is not None
    assert entry.value == "FALSE"
    assert entry.write_count == 1


def test_invalid_key_raises_without_touching_table() -> None:
    store = _store()
    with pytest.raises(InvalidNameError):
        store.set("DOORS-LOCKED", True)
    assert len(store) == 0


def test_invalid_key_leaves_existing_value_alone() -> None:
    store = _store()
    store.set("DOORS_LOCKED", True)
    before = store.get("DOORS_LOCKED")

    with pytest.raises(InvalidNameError):
        store.set("DOORS_LOCKED!", False)

    after = store.get("DOORS_LOCKED")
    assert after == before
    assert after is not None
    assert after.value is True
    assert after.write_count == 1
    assert len(store) == 1


def test_write_count_and_last_update() -> None:
    clock = _Clock()
    store = _store(clock=clock)

    store.set("ACC_POWER", True)
    clock.advance(10)
    store.set("ACC_POWER", False)

    entry = store.get("ACC_POWER")
    assert entry is not None
    assert entry.write_count == 2
    assert entry.last_update == clock.now


def test_typed_reads() -> None:
    store = _store()
    store.set("ACC_POWER", "TRUE")
    store.set("KEY_STATE", "ON")
    store.set("SPEED", 42.0)

    assert store.get_bool("ACC_POWER") is True
    with pytest.raises(ValueError):
        store.get_bool("KEY_STATE")
    with pytest.raises(KeyError):
        store.get_bool("MISSING")
    assert store.get_bool_default("KEY_STATE", True) is True
    assert store.get_bool_default("MISSING", False) is False
    assert store.get_string_default("SPEED", "") == "42"
    assert store.get_string_default("MISSING", "n/a") == "n/a"
    assert store.get_value("SPEED") == 42.0


def test_snapshot_is_isolated_from_later_writes() -> None:
    store = _store()
    store.set("A", 1)
    snapshot = store.get_all()
    minimal = store.get_all_min()

    store.set("A", 2)
    store.set("B", 3)

    assert snapshot["A"].value == 1
    assert "B" not in snapshot
    assert minimal == {"A": 1}


@pytest.mark.asyncio
async def test_hooks_see_change_flags_and_mirrors_only_changes() -> None:
    dispatcher = HookDispatcher(loop=asyncio.get_running_loop())
    store = SessionStore(dispatcher=dispatcher)
    events: list[ChangeEvent] = []
    mirrored: list[ChangeEvent] = []
    dispatcher.register_hook("DOORS_LOCKED", events.append)
    store.add_mirror(mirrored.append)

    store.set("DOORS_LOCKED", True)
    store.set("DOORS_LOCKED", "TRUE")
    store.set("DOORS_LOCKED", "FALSE")
    assert await dispatcher.wait_idle(1.0)

    assert [(e.is_new, e.changed) for e in events] == [(True, True), (False, False), (False, True)]
    assert [e.value for e in mirrored] == [True, "FALSE"]
    assert events[2].previous == "TRUE"
    assert events[0].topic == "session/doors_locked"


@pytest.mark.asyncio
async def test_publish_remote_flag_travels_with_event() -> None:
    dispatcher = HookDispatcher(loop=asyncio.get_running_loop())
    store = SessionStore(dispatcher=dispatcher)
    mirrored: list[ChangeEvent] = []
    store.add_mirror(mirrored.append)

    store.set("GYROSCOPE.X", 0.5, quiet=True, publish_remote=False)
    assert await dispatcher.wait_idle(1.0)

    assert mirrored[0].publish_remote is False
    assert mirrored[0].quiet is True
    assert mirrored[0].topic == "session/gyroscope/x"


@pytest.mark.asyncio
async def test_throughput_dip_raises_alert() -> None:
    dispatcher = HookDispatcher(loop=asyncio.get_running_loop())
    ticks = iter(range(1000))
    tracker = ThroughputTracker(window=10, check_every=5, monotonic=lambda: float(next(ticks)))
    alerts: list[str] = []

    async def alert(message: str) -> None:
        alerts.append(message)

    store = SessionStore(dispatcher=dispatcher, tracker=tracker, throughput_warn_threshold=5.0, alert=alert)
    for i in range(5):
        store.set("SPEED", i)
    assert await dispatcher.wait_idle(1.0)

    stats = store.stats()
    assert stats.sets == 5
    assert stats.throughput == pytest.approx(1.0)
    assert stats.dips_below_minimum == 1
    assert len(alerts) == 1
    assert "throughput" in alerts[0]


def test_negative_threshold_disables_alert() -> None:
    tracker = ThroughputTracker(window=10, check_every=1, monotonic=lambda: 0.0)
    store = _store(tracker=tracker)
    store.set("A", 1)
    store.set("A", 2)
    assert store.stats().dips_below_minimum == 0


def test_flush_and_load_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    store = _store(path=str(path))
    store.set("ACC_POWER", "TRUE")
    store.set("MAIN_VOLTAGE", 12.6)
    store.flush()

    assert json.loads(path.read_text()) == {"ACC_POWER": "TRUE", "MAIN_VOLTAGE": 12.6}

    fresh = _store(path=str(path))
    assert fresh.load() == 2
    entry = fresh.get("MAIN_VOLTAGE")
    assert entry is not None
    assert entry.value == 12.6
    assert entry.write_count == 0


def test_load_skips_unusable_entries(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    path.write_text(json.dumps({"OK": 1, "BAD-NAME": 2, "NESTED": {"a": 1}}))

    store = _store(path=str(path))

    assert store.load() == 1
    assert store.get_all_min() == {"OK": 1}
