from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from autohub.exceptions import SerialTimeoutError
from autohub.power.engine import (
    BOARD,
    SOUND,
    PowerDecision,
    PowerEngine,
    PowerModule,
    angel_should_be_on,
    decide,
    read_module,
    video_should_be_on,
    wireless_should_be_on,
)
from autohub.state.hooks import HookDispatcher
from autohub.state.session import SessionStore
from autohub.state.settings import SettingsStore


class FakeQueue:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.block: asyncio.Event | None = None
        self.error: Exception | None = None

    async def await_text(self, text: str, timeout: float | None = None) -> None:
        if self.block is not None:
            await self.block.wait()
        if self.error is not None:
            raise self.error
        self.sent.append(text)


class FakeMachines:
    def __init__(self) -> None:
        self.commands: list[tuple[str, str]] = []

    async def command(self, machine: str, command: str) -> bool:
        self.commands.append((machine, command))
        return True


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)
        self.mono = 100.0

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.mono


class Harness:
    def __init__(self) -> None:
        self.clock = Clock()
        self.session = SessionStore(dispatcher=HookDispatcher(), clock=self.clock)
        self.settings = SettingsStore(dispatcher=HookDispatcher(), clock=self.clock)
        self.queue = FakeQueue()
        self.machines = FakeMachines()
        self.sleeps: list[float] = []

        async def sleep(delay: float) -> None:
            self.sleeps.append(delay)

        self.engine = PowerEngine(
            session=self.session,
            settings=self.settings,
            queue=self.queue,  # type: ignore[arg-type]
            machines=self.machines,  # type: ignore[arg-type]
            shutdown_delay=10.0,
            clock=self.clock,
            monotonic=self.clock.monotonic,
            sleep=sleep,
        )


def _module(is_on: bool | None, target: str | None) -> PowerModule:
    return PowerModule("Board", is_on, target)


@pytest.mark.parametrize(
    ("should_be_on", "is_on", "target", "expected"),
    [
        (True, False, "AUTO", PowerDecision.POWER_ON),
        (False, False, "AUTO", PowerDecision.NONE),
        (False, True, "AUTO", PowerDecision.SHUTDOWN),
        (True, True, "AUTO", PowerDecision.NONE),
        (False, False, "ON", PowerDecision.POWER_ON),
        (False, True, "ON", PowerDecision.NONE),
        (True, True, "OFF", PowerDecision.SHUTDOWN),
        (True, False, "OFF", PowerDecision.NONE),
    ],
)
def test_decide_table(should_be_on: bool, is_on: bool, target: str, expected: PowerDecision) -> None:
    assert decide(should_be_on, _module(is_on, target)) == expected


def test_decide_errors() -> None:
    assert decide(True, PowerModule("Board", False, "MAYBE", target_error="bad")) == PowerDecision.RESET_TARGET
    assert decide(True, PowerModule("Board", None, "ON", on_error="missing")) == PowerDecision.NONE


def test_should_be_on_rules() -> None:
    assert angel_should_be_on(False, "ON") is True
    assert angel_should_be_on(True, "ON") is False
    assert angel_should_be_on(False, "FALSE") is False

    assert video_should_be_on(True, False, "FALSE") is True
    assert video_should_be_on(True, True, "FALSE") is False
    assert video_should_be_on(False, True, "ON") is True
    assert video_should_be_on(False, False, "ON") is False

    assert wireless_should_be_on(True, "FALSE") is False
    assert wireless_should_be_on(True, "ON") is True
    assert wireless_should_be_on(False, "FALSE") is True


def test_read_module_reports_errors() -> None:
    h = Harness()
    module = read_module(BOARD, h.session, h.settings)
    assert module.on_error is not None
    assert module.target_error is not None

    h.session.set("BOARD_POWER", "TRUE")
    h.settings.set("BOARD", "POWER", "on")
    module = read_module(BOARD, h.session, h.settings)
    assert module.is_on is True
    assert module.target == "ON"
    assert module.on_error is None
    assert module.target_error is None


@pytest.mark.asyncio
async def test_power_on_when_target_on() -> None:
    h = Harness()
    h.session.set("SOUND_POWER", "FALSE")
    h.settings.set("SOUND", "POWER", "ON")

    assert await h.engine.evaluate_sound("FALSE", False, False) == PowerDecision.POWER_ON
    assert h.queue.sent == ["powerOnSound"]


@pytest.mark.asyncio
async def test_invalid_target_is_reset_to_auto() -> None:
    h = Harness()
    h.session.set("BOARD_POWER", "FALSE")
    h.settings.set("BOARD", "POWER", "SOMETIMES")

    assert await h.engine.evaluate_board("ON", True, False) == PowerDecision.RESET_TARGET
    assert h.settings.get("BOARD", "POWER") == "AUTO"
    assert h.queue.sent == []


@pytest.mark.asyncio
async def test_missing_session_state_does_nothing() -> None:
    h = Harness()
    h.settings.set("SOUND", "POWER", "ON")

    assert await h.engine.generic_power_trigger(True, SOUND) == PowerDecision.NONE
    assert h.queue.sent == []


@pytest.mark.asyncio
async def test_overlapping_evaluations_are_skipped() -> None:
    h = Harness()
    h.session.set("SOUND_POWER", "FALSE")
    h.settings.set("SOUND", "POWER", "ON")
    h.queue.block = asyncio.Event()

    first = asyncio.create_task(h.engine.generic_power_trigger(True, SOUND))
    await asyncio.sleep(0)
    second = await h.engine.generic_power_trigger(True, SOUND)
    h.queue.block.set()

    assert second == PowerDecision.NONE
    assert await first == PowerDecision.POWER_ON
    assert h.queue.sent == ["powerOnSound"]


@pytest.mark.asyncio
async def test_target_change_is_throttled_then_shutdown_is_graceful() -> None:
    h = Harness()
    h.session.set("BOARD_POWER", "FALSE")
    h.settings.set("BOARD", "POWER", "ON")
    assert await h.engine.evaluate_board("ON", True, False) == PowerDecision.POWER_ON

    h.session.set("BOARD_POWER", "TRUE")
    h.settings.set("BOARD", "POWER", "OFF")
    h.clock.mono += 1
    assert await h.engine.evaluate_board("ON", True, False) == PowerDecision.NONE

    h.clock.mono += 3
    assert await h.engine.evaluate_board("ON", True, False) == PowerDecision.SHUTDOWN
    assert h.machines.commands == [("BOARD", "shutdown")]
    assert h.sleeps == [10.0]
    assert h.queue.sent == ["powerOnBoard", "powerOffBoard"]


@pytest.mark.asyncio
async def test_serial_failure_is_logged_and_not_recorded() -> None:
    h = Harness()
    h.session.set("SOUND_POWER", "FALSE")
    h.settings.set("SOUND", "POWER", "ON")
    h.queue.error = SerialTimeoutError("no ack")

    assert await h.engine.evaluate_sound("ON", True, False) == PowerDecision.NONE

    h.queue.error = None
    h.settings.set("SOUND", "POWER", "AUTO")
    # No successful action yet, so a new target is not throttled
    assert await h.engine.evaluate_sound("ON", True, False) == PowerDecision.POWER_ON


@pytest.mark.asyncio
async def test_evaluate_module_uses_session_inputs() -> None:
    h = Harness()
    h.session.set("KEY_STATE", "ON")
    h.session.set("LIGHT_SENSOR_ON", "FALSE")
    h.session.set("ANGEL_EYES_POWER", "FALSE")
    h.settings.set("ANGEL_EYES", "POWER", "AUTO")

    assert await h.engine.evaluate_module("angel_eyes") == PowerDecision.POWER_ON
    assert h.queue.sent == ["powerOnAngel"]

    with pytest.raises(ValueError):
        await h.engine.evaluate_module("MDROID")


def _unlocked_car(h: Harness) -> None:
    h.session.set("DOORS_LOCKED", "FALSE")
    h.session.set("KEY_STATE", "FALSE")
    h.session.set("ACC_POWER", "FALSE")
    h.session.set("WIFI_CONNECTED", "FALSE")
    h.settings.set("MDROID", "AUTOLOCK", "AUTO")


@pytest.mark.asyncio
async def test_auto_lock_waits_for_grace_period() -> None:
    h = Harness()
    _unlocked_car(h)

    assert await h.engine.evaluate_auto_lock() is False
    h.clock.now += timedelta(minutes=6)
    assert await h.engine.evaluate_auto_lock() is True
    assert h.queue.sent == ["toggleDoorLocks"]


@pytest.mark.asyncio
async def test_auto_lock_respects_conditions() -> None:
    h = Harness()
    _unlocked_car(h)
    h.clock.now += timedelta(minutes=6)

    assert await h.engine.evaluate_auto_lock(acc_on=True) is False
    assert await h.engine.evaluate_auto_lock(key_state="ON") is False

    h.settings.set("MDROID", "AUTOLOCK", "OFF")
    assert await h.engine.evaluate_auto_lock() is False
    assert h.queue.sent == []


@pytest.mark.asyncio
async def test_auto_lock_resets_missing_setting() -> None:
    h = Harness()
    h.session.set("DOORS_LOCKED", "FALSE")

    assert await h.engine.evaluate_auto_lock() is False
    assert h.settings.get("MDROID", "AUTOLOCK") == "AUTO"


@pytest.mark.asyncio
async def test_auto_lock_needs_door_state() -> None:
    h = Harness()
    h.settings.set("MDROID", "AUTOLOCK", "AUTO")
    assert await h.engine.evaluate_auto_lock() is False
    assert h.queue.sent == []
