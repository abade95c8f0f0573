from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from autohub._constants import raw_to_current
from autohub.exceptions import BluetoothError
from autohub.power.engine import PowerEngine
from autohub.power.triggers import RAIN_ALERT, PowerTriggers
from autohub.state.hooks import HookDispatcher
from autohub.state.session import SessionStore
from autohub.state.settings import SettingsStore


class FakeQueue:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def await_text(self, text: str, timeout: float | None = None) -> None:
        self.sent.append(text)


class FakeBluetooth:
    def __init__(self, *, fail: bool = False) -> None:
        self.paused = 0
        self.fail = fail

    async def pause(self) -> str:
        if self.fail:
            raise BluetoothError("No valid BT Address to run command", service="bluetooth")
        self.paused += 1
        return ""


class FakeMachines:
    def __init__(self) -> None:
        self.commands: list[tuple[str, str]] = []

    async def command(self, machine: str, command: str) -> bool:
        self.commands.append((machine, command))
        return True


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


class Rig:
    def __init__(self, *, bluetooth: FakeBluetooth | None = None) -> None:
        loop = asyncio.get_running_loop()
        self.clock = Clock()
        self.session = SessionStore(dispatcher=HookDispatcher(loop=loop, name="session"), clock=self.clock)
        self.settings = SettingsStore(dispatcher=HookDispatcher(loop=loop, name="settings"), clock=self.clock)
        self.queue = FakeQueue()
        self.machines = FakeMachines()
        self.bluetooth = bluetooth or FakeBluetooth()
        self.alerts: list[str] = []

        async def no_sleep(_delay: float) -> None:
            return None

        async def alert(message: str) -> None:
            self.alerts.append(message)

        self.engine = PowerEngine(
            session=self.session,
            settings=self.settings,
            queue=self.queue,  # type: ignore[arg-type]
            machines=self.machines,  # type: ignore[arg-type]
            clock=self.clock,
            sleep=no_sleep,
        )
        self.triggers = PowerTriggers(
            session=self.session,
            settings=self.settings,
            engine=self.engine,
            bluetooth=self.bluetooth,  # type: ignore[arg-type]
            machines=self.machines,  # type: ignore[arg-type]
            alert=alert,
            clock=self.clock,
        )
        self.hooks = self.triggers.register()

    async def settle(self) -> None:
        for _ in range(3):
            assert await self.session.dispatcher.wait_idle(2.0)
            assert await self.settings.dispatcher.wait_idle(2.0)


@pytest.mark.asyncio
async def test_register_wires_every_hook() -> None:
    rig = Rig()
    keys = {hook.key for hook in rig.hooks}
    assert {"main_voltage_raw", "aux_voltage_raw", "acc_power", "key_state", "seat_memory_1"} <= keys
    assert {"angel_eyes", "board", "tablet", "wireless", "sound", "mdroid"} <= keys


@pytest.mark.asyncio
async def test_raw_readings_are_converted() -> None:
    rig = Rig()
    rig.session.set("MAIN_VOLTAGE_RAW", 512)
    rig.session.set("AUX_VOLTAGE_RAW", "1024")
    rig.session.set("AUX_CURRENT_RAW", 2048)
    rig.session.set("WIRELESS_POWER", "FALSE")
    await rig.settle()

    assert rig.session.get_value("MAIN_VOLTAGE") == pytest.approx(12.2)
    assert rig.session.get_value("AUX_VOLTAGE") == pytest.approx(24.4)
    assert rig.session.get_value("AUX_CURRENT") == pytest.approx(round(raw_to_current(2048), 3))
    assert rig.session.get_value("LTE_ON") == "FALSE"
    entry = rig.session.get("MAIN_VOLTAGE")
    assert entry is not None
    assert entry.quiet is True


@pytest.mark.asyncio
async def test_unparseable_raw_reading_is_ignored() -> None:
    rig = Rig()
    rig.session.set("MAIN_VOLTAGE_RAW", "n/a")
    await rig.settle()
    assert rig.session.get("MAIN_VOLTAGE") is None


@pytest.mark.asyncio
async def test_acc_power_turns_modules_on() -> None:
    rig = Rig()
    for component in ("BOARD", "SOUND", "TABLET", "WIRELESS"):
        rig.settings.set(component, "POWER", "AUTO")
        rig.session.set(f"{component}_POWER", "FALSE")
    rig.session.set("KEY_STATE", "ON")
    await rig.settle()
    rig.queue.sent.clear()

    rig.session.set("ACC_POWER", "TRUE")
    await rig.settle()

    assert sorted(rig.queue.sent) == ["powerOnBoard", "powerOnSound", "powerOnTablet", "powerOnWireless"]


@pytest.mark.asyncio
async def test_key_removal_pauses_media_once() -> None:
    rig = Rig()
    rig.session.set("KEY_STATE", "ON")
    rig.session.set("KEY_STATE", "FALSE")
    await rig.settle()
    rig.session.set("KEY_STATE", "FALSE")
    await rig.settle()

    assert rig.bluetooth.paused == 1


@pytest.mark.asyncio
async def test_bluetooth_failure_does_not_break_key_hook(caplog: pytest.LogCaptureFixture) -> None:
    rig = Rig(bluetooth=FakeBluetooth(fail=True))
    rig.session.set("KEY_STATE", "FALSE")
    await rig.settle()

    assert rig.session.dispatcher.stats.failed == 0
    assert "Could not pause media" in caplog.text


@pytest.mark.asyncio
async def test_module_setting_change_reevaluates_module() -> None:
    rig = Rig()
    rig.session.set("TABLET_POWER", "TRUE")
    await rig.settle()

    rig.settings.set("TABLET", "POWER", "OFF")
    await rig.settle()

    assert rig.queue.sent == ["powerOffTablet"]


@pytest.mark.asyncio
async def test_autolock_setting_triggers_lock() -> None:
    rig = Rig()
    for key, value in (("DOORS_LOCKED", "FALSE"), ("KEY_STATE", "FALSE"), ("ACC_POWER", "FALSE")):
        rig.session.set(key, value)
    await rig.settle()
    rig.clock.now += timedelta(minutes=10)
    rig.queue.sent.clear()

    rig.settings.set("MDROID", "AUTOLOCK", "AUTO")
    await rig.settle()

    assert rig.queue.sent == ["toggleDoorLocks"]


@pytest.mark.asyncio
async def test_rain_alert_when_parked_with_windows_open() -> None:
    rig = Rig()
    rig.session.set("KEY_POSITION", "OFF")
    rig.session.set("WINDOWS_OPEN", "TRUE")
    rig.session.set("DOORS_LOCKED", "TRUE")

    rig.session.set("LIGHT_SENSOR_REASON", "RAIN")
    await rig.settle()
    assert rig.alerts == []

    rig.clock.now += timedelta(minutes=6)
    rig.session.set("LIGHT_SENSOR_REASON", "RAIN")
    await rig.settle()
    assert rig.alerts == [RAIN_ALERT]

    rig.session.set("WINDOWS_OPEN", "FALSE")
    rig.session.set("LIGHT_SENSOR_REASON", "RAIN")
    await rig.settle()
    assert rig.alerts == [RAIN_ALERT]


@pytest.mark.asyncio
async def test_seat_memory_restarts_machine_on_press_only() -> None:
    rig = Rig()
    rig.session.set("SEAT_MEMORY_2", "TRUE")
    rig.session.set("SEAT_MEMORY_1", "FALSE")
    await rig.settle()

    assert rig.machines.commands == [("WIRELESS", "restart")]
