"""Hooks reacting to session and settings writes.

Derived values are written quietly and no hook listens to its own output.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from autohub._constants import HUB_COMPONENT, raw_to_current, raw_to_voltage
from autohub.exceptions import ExternalServiceError
from autohub.external.bluetooth import BluetoothController
from autohub.external.machines import MachineCommander
from autohub.ingestion.normalize import safe_float, value_to_text
from autohub.power.engine import MODULES, PowerEngine
from autohub.state.events import ChangeEvent
from autohub.state.hooks import Hook
from autohub.state.session import SessionStore
from autohub.state.settings import SettingsStore

_logger = logging.getLogger(__name__)

RAIN_ALERT = "Windows are down in the rain, eh?"
RAIN_ALERT_LOCKED_FOR = timedelta(minutes=5)

#: Seat memory buttons double as restart buttons for the networked machines.
SEAT_MEMORY_MACHINES = {
    "SEAT_MEMORY_1": "BOARD",
    "SEAT_MEMORY_2": "WIRELESS",
    "SEAT_MEMORY_3": HUB_COMPONENT,
}

AlertSink = Callable[[str], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PowerTriggers:
    """Owns the hub's hooks; :meth:`register` wires them onto both tables."""

    def __init__(
        self,
        *,
        session: SessionStore,
        settings: SettingsStore,
        engine: PowerEngine,
        bluetooth: BluetoothController | None = None,
        machines: MachineCommander | None = None,
        alert: AlertSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session = session
        self._settings = settings
        self._engine = engine
        self._bluetooth = bluetooth
        self._machines = machines
        self._alert = alert
        self._clock = clock

    def register(self) -> list[Hook]:
        session_hooks = self._session.dispatcher
        settings_hooks = self._settings.dispatcher
        hooks = [
            *session_hooks.register_hooks(("MAIN_VOLTAGE_RAW", "AUX_VOLTAGE_RAW"), self.on_voltage),
            session_hooks.register_hook("AUX_CURRENT_RAW", self.on_aux_current),
            session_hooks.register_hook("ACC_POWER", self.on_acc_power),
            session_hooks.register_hook("KEY_STATE", self.on_key_state),
            session_hooks.register_hook("WIRELESS_POWER", self.on_wireless_power),
            session_hooks.register_hook("LIGHT_SENSOR_REASON", self.on_light_sensor_reason),
            session_hooks.register_hook("LIGHT_SENSOR_ON", self.on_light_sensor_on),
            *session_hooks.register_hooks(SEAT_MEMORY_MACHINES, self.on_seat_memory),
            *settings_hooks.register_hooks(MODULES, self.on_module_setting),
            settings_hooks.register_hook(HUB_COMPONENT, self.on_hub_setting),
        ]
        _logger.debug("Registered %d hooks", len(hooks))
        return hooks

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def on_voltage(self, event: ChangeEvent) -> None:
        raw = safe_float(event.value)
        if raw is None:
            _logger.error("Failed to convert %r to float", event.value)
            return
        self._session.set(event.key.removesuffix("_RAW"), round(raw_to_voltage(raw), 3), quiet=True)

    def on_aux_current(self, event: ChangeEvent) -> None:
        raw = safe_float(event.value)
        if raw is None:
            _logger.error("Failed to convert %r to float", event.value)
            return
        self._session.set("AUX_CURRENT", round(raw_to_current(raw), 3), quiet=True)

    def on_wireless_power(self, event: ChangeEvent) -> None:
        # Wireless board lost power before it could report LTE going down
        if value_to_text(event.value) == "FALSE":
            self._session.set("LTE_ON", "FALSE", quiet=True)

    # ------------------------------------------------------------------
    # Power
    # ------------------------------------------------------------------

    def on_acc_power(self, event: ChangeEvent) -> None:
        value = value_to_text(event.value).upper()
        if value not in ("TRUE", "FALSE"):
            _logger.error("ACC Power Trigger unexpected value: %s", event.value)
            return
        acc_on = value == "TRUE"
        key_state = self._session.get_string_default("KEY_STATE", "FALSE")
        wifi_on = self._session.get_bool_default("WIFI_CONNECTED", False)

        submit = self._session.dispatcher.submit
        submit(self._engine.evaluate_wireless, key_state, acc_on, wifi_on, label="wireless power")
        submit(self._engine.evaluate_board, key_state, acc_on, wifi_on, label="board power")
        submit(self._engine.evaluate_sound, key_state, acc_on, wifi_on, label="sound power")
        submit(self._engine.evaluate_tablet, key_state, acc_on, wifi_on, label="tablet power")
        submit(self._engine.evaluate_auto_lock, key_state, acc_on, wifi_on, label="auto-lock")

    async def on_key_state(self, event: ChangeEvent) -> None:
        key_state = value_to_text(event.value)
        acc_on = self._session.get_bool_default("ACC_POWER", False)
        wifi_on = self._session.get_bool_default("WIFI_CONNECTED", False)

        submit = self._session.dispatcher.submit
        submit(self._engine.evaluate_angel, key_state, label="angel power")
        submit(self._engine.evaluate_board, key_state, acc_on, wifi_on, label="board power")
        submit(self._engine.evaluate_sound, key_state, acc_on, wifi_on, label="sound power")

        if key_state == "FALSE" and event.changed and self._bluetooth is not None:
            try:
                await self._bluetooth.pause()
            except ExternalServiceError as exc:
                _logger.warning("Could not pause media after key removal: %s", exc)
            else:
                _logger.info("Key removed, paused bluetooth media")

    async def on_light_sensor_on(self, _event: ChangeEvent) -> None:
        await self._engine.evaluate_angel()

    async def on_module_setting(self, event: ChangeEvent) -> None:
        await self._engine.evaluate_module(event.key)

    async def on_hub_setting(self, event: ChangeEvent) -> None:
        if event.name == "AUTOLOCK":
            await self._engine.evaluate_auto_lock()

    # ------------------------------------------------------------------
    # Alerts and machines
    # ------------------------------------------------------------------

    async def on_light_sensor_reason(self, event: ChangeEvent) -> None:
        if value_to_text(event.value).upper() != "RAIN":
            return
        key_position = self._session.get_string_default("KEY_POSITION", "")
        windows_open = self._session.get_string_default("WINDOWS_OPEN", "")
        doors = self._session.get("DOORS_LOCKED")
        if key_position != "OFF" or windows_open != "TRUE" or doors is None:
            return
        if value_to_text(doors.value) != "TRUE" or doors.last_update is None:
            return
        if self._clock() - doors.last_update <= RAIN_ALERT_LOCKED_FOR:
            return
        _logger.warning("%s", RAIN_ALERT)
        if self._alert is not None:
            await self._alert(RAIN_ALERT)

    async def on_seat_memory(self, event: ChangeEvent) -> None:
        if value_to_text(event.value) != "TRUE":
            return
        machine = SEAT_MEMORY_MACHINES.get(event.key)
        if machine is None or self._machines is None:
            return
        _logger.info("%s pressed, restarting %s", event.key, machine)
        await self._machines.command(machine, "restart")
