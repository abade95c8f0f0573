"""Power decisions for switched modules.

Each evaluation reads the module's actual state (``<MODULE>_POWER`` in the
session) and its target (``(<COMPONENT>, POWER)`` in the settings: ``AUTO``,
``ON`` or ``OFF``), combines them with the evaluator's opinion of whether
the module should be on, and sends at most one power command over serial.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from autohub._constants import HUB_COMPONENT, TARGET_AUTO, TARGET_OFF, TARGET_ON
from autohub.exceptions import ExternalServiceError, PersistenceError, SerialError
from autohub.external.machines import MachineCommander
from autohub.serial_queue import SerialQueue
from autohub.state.session import SessionStore
from autohub.state.settings import SettingsStore

_logger = logging.getLogger(__name__)

#: A target change arriving this soon after the last action is ignored.
TRIGGER_THROTTLE_SECONDS = 3.0
#: Doors touched within this window are left alone by the auto-lock.
AUTOLOCK_GRACE = timedelta(minutes=5)

_VALID_TARGETS = frozenset({TARGET_AUTO, TARGET_ON, TARGET_OFF})


class PowerDecision(StrEnum):
    POWER_ON = "power_on"
    SHUTDOWN = "shutdown"
    RESET_TARGET = "reset_target"
    NONE = "none"


@dataclass(frozen=True)
class ModuleSpec:
    """Static description of a switched module.

    ``name`` is used in the serial commands (``powerOn<name>``); ``machine``
    names the networked machine asked to shut down before its power is cut.
    """

    name: str
    component: str
    session_key: str
    machine: str | None = None


ANGEL = ModuleSpec("Angel", "ANGEL_EYES", "ANGEL_EYES_POWER")
BOARD = ModuleSpec("Board", "BOARD", "BOARD_POWER", machine="BOARD")
TABLET = ModuleSpec("Tablet", "TABLET", "TABLET_POWER")
WIRELESS = ModuleSpec("Wireless", "WIRELESS", "WIRELESS_POWER", machine="WIRELESS")
SOUND = ModuleSpec("Sound", "SOUND", "SOUND_POWER")

MODULES: dict[str, ModuleSpec] = {spec.component: spec for spec in (ANGEL, BOARD, TABLET, WIRELESS, SOUND)}


@dataclass(frozen=True)
class PowerModule:
    """Snapshot of one module, built fresh for every evaluation."""

    name: str
    is_on: bool | None
    target: str | None
    on_error: str | None = None
    target_error: str | None = None


def read_module(spec: ModuleSpec, session: SessionStore, settings: SettingsStore) -> PowerModule:
    is_on: bool | None = None
    on_error: str | None = None
    try:
        is_on = session.get_bool(spec.session_key)
    except KeyError:
        on_error = f"{spec.session_key} is not in the session"
    except ValueError as exc:
        on_error = f"{spec.session_key}: {exc}"

    target = settings.get(spec.component, "POWER")
    target_error: str | None = None
    if target is None:
        target_error = f"{spec.component}.POWER is not set"
    elif target.upper() not in _VALID_TARGETS:
        target_error = f"{spec.component}.POWER has invalid target {target!r}"
    else:
        target = target.upper()
    return PowerModule(spec.name, is_on, target, on_error=on_error, target_error=target_error)


def decide(should_be_on: bool, module: PowerModule) -> PowerDecision:
    if module.target_error is not None:
        return PowerDecision.RESET_TARGET
    if module.on_error is not None or module.is_on is None:
        return PowerDecision.NONE
    target, is_on = module.target, module.is_on
    if (target == TARGET_AUTO and not is_on and should_be_on) or (target == TARGET_ON and not is_on):
        return PowerDecision.POWER_ON
    if (target == TARGET_AUTO and is_on and not should_be_on) or (target == TARGET_OFF and is_on):
        return PowerDecision.SHUTDOWN
    return PowerDecision.NONE


def angel_should_be_on(light_sensor_on: bool, key_state: str) -> bool:
    return not light_sensor_on and key_state != "FALSE"


def video_should_be_on(acc_on: bool, wifi_on: bool, key_state: str) -> bool:
    return (acc_on and not wifi_on) or (wifi_on and key_state != "FALSE")


def wireless_should_be_on(wifi_on: bool, key_state: str) -> bool:
    return not (wifi_on and key_state == "FALSE")


@dataclass
class _TriggerState:
    working: bool = False
    last_target: str | None = None
    last_action: float = -math.inf


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PowerEngine:
    """Runs power evaluations with a per-module in-flight guard and throttle."""

    def __init__(
        self,
        *,
        session: SessionStore,
        settings: SettingsStore,
        queue: SerialQueue,
        machines: MachineCommander | None = None,
        shutdown_delay: float = 10.0,
        throttle: float = TRIGGER_THROTTLE_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session = session
        self._settings = settings
        self._queue = queue
        self._machines = machines
        self._shutdown_delay = shutdown_delay
        self._throttle = throttle
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep
        self._states: dict[str, _TriggerState] = {}

    def _state(self, name: str) -> _TriggerState:
        return self._states.setdefault(name, _TriggerState())

    def _inputs(self) -> tuple[str, bool, bool]:
        key_state = self._session.get_string_default("KEY_STATE", "FALSE")
        acc_on = self._session.get_bool_default("ACC_POWER", False)
        wifi_on = self._session.get_bool_default("WIFI_CONNECTED", False)
        return key_state, acc_on, wifi_on

    def _reset_setting(self, component: str, name: str) -> None:
        _logger.error("Setting read error for %s.%s. Resetting to AUTO", component, name)
        try:
            self._settings.set(component, name, TARGET_AUTO)
        except PersistenceError as exc:
            _logger.error("Could not persist reset of %s.%s: %s", component, name, exc)

    # ------------------------------------------------------------------
    # Generic trigger
    # ------------------------------------------------------------------

    async def generic_power_trigger(self, should_be_on: bool, spec: ModuleSpec) -> PowerDecision:
        state = self._state(spec.name)
        if state.working:
            _logger.debug("%s power evaluation already in flight, skipping", spec.name)
            return PowerDecision.NONE

        state.working = True
        try:
            module = read_module(spec, self._session, self._settings)
            decision = decide(should_be_on, module)

            if decision == PowerDecision.RESET_TARGET:
                _logger.error("Setting Error: %s", module.target_error)
                self._reset_setting(spec.component, "POWER")
                return decision
            if decision == PowerDecision.NONE:
                if module.on_error is not None:
                    _logger.debug("Session Error: %s", module.on_error)
                return decision

            now = self._monotonic()
            if state.last_target != module.target and now - state.last_action < self._throttle:
                _logger.info(
                    "Ignoring target %s on module %s, since last check was under %.0f seconds ago",
                    module.target,
                    spec.name,
                    self._throttle,
                )
                return PowerDecision.NONE

            try:
                if decision == PowerDecision.POWER_ON:
                    _logger.info("Powering on %s, because target is %s", spec.name, module.target)
                    await self._queue.await_text(f"powerOn{spec.name}")
                else:
                    _logger.info("Powering off %s, because target is %s", spec.name, module.target)
                    await self.graceful_shutdown(spec)
            except SerialError as exc:
                _logger.error("Power command for %s failed: %s", spec.name, exc)
                return PowerDecision.NONE

            state.last_target = module.target
            state.last_action = self._monotonic()
            return decision
        finally:
            state.working = False

    async def graceful_shutdown(self, spec: ModuleSpec) -> None:
        """Ask the module's machine to shut down, wait, then cut its power."""
        if spec.machine is not None and self._machines is not None:
            try:
                await self._machines.command(spec.machine, "shutdown")
            except ExternalServiceError as exc:
                _logger.error("%s", exc)
            await self._sleep(self._shutdown_delay)
        await self._queue.await_text(f"powerOff{spec.name}")

    # ------------------------------------------------------------------
    # Evaluators
    # ------------------------------------------------------------------

    async def evaluate_angel(self, key_state: str | None = None) -> PowerDecision:
        key = key_state if key_state is not None else self._inputs()[0]
        light_on = self._session.get_bool_default("LIGHT_SENSOR_ON", False)
        return await self.generic_power_trigger(angel_should_be_on(light_on, key), ANGEL)

    async def evaluate_board(self, key_state: str, acc_on: bool, wifi_on: bool) -> PowerDecision:
        return await self.generic_power_trigger(video_should_be_on(acc_on, wifi_on, key_state), BOARD)

    async def evaluate_tablet(self, key_state: str, acc_on: bool, wifi_on: bool) -> PowerDecision:
        return await self.generic_power_trigger(video_should_be_on(acc_on, wifi_on, key_state), TABLET)

    async def evaluate_sound(self, key_state: str, acc_on: bool, wifi_on: bool) -> PowerDecision:
        return await self.generic_power_trigger(video_should_be_on(acc_on, wifi_on, key_state), SOUND)

    async def evaluate_wireless(self, key_state: str, acc_on: bool, wifi_on: bool) -> PowerDecision:
        return await self.generic_power_trigger(wireless_should_be_on(wifi_on, key_state), WIRELESS)

    async def evaluate_module(self, component: str) -> PowerDecision:
        """Re-evaluate the module owning settings *component* from current session inputs."""
        spec = MODULES.get(component.upper())
        if spec is None:
            raise ValueError(f"{component} is not a power module")
        if spec is ANGEL:
            return await self.evaluate_angel()
        key_state, acc_on, wifi_on = self._inputs()
        evaluators = {
            BOARD: self.evaluate_board,
            TABLET: self.evaluate_tablet,
            SOUND: self.evaluate_sound,
            WIRELESS: self.evaluate_wireless,
        }
        return await evaluators[spec](key_state, acc_on, wifi_on)

    async def evaluate_auto_lock(
        self,
        key_state: str | None = None,
        acc_on: bool | None = None,
        wifi_on: bool | None = None,
    ) -> bool:
        """Lock the doors when the car has been left unlocked.

        Returns ``True`` when a lock toggle was sent.
        """
        state = self._state("AUTOLOCK")
        if state.working:
            return False
        state.working = True
        try:
            current_key, current_acc, current_wifi = self._inputs()
            key = current_key if key_state is None else key_state
            acc = current_acc if acc_on is None else acc_on
            wifi = current_wifi if wifi_on is None else wifi_on

            try:
                doors_locked = self._session.get_bool("DOORS_LOCKED")
            except (KeyError, ValueError):
                return False

            target = self._settings.get(HUB_COMPONENT, "AUTOLOCK")
            if target is None:
                self._reset_setting(HUB_COMPONENT, "AUTOLOCK")
                return False

            should_trigger = not doors_locked and not acc and not wifi and key == "FALSE"
            if target.upper() != TARGET_AUTO or not should_trigger:
                return False

            entry = self._session.get("DOORS_LOCKED")
            if entry is not None and entry.last_update is not None:
                if self._clock() - entry.last_update < AUTOLOCK_GRACE:
                    _logger.debug("Doors were touched in the last %s, not locking", AUTOLOCK_GRACE)
                    return False

            try:
                await self._queue.await_text("toggleDoorLocks")
            except SerialError as exc:
                _logger.error("Auto-lock failed: %s", exc)
                return False
            _logger.info("Doors were left unlocked, locking them")
            return True
        finally:
            state.working = False
