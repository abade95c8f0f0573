"""Named vehicle commands (``/{device}/{command}``).

Requests are fuzzy: both parts are canonicalised and a trailing ``S`` is
dropped, so ``/doors/lock`` and ``/DOOR/LOCKS`` are the same command.
"""

from __future__ import annotations

import logging

from autohub._constants import TARGET_AUTO, TARGET_OFF, TARGET_ON
from autohub._names import format_name, is_positive_request
from autohub.exceptions import ExternalServiceError
from autohub.external.pybus import PybusClient
from autohub.serial_queue import SerialQueue
from autohub.state.session import SessionStore
from autohub.state.settings import SettingsStore

_logger = logging.getLogger(__name__)

#: Devices whose command must be an on/off style word.
_BOOLEAN_DEVICES = frozenset({"DOOR", "TOP", "CONVERTIBLE_TOP", "HAZARD", "FLASHER", "INTERIOR"})

_RADIO_BUTTONS = {
    "AM": "pressAM",
    "FM": "pressFM",
    "NEXT": "pressNext",
    "PREV": "pressPrev",
    "MODE": "pressMode",
    "NUM": "pressNumPad",
    **{str(n): f"press{n}" for n in range(1, 7)},
}

#: URL device aliases of the modules whose power target can be set.
_POWER_TARGETS = {
    "BOARD": "BOARD",
    "CAMERA": "BOARD",
    "LTE": "WIRELESS",
    "WIRELES": "WIRELESS",
    "TABLET": "TABLET",
    "SOUND": "SOUND",
    "ANGEL_EYE": "ANGEL_EYES",
}


class CommandError(ValueError):
    """The device or command of a request is not understood."""


class VehicleCommands:
    def __init__(
        self,
        *,
        session: SessionStore,
        settings: SettingsStore,
        queue: SerialQueue,
        pybus: PybusClient | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._queue = queue
        self._pybus = pybus

    async def _bus(self, command: str) -> None:
        if self._pybus is None:
            raise ExternalServiceError(f"No pybus bridge configured for {command}", service="pybus")
        await self._pybus.push(command)

    async def run(self, device: str, command: str) -> str:
        """Execute the command and return the canonical device name.

        Raises :class:`CommandError` for unknown devices or commands and
        :class:`~autohub.exceptions.ExternalServiceError` when the bus bridge
        rejects the directive.
        """
        if not device or not command:
            raise CommandError("Error: One or more required params is empty")
        dev = format_name(device).removesuffix("S")
        cmd = format_name(command).removesuffix("S")

        try:
            positive: bool | None = is_positive_request(cmd)
        except ValueError as exc:
            if dev in _BOOLEAN_DEVICES:
                raise CommandError(str(exc)) from exc
            positive = None

        _logger.info("Attempting to send command %s to device %s", cmd, dev)

        # Without accessory power the car ignores the first request; wake it up
        if self._pybus is not None and not self._session.get_bool_default("ACC_POWER", False):
            await self._pybus.push_logged("requestVehicleStatus")

        if dev in _POWER_TARGETS:
            self._set_power_target(_POWER_TARGETS[dev], cmd, positive)
            return dev

        if dev == "DOOR":
            await self._doors(bool(positive), cmd)
        elif dev == "WINDOW":
            if cmd == "POPDOWN":
                await self._bus("popWindowsDown")
            elif cmd == "POPUP":
                await self._bus("popWindowsUp")
            else:
                await self._bus("rollWindowsUp" if positive else "rollWindowsDown")
        elif dev in ("TOP", "CONVERTIBLE_TOP"):
            await self._bus("convertibleTopUp" if positive else "convertibleTopDown")
        elif dev == "TRUNK":
            await self._bus("openTrunk")
        elif dev == "HAZARD":
            await self._bus("turnOnHazards" if positive else "turnOffAllExteriorLights")
        elif dev == "FLASHER":
            await self._bus("flashAllExteriorLights" if positive else "turnOffAllExteriorLights")
        elif dev == "INTERIOR":
            await self._bus("interiorLightsOn" if positive else "interiorLightsOff")
        elif dev in ("CLOWN", "NOSE"):
            await self._bus("turnOnClownNose")
        elif dev == "MODE":
            await self._bus("pressMode")
        elif dev in ("RADIO", "NAV", "STEREO"):
            await self._bus(_RADIO_BUTTONS.get(cmd, "pressStereoPower"))
        else:
            raise CommandError(f"Invalid device {dev}")
        return dev

    async def _doors(self, lock: bool, cmd: str) -> None:
        status = self._session.get_string_default("DOORS_LOCKED", "")
        if not status:
            if lock and self._pybus is not None:
                _logger.info("Door status is unknown, but we're locking. Go through the pybus")
                await self._bus("lockDoors")
                return
            raise CommandError("Door status is unknown")
        # The serial command toggles, so only send it when it moves towards the request
        if self._queue.default_writer is not None and (
            (lock and status == "FALSE") or (not lock and status == "TRUE")
        ):
            self._queue.push_text("toggleDoorLocks")
        else:
            _logger.info("Request to %s doors denied, door status is %s", cmd, status)

    def _set_power_target(self, component: str, cmd: str, positive: bool | None) -> None:
        if cmd == TARGET_AUTO:
            target = TARGET_AUTO
        elif positive is None:
            raise CommandError(f"Error: {cmd} is an invalid command")
        else:
            target = TARGET_ON if positive else TARGET_OFF
        self._settings.set(component, "POWER", target)
