"""Client for the vehicle-bus bridge (pybus).

Directives are plain names (``openTrunk``) or a Python-formatted list of
three byte strings: source, destination and data (``["50", "68", "3B01"]``).
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable

import aiohttp

from autohub.exceptions import ExternalServiceError
from autohub.state.session import SessionStore

_logger = logging.getLogger(__name__)

#: Status requests repeated while the car has accessory power (command, seconds).
REPEAT_COMMANDS: tuple[tuple[str, float], ...] = (
    ("requestIgnitionStatus", 10),
    ("requestLampStatus", 20),
    ("requestVehicleStatus", 30),
    ("requestOdometer", 45),
    ("requestTimeStatus", 60),
    ("requestTemperatureStatus", 120),
)

#: Directives that expand into several bridge requests.
EXPANSIONS: dict[str, tuple[str, ...]] = {
    "rollWindowsUp": ("popWindowsUp", "popWindowsUp"),
    "rollWindowsDown": ("popWindowsDown", "popWindowsDown"),
}

_HEX_BYTE = re.compile(r"[0-9A-Fa-f]{2}")
_HEX_DATA = re.compile(r"(?:[0-9A-Fa-f]{2})+")


def raw_directive(src: str, dest: str, data: str) -> str:
    """Format a raw bus message; ``src``/``dest`` are two hex digits each, ``data`` is hex."""
    if not (_HEX_BYTE.fullmatch(src) and _HEX_BYTE.fullmatch(dest) and _HEX_DATA.fullmatch(data)):
        raise ValueError("Invalid command")
    return f'["{src}", "{dest}", "{data}"]'


class PybusClient:
    def __init__(
        self,
        *,
        base_url: str,
        http_session: aiohttp.ClientSession,
        session: SessionStore,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http_session
        self._session = session
        self._sleep = sleep

    async def push(self, command: str) -> None:
        """Send one directive to the bridge queue."""
        expansion = EXPANSIONS.get(command)
        if expansion is not None:
            for step in expansion:
                await self.push(step)
            return

        url = f"{self._base_url}/{command}"
        try:
            async with self._http.get(url) as resp:
                await resp.read()
        except aiohttp.ClientError as exc:
            raise ExternalServiceError(f"Failed to request {command} from pybus: {exc}", service="pybus") from exc
        _logger.debug("Added %s to the Pybus Queue", command)

    async def push_logged(self, command: str) -> None:
        try:
            await self.push(command)
        except ExternalServiceError as exc:
            _logger.error("%s", exc)

    async def wait_until_online(self, interval: float = 0.1) -> None:
        _logger.info("Waiting for pybus to come online...")
        while True:
            try:
                async with self._http.get(f"{self._base_url}/requestIgnitionStatus") as resp:
                    await resp.read()
                return
            except aiohttp.ClientError:
                await self._sleep(interval)

    async def startup(self) -> None:
        """Gather initial vehicle data once the bridge answers."""
        await self.wait_until_online()
        await asyncio.gather(*(self.push_logged(command) for command, _ in REPEAT_COMMANDS))

    async def repeat(self, command: str, interval: float) -> None:
        """Push *command* every *interval* seconds while ``ACC_POWER`` is on."""
        _logger.info("Running Pybus command %s every %d seconds", command, interval)
        while True:
            # Repeated requests keep the car awake, so only send them with power on
            if self._session.get_string_default("ACC_POWER", "FALSE") == "TRUE":
                await self.push_logged(command)
            await self._sleep(interval)

    def start_repeats(self) -> list[asyncio.Task[None]]:
        return [
            asyncio.create_task(self.repeat(command, interval), name=f"pybus-{command}")
            for command, interval in REPEAT_COMMANDS
        ]
