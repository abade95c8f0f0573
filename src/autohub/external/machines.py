"""Service commands for the networked machines powered by the hub."""

from __future__ import annotations

import logging

import aiohttp

from autohub._constants import MACHINE_SERVICE_PORT
from autohub._names import format_name
from autohub.exceptions import ExternalServiceError
from autohub.state.settings import SettingsStore

_logger = logging.getLogger(__name__)


class MachineCommander:
    """Sends ``GET http://<ADDRESS>:5350/<command>`` to a machine.

    The address is the ``(<MACHINE>, ADDRESS)`` setting.
    """

    def __init__(
        self,
        *,
        settings: SettingsStore,
        http_session: aiohttp.ClientSession,
        port: int = MACHINE_SERVICE_PORT,
    ) -> None:
        self._settings = settings
        self._http = http_session
        self._port = port

    async def command(self, machine: str, command: str) -> bool:
        """Returns ``False`` when the machine has no address configured."""
        name = format_name(machine)
        address = self._settings.get(name, "ADDRESS")
        if not address:
            _logger.warning("No address configured for machine %s, cannot %s it", name, command)
            return False
        url = f"http://{address}:{self._port}/{command}"
        try:
            async with self._http.get(url) as resp:
                await resp.read()
        except aiohttp.ClientError as exc:
            raise ExternalServiceError(
                f"Failed to command machine {name} (at {address}) to {command}: {exc}", service="machine"
            ) from exc
        _logger.info("Commanded machine %s to %s", name, command)
        return True
