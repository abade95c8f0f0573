"""Bluetooth media control through ``dbus-send``."""

from __future__ import annotations

import asyncio
import logging

from autohub.exceptions import BluetoothError

_logger = logging.getLogger(__name__)

_DBUS_PREFIX = ("--system", "--print-reply", "--type=method_call", "--dest=org.bluez")
_PLAYER = "org.bluez.MediaPlayer1"


class BluetoothController:
    def __init__(self, address: str = "", *, executable: str = "dbus-send") -> None:
        self._executable = executable
        self.address = address

    @property
    def address(self) -> str:
        return self._address

    @address.setter
    def address(self, value: str) -> None:
        self._address = value.strip().replace(":", "_")
        if self._address:
            _logger.info("Accepting bluetooth connections from %s", self._address)

    def _device_path(self) -> str:
        return f"/org/bluez/hci0/dev_{self._address}"

    def _player_path(self) -> str:
        return f"{self._device_path()}/player0"

    async def send(self, *args: str) -> str:
        """Run ``dbus-send`` and return its output.

        Raises :class:`BluetoothError` when no address is configured or the
        command fails.
        """
        if not self._address:
            raise BluetoothError("No valid BT Address to run command", service="bluetooth")
        argv = [self._executable, *_DBUS_PREFIX, *args]
        _logger.debug("Running %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise BluetoothError(f"Cannot run {self._executable}: {exc}", service="bluetooth") from exc
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise BluetoothError(f"{args[-1]} failed ({proc.returncode}): {detail}", service="bluetooth")
        return stdout.decode("utf-8", errors="replace")

    async def connect(self) -> str:
        return await self.send(self._device_path(), "org.bluez.Device1.Connect")

    async def disconnect(self) -> str:
        return await self.send(self._device_path(), "org.bluez.Device1.Disconnect")

    async def play(self) -> str:
        return await self.send(self._player_path(), f"{_PLAYER}.Play")

    async def pause(self) -> str:
        return await self.send(self._player_path(), f"{_PLAYER}.Pause")

    async def next(self) -> str:
        return await self.send(self._player_path(), f"{_PLAYER}.Next")

    async def prev(self) -> str:
        return await self.send(self._player_path(), f"{_PLAYER}.Previous")

    async def device_info(self) -> str:
        return await self.send(
            self._player_path(), "org.freedesktop.DBus.Properties.Get", f"string:{_PLAYER}", "string:Status"
        )

    async def media_info(self) -> str:
        return await self.send(
            self._player_path(), "org.freedesktop.DBus.Properties.Get", f"string:{_PLAYER}", "string:Track"
        )

    async def run_action(self, action: str) -> str:
        """Dispatch a URL action name (``play``, ``pause``, ``next``...)."""
        actions = {
            "connect": self.connect,
            "disconnect": self.disconnect,
            "play": self.play,
            "pause": self.pause,
            "next": self.next,
            "prev": self.prev,
            "previous": self.prev,
            "device": self.device_info,
            "media": self.media_info,
        }
        handler = actions.get(action.strip().lower())
        if handler is None:
            raise BluetoothError(f"Unknown bluetooth action {action}", service="bluetooth")
        return await handler()
