"""Serial device lifecycle: open, read frames, reopen after failures."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import serial

from autohub.exceptions import SerialDeviceError
from autohub.ingestion.apply import apply_frame
from autohub.ingestion.frames import decode_frame
from autohub.serial_queue import SerialQueue
from autohub.state.session import SessionStore

_logger = logging.getLogger(__name__)

MAX_FRAME_BYTES = 4096

Opener = Callable[[str, int, float], Any]
Sleeper = Callable[[float], Awaitable[None]]


def open_serial(port: str, baud: int, timeout: float) -> serial.Serial:
    return serial.Serial(port, baud, timeout=timeout)


def read_frame(device: Any) -> bytes:
    """Read bytes until a newline or the brace closing the outermost object.

    Braces inside JSON strings are not counted. Returns whatever was read
    when the device read times out; raises when the device errors. A frame
    longer than ``MAX_FRAME_BYTES`` is skipped up to its delimiter and
    ``b""`` is returned.
    """
    buf = bytearray()
    depth = 0
    in_string = False
    escaped = False
    overflow = False
    while True:
        chunk = device.read(1)
        if not chunk:
            break
        if chunk == b"\n":
            if not overflow:
                buf += chunk
            break
        if not overflow and len(buf) >= MAX_FRAME_BYTES:
            _logger.warning("Serial frame longer than %d bytes, dropping it", MAX_FRAME_BYTES)
            overflow = True
        if not overflow:
            buf += chunk
        if in_string:
            if escaped:
                escaped = False
            elif chunk == b"\\":
                escaped = True
            elif chunk == b'"':
                in_string = False
        elif chunk == b'"':
            in_string = True
        elif chunk == b"{":
            depth += 1
        elif chunk == b"}":
            depth -= 1
            if depth <= 0:
                break
    if overflow:
        return b""
    return bytes(buf)


class SerialLink:
    """Keeps one serial device open and feeds its frames into the session."""

    def __init__(
        self,
        port: str,
        *,
        queue: SerialQueue,
        session: SessionStore,
        baud: int = 115200,
        read_timeout: float = 10.0,
        open_retry_delay: float = 2.0,
        reopen_delay: float = 10.0,
        writer: bool = True,
        opener: Opener = open_serial,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self.port = port
        self._queue = queue
        self._session = session
        self._baud = baud
        self._read_timeout = read_timeout
        self._open_retry_delay = open_retry_delay
        self._reopen_delay = reopen_delay
        self._writer = writer
        self._opener = opener
        self._sleep = sleep
        self.device: Any = None
        self._executor: ThreadPoolExecutor | None = None
        self.frames_read = 0
        self.frame_errors = 0

    @property
    def is_open(self) -> bool:
        return self.device is not None

    def _io(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"autohub-serial-{self.port}")
        return self._executor

    async def open(self) -> Any:
        """Open the port, retrying every ``open_retry_delay`` seconds until it succeeds."""
        loop = asyncio.get_running_loop()
        while True:
            try:
                device = await loop.run_in_executor(
                    self._io(), self._opener, self.port, self._baud, self._read_timeout
                )
            except (serial.SerialException, OSError, ValueError) as exc:
                _logger.error("Failed to open serial port %s: %s", self.port, exc)
                await self._sleep(self._open_retry_delay)
                continue
            _logger.info("Opened serial port %s @ %d", self.port, self._baud)
            return device

    async def run(self) -> None:
        """Open, read and reopen forever. Cancellation closes the port."""
        try:
            await self._cycle()
        finally:
            if self._executor is not None:
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = None

    async def _cycle(self) -> None:
        while True:
            device = await self.open()
            self.device = device
            writer_task: asyncio.Task[None] | None = None
            if self._writer:
                self._queue.claim_default_writer(device)
                writer_task = asyncio.create_task(self._queue.run_writer(device), name=f"serial-writer-{self.port}")
            try:
                await self.read_loop(device)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                _logger.error("Serial device %s disconnected: %s", self.port, exc)
            finally:
                if writer_task is not None:
                    writer_task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await writer_task
                self._queue.release_default_writer(device)
                self._queue.discard(device, SerialDeviceError(f"Serial device {self.port} went away"))
                self.device = None
                self._close(device)
            await self._sleep(self._reopen_delay)

    async def read_loop(self, device: Any) -> None:
        """Read and apply frames until the device fails."""
        loop = asyncio.get_running_loop()
        _logger.info("Starting serial read on %s", self.port)
        while True:
            raw = await loop.run_in_executor(self._io(), read_frame, device)
            if not raw.strip():
                continue
            self.handle_frame(raw)

    def handle_frame(self, raw: bytes) -> list[str]:
        self.frames_read += 1
        errors = apply_frame(decode_frame(raw), self._session)
        self.frame_errors += len(errors)
        return errors

    def _close(self, device: Any) -> None:
        try:
            device.close()
        except Exception as exc:
            _logger.debug("Closing %s failed: %s", self.port, exc)
