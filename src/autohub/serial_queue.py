"""Outbound serial command queue.

Messages are queued per device and written by one writer task per device.
The most recently pushed message for a device is written first. Device
writes run on a thread pool owned by the queue.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol

from autohub.exceptions import SerialDeviceError, SerialError, SerialTimeoutError, SerialWriteError

_logger = logging.getLogger(__name__)


class SerialDevice(Protocol):
    def write(self, data: bytes) -> int | None: ...


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


def describe_device(device: Any) -> str:
    port = getattr(device, "port", None)
    return str(port) if port else repr(device)


@dataclass(eq=False)
class SerialMessage:
    """One outbound serial write.

    ``completion`` is resolved with ``None`` on success or the write error.
    """

    device: SerialDevice | None
    text: str
    completion: asyncio.Future[None] | None = None
    id: str = field(default_factory=_short_id)


class SerialQueue:
    """Per-device queues guarded by a single lock."""

    def __init__(
        self,
        *,
        await_timeout: float = 15.0,
        write_workers: int = 2,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._await_timeout = await_timeout
        self._executor = ThreadPoolExecutor(max_workers=write_workers, thread_name_prefix="autohub-serial-write")
        self._lock = threading.Lock()
        self._queues: dict[Any, list[SerialMessage]] = {}
        self._wake: dict[Any, asyncio.Event] = {}
        self._writer: SerialDevice | None = None
        self._loop = loop

    def bind(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop or asyncio.get_running_loop()

    def close(self) -> None:
        """Release the write threads. Writes in progress finish on their own."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Default writer
    # ------------------------------------------------------------------

    @property
    def default_writer(self) -> SerialDevice | None:
        with self._lock:
            return self._writer

    def claim_default_writer(self, device: SerialDevice) -> bool:
        """Make *device* the default writer unless one is already set."""
        with self._lock:
            if self._writer is not None:
                return False
            self._writer = device
        _logger.info("Registered %s as default serial writer", describe_device(device))
        return True

    def release_default_writer(self, device: SerialDevice) -> None:
        with self._lock:
            if self._writer is device:
                self._writer = None

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def push(self, msg: SerialMessage) -> None:
        """Queue *msg* for its device without waiting."""
        if msg.device is None:
            _logger.error("[%s] Serial port is not set, nothing to write %r to", msg.id, msg.text)
            self._resolve(msg, SerialDeviceError("No serial device available"))
            return
        with self._lock:
            self._queues.setdefault(msg.device, []).append(msg)
        _logger.debug("[%s] Queued %r for %s", msg.id, msg.text, describe_device(msg.device))
        self._notify(msg.device)

    def push_text(self, text: str) -> SerialMessage:
        msg = SerialMessage(device=self.default_writer, text=text)
        self.push(msg)
        return msg

    async def await_message(self, msg: SerialMessage, timeout: float | None = None) -> None:
        """Queue *msg* and wait until it has been written.

        Raises the write error, or :class:`SerialTimeoutError` when the write
        was not confirmed within *timeout* (the message is withdrawn).
        """
        loop = asyncio.get_running_loop()
        msg.completion = loop.create_future()
        limit = self._await_timeout if timeout is None else timeout
        _logger.info("[%s] Awaiting serial message write", msg.id)
        self.push(msg)
        try:
            async with asyncio.timeout(limit):
                await msg.completion
        except TimeoutError:
            self.withdraw(msg)
            raise SerialTimeoutError(f"[{msg.id}] Serial write of {msg.text!r} not confirmed within {limit}s") from None
        _logger.info("[%s] Message write is complete", msg.id)

    async def await_text(self, text: str, timeout: float | None = None) -> None:
        await self.await_message(SerialMessage(device=self.default_writer, text=text), timeout=timeout)

    def withdraw(self, msg: SerialMessage) -> bool:
        """Remove *msg* if it is still queued."""
        with self._lock:
            queue = self._queues.get(msg.device)
            if queue is None or msg not in queue:
                return False
            queue.remove(msg)
        return True

    def queued(self, device: SerialDevice) -> int:
        with self._lock:
            return len(self._queues.get(device, ()))

    def discard(self, device: SerialDevice, error: SerialError) -> int:
        """Fail every message still queued for *device*."""
        with self._lock:
            dropped = self._queues.pop(device, [])
        for msg in dropped:
            self._resolve(msg, error)
        if dropped:
            _logger.warning("Discarded %d queued message(s) for %s: %s", len(dropped), describe_device(device), error)
        return len(dropped)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def pop(self, device: SerialDevice | None) -> bool:
        """Write the most recently queued message for *device*.

        Returns ``False`` when there was nothing to write.
        """
        if device is None:
            _logger.error("Serial port is not set, nothing to write to.")
            return False

        with self._lock:
            queue = self._queues.get(device)
            if not queue:
                return False
            msg = queue.pop()

        error: Exception | None = None
        if not msg.text:
            _logger.warning("[%s] Empty message, not writing to serial", msg.id)
            error = SerialWriteError("Empty message, not writing to serial")
        else:
            loop = asyncio.get_running_loop()
            try:
                written = await loop.run_in_executor(self._executor, device.write, msg.text.encode("utf-8"))
            except Exception as exc:
                _logger.error("[%s] Failed to write %r to %s: %s", msg.id, msg.text, describe_device(device), exc)
                error = SerialWriteError(f"Failed to write to serial port: {exc}")
            else:
                _logger.info("[%s] Successfully wrote %s (%s bytes) to serial.", msg.id, msg.text, written)
        self._resolve(msg, error)
        return True

    async def run_writer(self, device: SerialDevice) -> None:
        """Drain *device*'s queue whenever something is pushed, until cancelled."""
        event = self._event_for(device)
        while True:
            await event.wait()
            event.clear()
            while await self.pop(device):
                pass

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _event_for(self, device: Any) -> asyncio.Event:
        with self._lock:
            event = self._wake.get(device)
            if event is None:
                event = self._wake[device] = asyncio.Event()
            pending = bool(self._queues.get(device))
        if pending:
            event.set()
        return event

    def _notify(self, device: Any) -> None:
        with self._lock:
            event = self._wake.get(device)
        if event is None:
            return
        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if loop is None or running is loop:
            event.set()
        else:
            loop.call_soon_threadsafe(event.set)

    def _resolve(self, msg: SerialMessage, error: Exception | None) -> None:
        future = msg.completion
        if future is None:
            if error is not None:
                _logger.debug("[%s] Unawaited message failed: %s", msg.id, error)
            return

        def _set() -> None:
            if future.done():
                return
            if error is None:
                future.set_result(None)
            else:
                future.set_exception(error)

        future_loop = future.get_loop()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is future_loop:
            _set()
        else:
            future_loop.call_soon_threadsafe(_set)
