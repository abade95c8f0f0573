"""Hook registry and bounded asynchronous dispatch.

Writers call :meth:`HookDispatcher.run_hooks` from any thread. Matching
callbacks are detached onto the bound event loop as independent tasks, so
a write never waits for, or fails because of, a hook. Mirror writes are
bounded by their own concurrency limit, separate from the hook limit.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from autohub.state.events import ChangeEvent

_logger = logging.getLogger(__name__)

HookCallback = Callable[[ChangeEvent], Awaitable[None] | None]


@dataclass(frozen=True, eq=False)
class Hook:
    """Handle of one registered callback.

    ``key`` is lower-cased; an empty key matches every write.
    """

    key: str
    callback: HookCallback
    name: str = ""


@dataclass
class DispatchStats:
    submitted: int = 0
    completed: int = 0
    failed: int = 0
    dropped: int = 0


@dataclass
class _Pending:
    count: int = 0
    tasks: set[asyncio.Task[None]] = field(default_factory=set)


class HookDispatcher:
    """Registry of hooks for one table plus the pool that runs them."""

    def __init__(
        self,
        *,
        max_concurrency: int = 32,
        max_mirror_concurrency: int = 32,
        loop: asyncio.AbstractEventLoop | None = None,
        name: str = "hooks",
    ) -> None:
        self._name = name
        self._max_concurrency = max_concurrency
        self._max_mirror_concurrency = max_mirror_concurrency
        self._lock = threading.Lock()
        self._hooks: list[Hook] = []
        self._pending = _Pending()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._semaphore: asyncio.Semaphore | None = None
        self._mirror_semaphore: asyncio.Semaphore | None = None
        self.stats = DispatchStats()
        if loop is not None:
            self.bind(loop)

    def bind(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Attach the dispatcher to *loop* (default: the running loop)."""
        self._loop = loop or asyncio.get_running_loop()
        self._semaphore = asyncio.Semaphore(self._max_concurrency)
        self._mirror_semaphore = asyncio.Semaphore(self._max_mirror_concurrency)

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending.count

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register_hook(self, key: str, callback: HookCallback) -> Hook:
        hook = Hook(key=key.lower(), callback=callback, name=getattr(callback, "__qualname__", repr(callback)))
        with self._lock:
            self._hooks.append(hook)
        _logger.debug("%s: registered %s for key=%r", self._name, hook.name, hook.key or "*")
        return hook

    def register_hooks(self, keys: Iterable[str], callback: HookCallback) -> list[Hook]:
        return [self.register_hook(key, callback) for key in keys]

    def unregister(self, hook: Hook) -> bool:
        """Remove *hook*. Returns ``False`` when it was not registered."""
        with self._lock:
            try:
                self._hooks.remove(hook)
            except ValueError:
                return False
        return True

    def hooks_for(self, key: str) -> list[Hook]:
        wanted = key.lower()
        with self._lock:
            return [hook for hook in self._hooks if not hook.key or hook.key == wanted]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def run_hooks(self, event: ChangeEvent) -> int:
        """Submit every hook matching ``event.key``. Returns how many were submitted."""
        matched = self.hooks_for(event.key)
        submitted = 0
        for hook in matched:
            if self.submit(hook.callback, event, label=hook.name):
                submitted += 1
        return submitted

    def submit(self, fn: Callable[..., Any], *args: Any, label: str = "", mirror: bool = False) -> bool:
        """Run ``fn(*args)`` detached on the bound loop.

        ``mirror=True`` runs the call under the mirror limit instead of the
        hook limit.

        Returns ``False`` when no loop is available and the call was dropped.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            with self._lock:
                self.stats.dropped += 1
            _logger.warning("%s: no event loop bound, dropping %s", self._name, label or fn)
            return False

        with self._lock:
            self._pending.count += 1
            self.stats.submitted += 1

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        try:
            if running is loop:
                self._start(fn, args, label, mirror)
            else:
                loop.call_soon_threadsafe(self._start, fn, args, label, mirror)
        except RuntimeError:
            with self._lock:
                self._pending.count -= 1
                self.stats.dropped += 1
            _logger.warning("%s: event loop unavailable, dropping %s", self._name, label or fn)
            return False
        return True

    def _start(self, fn: Callable[..., Any], args: tuple[Any, ...], label: str, mirror: bool = False) -> None:
        assert self._loop is not None
        task = self._loop.create_task(self._run(fn, args, label, mirror))
        with self._lock:
            self._pending.tasks.add(task)
        task.add_done_callback(self._forget)

    def _forget(self, task: asyncio.Task[None]) -> None:
        with self._lock:
            self._pending.tasks.discard(task)
            self._pending.count -= 1

    async def _run(self, fn: Callable[..., Any], args: tuple[Any, ...], label: str, mirror: bool = False) -> None:
        semaphore = self._mirror_semaphore if mirror else self._semaphore
        assert semaphore is not None
        try:
            async with semaphore:
                result = fn(*args)
                if inspect.isawaitable(result):
                    await result
        except asyncio.CancelledError:
            raise
        except Exception:
            with self._lock:
                self.stats.failed += 1
            _logger.exception("%s: %s failed", self._name, label or fn)
        else:
            with self._lock:
                self.stats.completed += 1

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until nothing submitted is pending, including follow-up work.

        Returns ``False`` when *timeout* expired first.
        """

        async def _drain() -> None:
            while True:
                with self._lock:
                    count = self._pending.count
                    tasks = list(self._pending.tasks)
                if not count:
                    return
                if tasks:
                    await asyncio.wait(tasks)
                else:
                    await asyncio.sleep(0.01)

        try:
            async with asyncio.timeout(timeout):
                await _drain()
        except TimeoutError:
            return False
        return True

    async def cancel_pending(self) -> None:
        with self._lock:
            tasks = list(self._pending.tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
