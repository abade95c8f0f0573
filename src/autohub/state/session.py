"""Session table: the live state of the vehicle.

Keys are canonical names (see :func:`autohub._names.format_name`). Every
successful :meth:`SessionStore.set` runs the hooks registered for the key.
Mirrors (MQTT, time-series database) only see writes that created a key or
changed its value.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from autohub._names import format_name, is_valid_name
from autohub.exceptions import InvalidNameError
from autohub.ingestion.normalize import parse_bool, value_to_text
from autohub.state._files import read_json_object, write_json_atomic
from autohub.state.events import ChangeEvent, TableName
from autohub.state.hooks import HookDispatcher
from autohub.state.models import Entry, SessionValue
from autohub.state.stats import SessionStats, ThroughputTracker

_logger = logging.getLogger(__name__)

Mirror = Callable[[ChangeEvent], Awaitable[None] | None]
AlertSink = Callable[[str], Awaitable[Any] | Any]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SessionStore:
    """Thread-safe in-memory session table."""

    def __init__(
        self,
        *,
        dispatcher: HookDispatcher,
        clock: Callable[[], datetime] = _utcnow,
        mirrors: Sequence[Mirror] = (),
        alert: AlertSink | None = None,
        throughput_warn_threshold: float = -1.0,
        path: str = "",
        tracker: ThroughputTracker | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._clock = clock
        self._mirrors = list(mirrors)
        self._alert = alert
        self._threshold = throughput_warn_threshold
        self._path = path
        self._lock = threading.Lock()
        self._entries: dict[str, Entry] = {}
        self._tracker = tracker or ThroughputTracker()
        self._gets = 0
        self._dips = 0

    @property
    def dispatcher(self) -> HookDispatcher:
        return self._dispatcher

    def add_mirror(self, mirror: Mirror) -> None:
        self._mirrors.append(mirror)

    def set_alert(self, alert: AlertSink | None) -> None:
        self._alert = alert

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Entry | None:
        name = format_name(key)
        with self._lock:
            self._gets += 1
            return self._entries.get(name)

    def get_value(self, key: str, default: SessionValue = None) -> SessionValue:
        entry = self.get(key)
        return default if entry is None else entry.value

    def get_bool(self, key: str) -> bool:
        """Boolean value of *key*.

        Raises :class:`KeyError` when the key is absent and
        :class:`ValueError` when its value is not a boolean.
        """
        entry = self.get(key)
        if entry is None:
            raise KeyError(format_name(key))
        return parse_bool(entry.value)

    def get_bool_default(self, key: str, default: bool) -> bool:
        try:
            return self.get_bool(key)
        except (KeyError, ValueError) as exc:
            _logger.debug("Session %s has no boolean value (%s), using %s", key, exc, default)
            return default

    def get_string_default(self, key: str, default: str) -> str:
        entry = self.get(key)
        if entry is None or entry.value is None:
            return default
        return value_to_text(entry.value)

    def get_all(self) -> dict[str, Entry]:
        """Snapshot of every entry. Later writes do not affect the result."""
        with self._lock:
            self._gets += 1
            return dict(self._entries)

    def get_all_min(self) -> dict[str, SessionValue]:
        with self._lock:
            self._gets += 1
            return {key: entry.value for key, entry in self._entries.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(
        self,
        key: str,
        value: SessionValue,
        *,
        quiet: bool = False,
        publish_remote: bool = True,
    ) -> str:
        """Store *value* under *key* and return the canonical key.

        Raises :class:`InvalidNameError` without touching the table when the
        key does not survive canonicalisation.
        """
        name = format_name(key)
        if not is_valid_name(name):
            raise InvalidNameError(key)
        if isinstance(value, str):
            value = value.strip()

        now = self._clock()
        with self._lock:
            previous = self._entries.get(name)
            entry = Entry(
                key=name,
                value=value,
                last_update=now,
                write_count=(previous.write_count if previous is not None else 0) + 1,
                quiet=quiet,
            )
            self._entries[name] = entry
            check_due = self._tracker.record()
            throughput = self._tracker.throughput

        is_new = previous is None
        changed = is_new or value_to_text(previous.value) != value_to_text(value)
        if quiet:
            _logger.debug("Session %s = %r", name, value)
        else:
            _logger.info("Setting session %s to %r", name, value)

        event = ChangeEvent(
            table=TableName.SESSION,
            key=name,
            name=name,
            value=value,
            previous=previous.value if previous is not None else None,
            is_new=is_new,
            changed=changed,
            quiet=quiet,
            publish_remote=publish_remote,
            observed_at=now,
        )
        self._dispatcher.run_hooks(event)
        if changed:
            for mirror in self._mirrors:
                self._dispatcher.submit(mirror, event, label=f"mirror {name}", mirror=True)
        if check_due:
            self._check_throughput(throughput)
        return name

    def _check_throughput(self, throughput: float) -> None:
        if self._threshold < 0 or throughput >= self._threshold:
            return
        with self._lock:
            self._dips += 1
        message = f"Session throughput dropped to {throughput:.2f} sets/s (minimum {self._threshold:.2f})"
        _logger.warning("%s", message)
        if self._alert is not None:
            self._dispatcher.submit(self._alert, message, label="throughput alert")

    def stats(self) -> SessionStats:
        with self._lock:
            return SessionStats(
                sets=self._tracker.sets,
                gets=self._gets,
                keys=len(self._entries),
                throughput=self._tracker.throughput,
                dips_below_minimum=self._dips,
                throughput_warn_threshold=self._threshold,
            )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Seed entries from the session file without running hooks.

        Returns the number of entries loaded.
        """
        if not self._path:
            return 0
        data = read_json_object(self._path)
        if not data:
            return 0
        now = self._clock()
        loaded = 0
        with self._lock:
            for key, value in data.items():
                name = format_name(str(key))
                if not is_valid_name(name) or isinstance(value, (dict, list)):
                    _logger.warning("Skipping unusable session entry %r from %s", key, self._path)
                    continue
                self._entries[name] = Entry(key=name, value=value, last_update=now, write_count=0)
                loaded += 1
        _logger.info("Loaded %d session values from %s", loaded, self._path)
        return loaded

    def flush(self) -> None:
        if not self._path:
            return
        write_json_atomic(self._path, dict(self.get_all_min()))
        _logger.debug("Session written to %s", self._path)
