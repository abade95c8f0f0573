"""Settings table: persisted operator configuration.

The table is two-level (``component -> name -> value``) and is written to
disk in full after every change, in the same nested shape::

    {
        "ANGEL_EYES": {"POWER": "AUTO"},
        "MDROID": {"LAST_USED": "2026-01-01T00:00:00+00:00"}
    }

Hooks are keyed on the component, so one hook sees every setting of its
component.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any

from autohub._constants import HUB_COMPONENT
from autohub._names import format_name, is_valid_name
from autohub.exceptions import InvalidNameError
from autohub.ingestion.normalize import value_to_text
from autohub.state._files import read_json_object, write_json_atomic
from autohub.state.events import ChangeEvent, TableName
from autohub.state.hooks import HookDispatcher
from autohub.state.models import Entry

_logger = logging.getLogger(__name__)

Mirror = Callable[[ChangeEvent], Awaitable[None] | None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SettingsStore:
    """Thread-safe settings table backed by a JSON file."""

    def __init__(
        self,
        *,
        dispatcher: HookDispatcher,
        path: str = "",
        clock: Callable[[], datetime] = _utcnow,
        mirrors: Sequence[Mirror] = (),
    ) -> None:
        self._dispatcher = dispatcher
        self._path = path
        self._clock = clock
        self._mirrors = list(mirrors)
        self._lock = threading.Lock()
        self._file_lock = threading.Lock()
        self._entries: dict[str, dict[str, Entry]] = {}

    @property
    def dispatcher(self) -> HookDispatcher:
        return self._dispatcher

    @property
    def path(self) -> str:
        return self._path

    def add_mirror(self, mirror: Mirror) -> None:
        self._mirrors.append(mirror)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_entry(self, component: str, name: str) -> Entry | None:
        with self._lock:
            return self._entries.get(format_name(component), {}).get(format_name(name))

    def get(self, component: str, name: str) -> str | None:
        entry = self.get_entry(component, name)
        return None if entry is None else value_to_text(entry.value)

    def get_string_default(self, component: str, name: str, default: str) -> str:
        value = self.get(component, name)
        return default if value is None else value

    def get_component(self, component: str) -> dict[str, str] | None:
        with self._lock:
            names = self._entries.get(format_name(component))
            if names is None:
                return None
            return {name: value_to_text(entry.value) for name, entry in names.items()}

    def get_all(self) -> dict[str, dict[str, Entry]]:
        with self._lock:
            return {component: dict(names) for component, names in self._entries.items()}

    def get_all_min(self) -> dict[str, dict[str, str]]:
        with self._lock:
            return {
                component: {name: value_to_text(entry.value) for name, entry in names.items()}
                for component, names in self._entries.items()
            }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set(self, component: str, name: str, value: Any, *, quiet: bool = False) -> str:
        """Store *value* and persist the whole table before returning.

        Raises :class:`InvalidNameError` for an unusable component or name and
        :class:`~autohub.exceptions.PersistenceError` when the file could not
        be written (the in-memory value is kept).
        """
        comp = format_name(component)
        key = format_name(name)
        if not is_valid_name(comp):
            raise InvalidNameError(component)
        if not is_valid_name(key):
            raise InvalidNameError(name)
        text = value_to_text(value).strip()

        now = self._clock()
        with self._lock:
            names = self._entries.setdefault(comp, {})
            previous = names.get(key)
            names[key] = Entry(
                key=key,
                value=text,
                last_update=now,
                write_count=(previous.write_count if previous is not None else 0) + 1,
                quiet=quiet,
            )

        if quiet:
            _logger.debug("Setting %s.%s = %r", comp, key, text)
        else:
            _logger.info("Setting setting %s.%s to %r", comp, key, text)

        try:
            self.write_file()
        finally:
            is_new = previous is None
            changed = is_new or value_to_text(previous.value) != text
            event = ChangeEvent(
                table=TableName.SETTINGS,
                key=comp,
                name=key,
                value=text,
                previous=previous.value if previous is not None else None,
                is_new=is_new,
                changed=changed,
                quiet=quiet,
                observed_at=now,
            )
            self._dispatcher.run_hooks(event)
            if changed:
                for mirror in self._mirrors:
                    self._dispatcher.submit(mirror, event, label=f"mirror {comp}.{key}", mirror=True)
        return key

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def write_file(self) -> None:
        if not self._path:
            return
        with self._file_lock:
            snapshot = self.get_all_min()
            try:
                write_json_atomic(self._path, snapshot)
            except Exception:
                _logger.exception("Failed to write settings to %s", self._path)
                raise

    def load(self) -> int:
        """Replace the table with the file contents and run hooks for every value.

        A missing or empty file yields an empty table stamped with
        ``MDROID.LAST_USED``. Returns the number of values loaded.
        """
        if not self._path:
            return 0
        data = read_json_object(self._path) or {}

        now = self._clock()
        events: list[ChangeEvent] = []
        with self._lock:
            self._entries = {}
            for component, names in data.items():
                comp = format_name(str(component))
                if not is_valid_name(comp) or not isinstance(names, dict):
                    _logger.warning("Skipping unusable settings component %r in %s", component, self._path)
                    continue
                for name, value in names.items():
                    key = format_name(str(name))
                    if not is_valid_name(key):
                        _logger.warning("Skipping unusable setting %s.%r in %s", comp, name, self._path)
                        continue
                    text = value_to_text(value)
                    self._entries.setdefault(comp, {})[key] = Entry(key=key, value=text, last_update=now, write_count=0)
                    events.append(
                        ChangeEvent(
                            table=TableName.SETTINGS,
                            key=comp,
                            name=key,
                            value=text,
                            is_new=True,
                            changed=True,
                            quiet=True,
                            publish_remote=False,
                            observed_at=now,
                        )
                    )

        _logger.info("Loaded %d settings from %s", len(events), self._path)
        if not events:
            self.set(HUB_COMPONENT, "LAST_USED", now.isoformat(), quiet=True)
        for event in events:
            self._dispatcher.run_hooks(event)
        return len(events)
