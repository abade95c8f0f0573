"""Time-series database mirror (InfluxDB line protocol over HTTP)."""

from __future__ import annotations

import logging
from typing import Any

import aiohttp

from autohub.exceptions import ExternalServiceError
from autohub.ingestion.normalize import is_numeric, value_to_text
from autohub.state.events import ChangeEvent

_logger = logging.getLogger(__name__)


def _escape_key(text: str) -> str:
    return text.replace(",", r"\,").replace(" ", r"\ ").replace("=", r"\=")


def line_protocol(measurement: str, value: Any, tags: dict[str, str] | None = None) -> str:
    """Build a single line-protocol point with one ``value`` field.

    Numbers are written bare; everything else as a quoted string.
    """
    head = _escape_key(measurement)
    if tags:
        head += "," + ",".join(f"{_escape_key(k)}={_escape_key(v)}" for k, v in sorted(tags.items()))
    if is_numeric(value):
        field = f"value={value}"
    else:
        escaped = value_to_text(value).replace("\\", "\\\\").replace('"', '\\"')
        field = f'value="{escaped}"'
    return f"{head} {field}"


class InfluxWriter:
    """Writes session changes to an InfluxDB database."""

    def __init__(self, *, host: str, database: str, http_session: aiohttp.ClientSession) -> None:
        self._host = host.rstrip("/")
        self._database = database
        self._http = http_session
        self._online = False

    async def ping(self) -> bool:
        try:
            async with self._http.get(f"{self._host}/ping") as resp:
                return resp.status == 204
        except aiohttp.ClientError as exc:
            _logger.debug("Influx ping failed: %s", exc)
            return False

    async def write(self, line: str) -> bool:
        """POST *line*. Returns ``False`` while the database is unreachable."""
        if not self._online:
            if not await self.ping():
                return False
            self._online = True

        url = f"{self._host}/write"
        try:
            async with self._http.post(url, params={"db": self._database}, data=line.encode("utf-8")) as resp:
                if resp.status not in (200, 204):
                    text = await resp.text()
                    raise ExternalServiceError(f"HTTP {resp.status} writing {line!r}: {text[:200]}", service="influx")
        except aiohttp.ClientError as exc:
            self._online = False
            raise ExternalServiceError(f"Error writing {line!r} to influx database: {exc}", service="influx") from exc
        _logger.debug("Logged %s to database", line)
        return True

    async def mirror(self, event: ChangeEvent) -> None:
        await self.write(line_protocol(event.name.lower(), event.value))
