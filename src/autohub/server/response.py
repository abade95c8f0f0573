"""Common JSON envelope and request statistics for the HTTP API."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from aiohttp import web
from pydantic import BaseModel, ConfigDict

_logger = logging.getLogger(__name__)


class JSONResponse(BaseModel):
    """Envelope of every API reply."""

    model_config = ConfigDict(frozen=True)

    output: Any = None
    status: str = ""
    ok: bool = False


@dataclass
class RequestStats:
    successes: int = 0
    failures: int = 0
    total: int = 0
    total_size: int = 0
    time_started: datetime = field(default_factory=lambda: datetime.now(UTC))
    _started_monotonic: float = field(default_factory=time.monotonic, repr=False)

    def record(self, ok: bool, size: int) -> None:
        if ok:
            self.successes += 1
        else:
            self.failures += 1
        self.total += 1
        self.total_size += size

    def as_output(self, session_values: int) -> dict[str, Any]:
        return {
            "successes": self.successes,
            "failures": self.failures,
            "total": self.total,
            "totalSize": self.total_size,
            "sessionValues": session_values,
            "timeStarted": self.time_started.isoformat(),
            "timeRunning": round(time.monotonic() - self._started_monotonic, 3),
        }


STATS_KEY: web.AppKey[RequestStats] = web.AppKey("request_stats", RequestStats)


def write_response(request: web.Request, output: Any = None, *, ok: bool = True) -> web.Response:
    """Serialize the envelope, count it, and reply 200 (ok) or 400."""
    envelope = JSONResponse(output=output, status="success" if ok else "fail", ok=ok)
    body = json.dumps(envelope.model_dump(mode="json"))
    stats = request.app.get(STATS_KEY)
    if stats is not None:
        stats.record(ok, len(body) + max(request.content_length or 0, 0))
    _logger.debug("%s %s -> ok=%s output=%.200s", request.method, request.path, ok, envelope.output)
    return web.Response(text=body, status=200 if ok else 400, content_type="application/json")


def fail(request: web.Request, output: Any) -> web.Response:
    return write_response(request, output, ok=False)
