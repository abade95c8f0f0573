"""aiohttp application exposing the tables, serial queue and vehicle commands."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from aiohttp import WSMsgType, web

from autohub._constants import MEASUREMENT_KEYS
from autohub.exceptions import ExternalServiceError, HubError, InvalidNameError, PersistenceError, SerialError
from autohub.external.alerts import SlackNotifier
from autohub.external.bluetooth import BluetoothController
from autohub.external.pybus import PybusClient, raw_directive
from autohub.serial_queue import SerialQueue
from autohub.server.commands import CommandError, VehicleCommands
from autohub.server.response import STATS_KEY, RequestStats, fail, write_response
from autohub.state.session import SessionStore
from autohub.state.settings import SettingsStore

_logger = logging.getLogger(__name__)


@dataclass
class ApiContext:
    """Everything the handlers talk to."""

    session: SessionStore
    settings: SettingsStore
    queue: SerialQueue
    pybus: PybusClient | None = None
    bluetooth: BluetoothController | None = None
    alerts: SlackNotifier | None = None
    commands: VehicleCommands | None = None
    serial_timeout: float | None = None
    stats: RequestStats = field(default_factory=RequestStats)


def _is_truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


class ApiHandlers:
    def __init__(self, ctx: ApiContext) -> None:
        self._ctx = ctx

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def get_session(self, request: web.Request) -> web.Response:
        if _is_truthy(request.query.get("min")):
            return write_response(request, self._ctx.session.get_all_min())
        return write_response(request, self._ctx.session.get_all())

    async def get_session_stats(self, request: web.Request) -> web.Response:
        return write_response(request, self._ctx.session.stats())

    async def get_gyros(self, request: web.Request) -> web.Response:
        session = self._ctx.session
        readings: dict[str, dict[str, Any]] = {}
        for key in sorted(MEASUREMENT_KEYS):
            readings[key] = {axis: session.get_value(f"{key}.{axis}", 0.0) for axis in ("X", "Y", "Z")}
        return write_response(request, readings)

    async def get_session_value(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        entry = self._ctx.session.get(name)
        if entry is None:
            return fail(request, f"{name} does not exist in Session")
        return write_response(request, entry)

    async def set_session_value(self, request: web.Request) -> web.Response:
        name = request.match_info["name"]
        body = await request.text()
        if not body.strip():
            return fail(request, "Error: Empty body")
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            _logger.error("Error decoding incoming JSON: %s", exc)
            return fail(request, str(exc))
        if not isinstance(payload, dict) or "value" not in payload:
            return fail(request, "Error: body must be an object with a value")
        value = payload["value"]
        if isinstance(value, (dict, list)):
            return fail(request, "Error: value must be a scalar")
        try:
            key = self._ctx.session.set(name, value, quiet=bool(payload.get("quiet", False)))
        except InvalidNameError as exc:
            return fail(request, str(exc))
        return write_response(request, self._ctx.session.get(key))

    async def session_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        _logger.info("Session websocket opened from %s", request.remote)
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                snapshot = {key: entry.model_dump(mode="json") for key, entry in self._ctx.session.get_all().items()}
                await ws.send_json(snapshot)
            elif msg.type == WSMsgType.ERROR:
                _logger.warning("Session websocket error: %s", ws.exception())
        _logger.info("Session websocket closed")
        return ws

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def get_settings(self, request: web.Request) -> web.Response:
        return write_response(request, self._ctx.settings.get_all_min())

    async def get_settings_component(self, request: web.Request) -> web.Response:
        component = request.match_info["component"]
        values = self._ctx.settings.get_component(component)
        if values is None:
            return fail(request, f"Component {component} not found")
        return write_response(request, values)

    async def get_setting(self, request: web.Request) -> web.Response:
        component = request.match_info["component"]
        name = request.match_info["name"]
        value = self._ctx.settings.get(component, name)
        if value is None:
            return fail(request, f"Setting {component}.{name} not found")
        return write_response(request, value)

    async def set_setting(self, request: web.Request) -> web.Response:
        component = request.match_info["component"]
        name = request.match_info["name"]
        value = request.match_info["value"]
        try:
            self._ctx.settings.set(component, name, value)
        except (InvalidNameError, PersistenceError) as exc:
            return fail(request, str(exc))
        return write_response(request, self._ctx.settings.get(component, name))

    # ------------------------------------------------------------------
    # Serial / vehicle
    # ------------------------------------------------------------------

    async def write_serial(self, request: web.Request) -> web.Response:
        command = request.match_info["command"]
        try:
            await self._ctx.queue.await_text(command, timeout=self._ctx.serial_timeout)
        except SerialError as exc:
            return fail(request, str(exc))
        return write_response(request, "OK")

    async def pybus_command(self, request: web.Request) -> web.Response:
        if self._ctx.pybus is None:
            return fail(request, "Pybus is not configured")
        info = request.match_info
        if "src" in info:
            try:
                command = raw_directive(info["src"], info["dest"], info["data"])
            except ValueError as exc:
                return fail(request, str(exc))
        else:
            command = info["command"]
        try:
            await self._ctx.pybus.push(command)
        except ExternalServiceError as exc:
            return fail(request, str(exc))
        return write_response(request, "OK")

    async def vehicle_command(self, request: web.Request) -> web.Response:
        if self._ctx.commands is None:
            return fail(request, "Vehicle commands are not configured")
        try:
            device = await self._ctx.commands.run(request.match_info["device"], request.match_info["command"])
        except (CommandError, HubError) as exc:
            _logger.error("%s", exc)
            return fail(request, str(exc))
        return write_response(request, device)

    async def bluetooth_action(self, request: web.Request) -> web.Response:
        if self._ctx.bluetooth is None:
            return fail(request, "Bluetooth is not configured")
        try:
            output = await self._ctx.bluetooth.run_action(request.match_info["action"])
        except ExternalServiceError as exc:
            return fail(request, str(exc))
        return write_response(request, output)

    async def send_alert(self, request: web.Request) -> web.Response:
        if self._ctx.alerts is None:
            return fail(request, "Alerts are not configured")
        message = request.match_info["message"]
        try:
            sent = await self._ctx.alerts.send(message)
        except ExternalServiceError as exc:
            return fail(request, str(exc))
        if not sent:
            return fail(request, "No alert webhook configured")
        return write_response(request, "OK")

    async def get_stats(self, request: web.Request) -> web.Response:
        return write_response(request, self._ctx.stats.as_output(len(self._ctx.session)))


def create_app(ctx: ApiContext) -> web.Application:
    app = web.Application()
    app[STATS_KEY] = ctx.stats
    h = ApiHandlers(ctx)

    # Fixed paths first; the catch-all device route must stay last
    app.router.add_get("/session", h.get_session)
    app.router.add_get("/session/stats", h.get_session_stats)
    app.router.add_get("/session/gyros", h.get_gyros)
    app.router.add_get("/session/ws", h.session_ws)
    app.router.add_get("/session/{name}", h.get_session_value)
    app.router.add_post("/session/{name}", h.set_session_value)

    app.router.add_get("/settings", h.get_settings)
    app.router.add_get("/settings/{component}", h.get_settings_component)
    app.router.add_get("/settings/{component}/{name}", h.get_setting)
    app.router.add_post("/settings/{component}/{name}/{value}", h.set_setting)

    app.router.add_route("GET", "/serial/{command}", h.write_serial)
    app.router.add_route("POST", "/serial/{command}", h.write_serial)

    app.router.add_post("/pybus/{src}/{dest}/{data}/{checksum}", h.pybus_command)
    app.router.add_post("/pybus/{src}/{dest}/{data}", h.pybus_command)
    app.router.add_get("/pybus/{command}/{checksum}", h.pybus_command)
    app.router.add_get("/pybus/{command}", h.pybus_command)

    app.router.add_get("/bluetooth/{action}", h.bluetooth_action)
    app.router.add_get("/alert/{message}", h.send_alert)
    app.router.add_get("/stats", h.get_stats)

    app.router.add_get("/{device}/{command}", h.vehicle_command)
    return app
