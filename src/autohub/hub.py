"""Process lifecycle: wires the tables, serial links, mirrors and API together."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import aiohttp
from aiohttp import web

from autohub._constants import HUB_COMPONENT
from autohub._influx import InfluxWriter
from autohub._mqtt import MqttPublisher, MqttRequest
from autohub.config import HubConfig
from autohub.exceptions import HubConfigError, PersistenceError
from autohub.external.alerts import SlackNotifier
from autohub.external.bluetooth import BluetoothController
from autohub.external.machines import MachineCommander
from autohub.external.pybus import PybusClient
from autohub.power.engine import PowerEngine
from autohub.power.triggers import PowerTriggers
from autohub.serial_link import Opener, SerialLink, open_serial
from autohub.serial_queue import SerialQueue
from autohub.server.app import ApiContext, create_app
from autohub.server.commands import VehicleCommands
from autohub.state.hooks import HookDispatcher
from autohub.state.session import SessionStore
from autohub.state.settings import SettingsStore

_logger = logging.getLogger(__name__)

_DRAIN_TIMEOUT = 5.0


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise HubConfigError(f"Unknown time zone {name!r}") from exc


class Hub:
    """The running hub.

    Usage::

        async with Hub(HubConfig.from_env()) as hub:
            await hub.serve()
    """

    def __init__(
        self,
        config: HubConfig,
        *,
        http_session: aiohttp.ClientSession | None = None,
        serial_opener: Opener = open_serial,
        mqtt: MqttPublisher | None = None,
    ) -> None:
        self.config = config
        self._tz = _zone(config.time_zone)
        self._external_session = http_session is not None
        self._http_session = http_session
        self._serial_opener = serial_opener
        self._mqtt = mqtt
        self._tasks: set[asyncio.Task[Any]] = set()
        self._runner: web.AppRunner | None = None
        self._stop = asyncio.Event()

        self.session_hooks = HookDispatcher(max_concurrency=config.hook_concurrency, name="session")
        self.settings_hooks = HookDispatcher(max_concurrency=config.hook_concurrency, name="settings")
        self.session = SessionStore(
            dispatcher=self.session_hooks,
            clock=self.now,
            throughput_warn_threshold=config.throughput_warn_threshold,
            path=config.session_file,
        )
        self.settings = SettingsStore(dispatcher=self.settings_hooks, path=config.settings_file, clock=self.now)
        self.queue = SerialQueue(await_timeout=config.serial_await_timeout)
        self.bluetooth = BluetoothController(config.bluetooth_address)
        self.links: list[SerialLink] = []
        self.app: web.Application | None = None

    def now(self) -> datetime:
        return datetime.now(self._tz)

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> Hub:
        loop = asyncio.get_running_loop()
        self.session_hooks.bind(loop)
        self.settings_hooks.bind(loop)
        self.queue.bind(loop)
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        http = self._http_session

        self.alerts = SlackNotifier(webhook_url=self.config.slack_url, http_session=http)
        self.machines = MachineCommander(settings=self.settings, http_session=http)
        self.pybus = PybusClient(base_url=self.config.pybus_url, http_session=http, session=self.session)
        self.engine = PowerEngine(
            session=self.session,
            settings=self.settings,
            queue=self.queue,
            machines=self.machines,
            shutdown_delay=self.config.shutdown_delay,
            clock=self.now,
        )
        self.triggers = PowerTriggers(
            session=self.session,
            settings=self.settings,
            engine=self.engine,
            bluetooth=self.bluetooth,
            machines=self.machines,
            alert=self.alerts.send,
            clock=self.now,
        )
        self.triggers.register()
        self.session.set_alert(self.alerts.send)

        self.settings.load()
        self._apply_setting_fallbacks()
        self.session.load()

        self._start_mirrors(loop, http)

        self.commands = VehicleCommands(
            session=self.session, settings=self.settings, queue=self.queue, pybus=self.pybus
        )
        self.app = create_app(
            ApiContext(
                session=self.session,
                settings=self.settings,
                queue=self.queue,
                pybus=self.pybus,
                bluetooth=self.bluetooth,
                alerts=self.alerts,
                commands=self.commands,
                serial_timeout=self.config.serial_await_timeout,
            )
        )

        self._start_serial()
        if self.config.pybus_repeat:
            self._spawn(self.pybus.startup(), "pybus-startup")
            for task in self.pybus.start_repeats():
                self._track(task)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        for dispatcher in (self.session_hooks, self.settings_hooks):
            if not await dispatcher.wait_idle(_DRAIN_TIMEOUT):
                _logger.warning("%d hook task(s) still running at shutdown, cancelling", dispatcher.pending)
                await dispatcher.cancel_pending()
        self.queue.close()

        try:
            self.session.flush()
        except PersistenceError as err:
            _logger.error("Could not write session file: %s", err)

        if self._mqtt is not None:
            self._mqtt.stop()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    # ------------------------------------------------------------------
    # Startup helpers
    # ------------------------------------------------------------------

    def _apply_setting_fallbacks(self) -> None:
        if not self.alerts.webhook_url:
            self.alerts.webhook_url = self.settings.get(HUB_COMPONENT, "SLACK_URL") or ""
        if self.config.time_zone == "UTC":
            zone = self.settings.get(HUB_COMPONENT, "TIMEZONE")
            if zone:
                try:
                    self._tz = _zone(zone)
                except HubConfigError as err:
                    _logger.error("%s, keeping UTC", err)
        if not self.bluetooth.address:
            self.bluetooth.address = self.settings.get(HUB_COMPONENT, "BLUETOOTH_ADDRESS") or ""

    def _start_mirrors(self, loop: asyncio.AbstractEventLoop, http: aiohttp.ClientSession) -> None:
        cfg = self.config
        if self._mqtt is None and cfg.mqtt_local_address:
            self._mqtt = MqttPublisher(
                local_address=cfg.mqtt_local_address,
                remote_address=cfg.mqtt_remote_address,
                client_id=cfg.mqtt_client_id,
                username=cfg.mqtt_username,
                password=cfg.mqtt_password,
                ready_timeout=cfg.mqtt_ready_timeout,
                on_request=self._on_mqtt_request,
            )
        if self._mqtt is not None:
            self._mqtt.start(loop)
            self.session.add_mirror(self._mqtt.mirror)
            self.settings.add_mirror(self._mqtt.mirror)
        else:
            _logger.warning("Missing MQTT setup variables, skipping MQTT.")

        if cfg.influx_host:
            influx = InfluxWriter(host=cfg.influx_host, database=cfg.influx_database, http_session=http)
            self.session.add_mirror(influx.mirror)

    def _start_serial(self) -> None:
        cfg = self.config
        port = cfg.serial_port or self.settings.get(HUB_COMPONENT, "HARDWARE_SERIAL_PORT") or ""
        ports = [(port, True)] if port else []
        ports += [(extra, False) for extra in cfg.extra_serial_ports]
        if not port:
            _logger.warning("No hardware serial port defined. Not setting up a serial writer.")
        for name, writer in ports:
            link = SerialLink(
                name,
                queue=self.queue,
                session=self.session,
                baud=cfg.serial_baud,
                read_timeout=cfg.serial_read_timeout,
                open_retry_delay=cfg.serial_open_retry_delay,
                reopen_delay=cfg.serial_reopen_delay,
                writer=writer,
                opener=self._serial_opener,
            )
            self.links.append(link)
            self._spawn(link.run(), f"serial-{name}")

    def _spawn(self, coro: Any, name: str) -> asyncio.Task[Any]:
        return self._track(asyncio.create_task(coro, name=name))

    def _track(self, task: asyncio.Task[Any]) -> asyncio.Task[Any]:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            _logger.error("Task %s crashed", task.get_name(), exc_info=task.exception())

    # ------------------------------------------------------------------
    # Remote requests
    # ------------------------------------------------------------------

    def _on_mqtt_request(self, request: MqttRequest) -> None:
        self._spawn(self.forward_request(request), f"mqtt-request {request.path}")

    async def forward_request(self, request: MqttRequest) -> int | None:
        """Replay a request received over MQTT against the local API."""
        assert self._http_session is not None
        url = f"http://127.0.0.1:{self.config.http_port}{request.path}"
        kwargs: dict[str, Any] = {}
        if request.method == "POST":
            kwargs = {"data": request.post_data.encode("utf-8"), "headers": {"Content-Type": "application/json"}}
        try:
            async with self._http_session.request(request.method, url, **kwargs) as resp:
                await resp.read()
                return resp.status
        except aiohttp.ClientError as err:
            _logger.error("Could not forward request from MQTT. Got error: %s", err)
            return None

    # ------------------------------------------------------------------
    # Serving
    # ------------------------------------------------------------------

    async def start_server(self) -> None:
        if self.app is None:
            raise RuntimeError("Hub is not started; use 'async with Hub(...)'")
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.http_host, self.config.http_port)
        await site.start()
        _logger.info("Serving on http://%s:%d", self.config.http_host, self.config.http_port)

    def stop(self) -> None:
        self._stop.set()

    async def serve(self) -> None:
        """Serve the API until :meth:`stop` is called."""
        await self.start_server()
        await self._stop.wait()
        _logger.info("Shutting down")
