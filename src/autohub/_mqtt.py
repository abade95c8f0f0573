"""MQTT mirror of the tables, plus remote request intake.

Two paho-mqtt clients run on their own network threads: a local broker
and an optional remote one. Changes are published retained under
``vehicle/<topic>`` from a small thread pool owned by the publisher, with
a bounded backlog. Both clients subscribe to ``vehicle/requests/#`` and hand
decoded requests to the event loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, cast

import paho.mqtt.client as mqtt

from autohub.ingestion.normalize import value_to_text
from autohub.state.events import ChangeEvent

_logger = logging.getLogger(__name__)

TOPIC_PREFIX = "vehicle"
REQUEST_TOPIC = "vehicle/requests/#"
_POLL_INTERVAL = 0.5
_PUBLISH_WORKERS = 2


@dataclass(frozen=True)
class MqttRequest:
    """An HTTP request relayed over MQTT, to be replayed against the local API."""

    method: str
    path: str
    post_data: str = ""


def parse_address(raw: str, default_port: int = 1883) -> tuple[str, int]:
    value = raw.strip()
    if not value:
        raise ValueError("Broker address is empty")

    if "://" in value:
        value = value.split("://", 1)[1]
    if "/" in value:
        value = value.split("/", 1)[0]

    host, _, maybe_port = value.rpartition(":")
    if host and maybe_port.isdigit():
        return host, int(maybe_port)
    return value, default_port


def decode_request(payload: bytes) -> MqttRequest | None:
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    method = str(data.get("method") or "").upper()
    path = str(data.get("path") or "")
    if method not in {"GET", "POST"} or not path.startswith("/"):
        return None
    return MqttRequest(method=method, path=path, post_data=str(data.get("postData") or ""))


def _build_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
        client_id=client_id,
        clean_session=False,
    )


class MqttPublisher:
    """Threaded paho-mqtt runtime used as a table mirror."""

    def __init__(
        self,
        *,
        local_address: str,
        remote_address: str = "",
        client_id: str = "autohub",
        username: str = "",
        password: str = "",
        ready_timeout: float = 30.0,
        keepalive: int = 30,
        max_backlog: int = 256,
        on_request: Callable[[MqttRequest], None] | None = None,
        client_factory: Callable[[str], Any] = _build_client,
    ) -> None:
        self._local_address = local_address
        self._remote_address = remote_address
        self._client_id = client_id
        self._username = username
        self._password = password
        self._ready_timeout = ready_timeout
        self._keepalive = keepalive
        self._max_backlog = max_backlog
        self._on_request = on_request
        self._client_factory = client_factory
        self._loop: asyncio.AbstractEventLoop | None = None
        self._local: Any = None
        self._remote: Any = None
        self._lock = threading.Lock()
        self._running = False
        self._executor: ThreadPoolExecutor | None = None
        self._backlog = 0

    @property
    def is_running(self) -> bool:
        """Whether the MQTT runtime is actively running."""
        return self._running

    def is_connected(self) -> bool:
        with self._lock:
            clients = [c for c in (self._local, self._remote) if c is not None]
        return bool(clients) and all(c.is_connected() for c in clients)

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Create the clients and start their network loops (non-blocking connect)."""
        self.stop()
        self._loop = loop
        local = self._connect(self._local_address, "local")
        remote = self._connect(self._remote_address, "remote") if self._remote_address else None
        executor = ThreadPoolExecutor(max_workers=_PUBLISH_WORKERS, thread_name_prefix="autohub-mqtt")
        with self._lock:
            self._local = local
            self._remote = remote
            self._executor = executor
        self._running = True
        _logger.debug("MQTT network loops started")

    def _connect(self, address: str, label: str) -> Any:
        host, port = parse_address(address)
        client = self._client_factory(self._client_id)
        client.enable_logger(_logger)
        if self._username:
            client.username_pw_set(self._username, self._password)

        def on_connect(
            c: mqtt.Client,
            _userdata: Any,
            _flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if reason_code.value != 0:
                _logger.warning("MQTT %s connect failed: %s", label, reason_code)
                return
            _logger.info("MQTT %s broker connected (%s:%s)", label, host, port)
            c.subscribe(REQUEST_TOPIC, qos=0)

        def on_message(_c: mqtt.Client, _userdata: Any, msg: mqtt.MQTTMessage) -> None:
            _logger.info("MQTT request on %s: %s", msg.topic, msg.payload)
            request = decode_request(msg.payload)
            if request is None:
                _logger.warning("Ignoring malformed MQTT request on %s", msg.topic)
                return
            if self._on_request is not None and self._loop is not None:
                self._loop.call_soon_threadsafe(self._on_request, request)

        def on_disconnect(
            _client: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            if self._running:
                _logger.warning("MQTT %s connection lost: %s", label, reason_code)

        client.on_connect = on_connect
        client.on_message = on_message
        client.on_disconnect = on_disconnect
        client.reconnect_delay_set(min_delay=1, max_delay=30)
        client.connect_async(host, port, keepalive=self._keepalive)
        client.loop_start()
        return client

    def stop(self) -> None:
        """Stop and disconnect the clients if running."""
        with self._lock:
            clients = [c for c in (self._local, self._remote) if c is not None]
            self._local = None
            self._remote = None
            executor, self._executor = self._executor, None
        was_running = self._running
        self._running = False
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        for client in clients:
            try:
                if was_running:
                    client.disconnect()
            finally:
                client.loop_stop()
        if clients:
            _logger.debug("MQTT network loops stopped")

    def publish(self, topic: str, payload: str, publish_remote: bool = True) -> bool:
        """Publish retained QoS 0 on ``vehicle/<topic>``, blocking until connected.

        Returns ``False`` when MQTT is not running or did not become ready
        within ``ready_timeout``.
        """
        if not self._running:
            _logger.debug("MQTT is not enabled or has not started yet, dropping %s", topic)
            return False

        waited = 0.0
        while not self.is_connected():
            if not self._running:
                return False
            if waited >= self._ready_timeout:
                _logger.warning("Waited %.0f seconds to publish %s, still not connected", waited, topic)
                return False
            time.sleep(_POLL_INTERVAL)
            waited += _POLL_INTERVAL

        full_topic = f"{TOPIC_PREFIX}/{topic}"
        with self._lock:
            local, remote = self._local, self._remote
        if local is None:
            return False
        infos = [local.publish(full_topic, payload, qos=0, retain=True)]
        if publish_remote and remote is not None:
            infos.append(remote.publish(full_topic, payload, qos=0, retain=True))
        for info in infos:
            info.wait_for_publish(timeout=self._ready_timeout)
        return True

    async def mirror(self, event: ChangeEvent) -> None:
        """Publish *event* on the publisher's threads, dropping it when the backlog is full."""
        topic = event.topic
        with self._lock:
            executor = self._executor
            full = self._backlog >= self._max_backlog
            if executor is not None and not full:
                self._backlog += 1
        if executor is None:
            _logger.debug("MQTT is not enabled or has not started yet, dropping %s", topic)
            return
        if full:
            _logger.warning("MQTT backlog of %d publishes is full, dropping %s", self._max_backlog, topic)
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(executor, self.publish, topic, value_to_text(event.value), event.publish_remote)
        except RuntimeError:
            _logger.debug("MQTT stopped, dropping %s", topic)
        finally:
            with self._lock:
                self._backlog -= 1
