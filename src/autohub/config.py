"""Hub configuration for autohub."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from autohub._constants import DEFAULT_HTTP_PORT, DEFAULT_SERIAL_BAUD
from autohub.exceptions import HubConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class HubConfig:
    """Process configuration.

    Parameters
    ----------
    settings_file : str
        JSON file holding the persisted settings table. Empty disables
        persistence.
    session_file : str
        Optional JSON file the session table is seeded from on start and
        flushed to on shutdown.
    http_host : str
        Interface the HTTP/WebSocket API binds to.
    http_port : int
        Port the HTTP/WebSocket API binds to.
    serial_port : str
        Hardware serial device of the main microcontroller (e.g.
        ``/dev/ttyACM0``). The first opened device becomes the default
        writer. Empty falls back to the ``MDROID.HARDWARE_SERIAL_PORT``
        setting.
    extra_serial_ports : tuple[str, ...]
        Additional read-only serial devices.
    serial_baud : int
        Baud rate of every serial device.
    serial_read_timeout : float
        Seconds a single serial read may block before returning empty.
    serial_open_retry_delay : float
        Seconds between attempts to open a device that failed to open.
    serial_reopen_delay : float
        Seconds to wait before reopening a device after a read error.
    serial_await_timeout : float
        Upper bound on how long an awaited serial write may take to be
        confirmed.
    mqtt_local_address : str
        ``host[:port]`` of the local MQTT broker. Empty disables MQTT.
    mqtt_remote_address : str
        ``host[:port]`` of the remote MQTT broker.
    mqtt_client_id, mqtt_username, mqtt_password : str
        MQTT credentials.
    mqtt_ready_timeout : float
        Seconds a publish waits for broker connectivity before giving up.
    influx_host, influx_database : str
        Time-series database endpoint. Empty host disables it.
    slack_url : str
        Webhook that receives out-of-band alerts.
    bluetooth_address : str
        MAC address of the paired media device.
    pybus_url : str
        Base URL of the vehicle-bus bridge.
    pybus_repeat : bool
        Run the periodic vehicle-bus status requests.
    time_zone : str
        IANA time zone used for ``last_update`` timestamps.
    hook_concurrency : int
        Maximum number of hook/mirror tasks running at once.
    shutdown_delay : float
        Seconds between asking a machine to shut down and cutting its power.
    throughput_warn_threshold : float
        Session sets/second below which an alert is raised. Negative disables.
    debug : bool
        Enable debug logging.
    """

    settings_file: str = "./settings.json"
    session_file: str = ""
    http_host: str = "0.0.0.0"  # noqa: S104
    http_port: int = DEFAULT_HTTP_PORT
    serial_port: str = ""
    extra_serial_ports: tuple[str, ...] = ()
    serial_baud: int = DEFAULT_SERIAL_BAUD
    serial_read_timeout: float = 10.0
    serial_open_retry_delay: float = 2.0
    serial_reopen_delay: float = 10.0
    serial_await_timeout: float = 15.0
    mqtt_local_address: str = ""
    mqtt_remote_address: str = ""
    mqtt_client_id: str = "autohub"
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_ready_timeout: float = 30.0
    influx_host: str = ""
    influx_database: str = "vehicle"
    slack_url: str = ""
    bluetooth_address: str = ""
    pybus_url: str = "http://localhost:8080"
    pybus_repeat: bool = False
    time_zone: str = "UTC"
    hook_concurrency: int = 32
    shutdown_delay: float = 10.0
    throughput_warn_threshold: float = -1.0
    debug: bool = False

    def __post_init__(self) -> None:
        if self.hook_concurrency < 1:
            raise HubConfigError(f"hook_concurrency must be >= 1, got {self.hook_concurrency}")
        if self.serial_await_timeout <= 0:
            raise HubConfigError(f"serial_await_timeout must be > 0, got {self.serial_await_timeout}")

    @classmethod
    def from_env(cls, **overrides: Any) -> HubConfig:
        """Create configuration from ``AUTOHUB_*`` environment variables.

        Explicit keyword arguments override environment values.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "AUTOHUB_SETTINGS_FILE": "settings_file",
            "AUTOHUB_SESSION_FILE": "session_file",
            "AUTOHUB_HTTP_HOST": "http_host",
            "AUTOHUB_SERIAL_PORT": "serial_port",
            "AUTOHUB_MQTT_LOCAL_ADDRESS": "mqtt_local_address",
            "AUTOHUB_MQTT_REMOTE_ADDRESS": "mqtt_remote_address",
            "AUTOHUB_MQTT_CLIENT_ID": "mqtt_client_id",
            "AUTOHUB_MQTT_USERNAME": "mqtt_username",
            "AUTOHUB_MQTT_PASSWORD": "mqtt_password",
            "AUTOHUB_INFLUX_HOST": "influx_host",
            "AUTOHUB_INFLUX_DATABASE": "influx_database",
            "AUTOHUB_SLACK_URL": "slack_url",
            "AUTOHUB_BLUETOOTH_ADDRESS": "bluetooth_address",
            "AUTOHUB_PYBUS_URL": "pybus_url",
            "AUTOHUB_TIME_ZONE": "time_zone",
        }
        _ENV_INT_MAP = {
            "AUTOHUB_HTTP_PORT": "http_port",
            "AUTOHUB_SERIAL_BAUD": "serial_baud",
            "AUTOHUB_HOOK_CONCURRENCY": "hook_concurrency",
        }
        _ENV_FLOAT_MAP = {
            "AUTOHUB_SERIAL_READ_TIMEOUT": "serial_read_timeout",
            "AUTOHUB_SERIAL_OPEN_RETRY_DELAY": "serial_open_retry_delay",
            "AUTOHUB_SERIAL_REOPEN_DELAY": "serial_reopen_delay",
            "AUTOHUB_SERIAL_AWAIT_TIMEOUT": "serial_await_timeout",
            "AUTOHUB_MQTT_READY_TIMEOUT": "mqtt_ready_timeout",
            "AUTOHUB_SHUTDOWN_DELAY": "shutdown_delay",
            "AUTOHUB_THROUGHPUT_WARN_THRESHOLD": "throughput_warn_threshold",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        try:
            for env_key, field_name in _ENV_INT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = int(val)
            for env_key, field_name in _ENV_FLOAT_MAP.items():
                val = env.get(env_key)
                if val is not None and field_name not in overrides:
                    config_kwargs[field_name] = float(val)
        except ValueError as exc:
            raise HubConfigError(f"Invalid numeric environment value: {exc}") from exc

        extra_ports = env.get("AUTOHUB_EXTRA_SERIAL_PORTS")
        if extra_ports is not None and "extra_serial_ports" not in overrides:
            config_kwargs["extra_serial_ports"] = tuple(p.strip() for p in extra_ports.split(",") if p.strip())

        if "pybus_repeat" not in overrides:
            config_kwargs["pybus_repeat"] = _env_bool(env.get("AUTOHUB_PYBUS_REPEAT"), False)

        if "debug" not in overrides:
            config_kwargs["debug"] = _env_bool(env.get("AUTOHUB_DEBUG"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
