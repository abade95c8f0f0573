"""autohub - vehicle automation hub: serial telemetry, power triggers and an HTTP API."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("autohub")
except PackageNotFoundError:
    __version__ = "0+local"
from autohub.config import HubConfig
from autohub.exceptions import (
    BluetoothError,
    ExternalServiceError,
    HubConfigError,
    HubError,
    InvalidNameError,
    PersistenceError,
    SerialDeviceError,
    SerialError,
    SerialTimeoutError,
    SerialWriteError,
)
from autohub.hub import Hub
from autohub.serial_queue import SerialMessage, SerialQueue
from autohub.state.events import ChangeEvent, TableName
from autohub.state.hooks import Hook, HookDispatcher
from autohub.state.models import Entry
from autohub.state.session import SessionStore
from autohub.state.settings import SettingsStore

__all__ = [
    "__version__",
    "BluetoothError",
    "ChangeEvent",
    "Entry",
    "ExternalServiceError",
    "Hook",
    "HookDispatcher",
    "Hub",
    "HubConfig",
    "HubConfigError",
    "HubError",
    "InvalidNameError",
    "PersistenceError",
    "SerialDeviceError",
    "SerialError",
    "SerialMessage",
    "SerialQueue",
    "SerialTimeoutError",
    "SerialWriteError",
    "SessionStore",
    "SettingsStore",
    "TableName",
]
