"""Custom exception hierarchy for autohub."""

from __future__ import annotations


class HubError(Exception):
    """Base exception for all autohub errors."""


class HubConfigError(HubError):
    """Invalid or missing configuration."""


class InvalidNameError(HubError, ValueError):
    """A session/setting name failed validation.

    The table is left untouched when this is raised.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"{name} is not a valid name. Possibly a failed serial transmission?")


class PersistenceError(HubError):
    """Reading or writing a persisted table failed."""

    def __init__(self, message: str, *, path: str = "") -> None:
        self.path = path
        super().__init__(message)


class SerialError(HubError):
    """Base for serial queue / device failures."""


class SerialDeviceError(SerialError):
    """No usable serial device (not open, or went away)."""


class SerialWriteError(SerialError):
    """Writing a message to a serial device failed or was rejected."""


class SerialTimeoutError(SerialError, TimeoutError):
    """An awaited serial write was not confirmed in time."""


class ExternalServiceError(HubError):
    """A best-effort external collaborator failed."""

    def __init__(self, message: str, *, service: str = "") -> None:
        self.service = service
        super().__init__(message)


class BluetoothError(ExternalServiceError):
    """``dbus-send`` failed or no Bluetooth device is configured."""
