"""Exception types raised by the Meross LAN bridge."""

from __future__ import annotations

from typing import Optional


class MerossError(Exception):
    """Base class for bridge errors."""


class ConfigurationError(MerossError, ValueError):
    """Invalid device configuration (missing fields, duplicate ids, etc.).

    Raised at startup before any device is registered.
    """


class DeviceError(MerossError):
    """A request to a single device failed.

    Attributes:
        address: IP address of the device that failed

    """

    def __init__(self, address: str, message: str) -> None:
        self.address: str = address
        super().__init__(message)


class DeviceUnreachable(DeviceError):
    """Timeout or connection failure talking to a device."""

    def __init__(self, address: str, reason: str) -> None:
        self.reason: str = reason
        super().__init__(address, f"Device {address} unreachable: {reason}")


class DeviceRejected(DeviceError):
    """Device answered with a non-success HTTP status.

    Attributes:
        status_code: HTTP status returned by the device
        body: Raw response text, kept for diagnostics

    """

    def __init__(self, address: str, status_code: int, body: str) -> None:
        self.status_code: int = status_code
        self.body: str = body
        super().__init__(address, f"Meross HTTP {status_code}: {body}")


class UnsupportedIntent(MerossError):
    """Command the bridge knows about but deliberately does not execute."""

    def __init__(self, command: str, detail: Optional[str] = None) -> None:
        self.command: str = command
        message = f"Unsupported intent: {command}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
