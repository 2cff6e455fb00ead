"""Bridge configuration.

Sources are layered, later ones winning: dataclass defaults, a TOML file
(``--config`` or ``MEROSS_LAN_CONFIG``), ``MEROSS_LAN_*`` environment
variables, then command-line flags. Devices can be given as ``[[devices]]``
tables in TOML, a JSON list in ``MEROSS_LAN_DEVICES``, or repeated
``--device id=...,name=...,ip=...,key=...[,channel=N]`` flags.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older interpreters
    import tomli as tomllib  # type: ignore

from .errors import ConfigurationError


CONFIG_ENV_PREFIX = "MEROSS_LAN_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_MASK = "***REDACTED***"
_REQUIRED_DEVICE_FIELDS = ("id", "name", "ip", "key")

# Inclusive numeric limits checked on every Config instance.
_BOUNDS: Dict[str, Tuple[float, float]] = {
    "api_port": (1, 65535),
    "device_request_timeout": (0.1, 120.0),
    "device_offline_threshold": (1, 1000),
}


@dataclass(frozen=True)
class DeviceConfig:
    """A statically configured device; ``key`` is the device's shared signing key."""

    id: str
    name: str
    ip: str
    key: str = field(repr=False)
    channel: int = 0


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    devices: Sequence[DeviceConfig] = ()
    device_request_timeout: float = 4.0
    device_offline_threshold: int = 3
    api_enabled: bool = True
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_key: Optional[str] = None
    api_bearer_token: Optional[str] = None
    api_docs: bool = True
    log_format: str = "plain"
    log_level: str = "INFO"
    protocol_log_level: Optional[str] = None
    api_log_level: Optional[str] = None
    dry_run: bool = False
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _check_version(self.config_version)
        for name, (low, high) in _BOUNDS.items():
            value = getattr(self, name)
            if not low <= value <= high:
                raise ValueError(f"{name} must be between {low} and {high}; got {value}.")
        if self.log_format not in ("plain", "json"):
            raise ValueError(f"log_format must be 'plain' or 'json'; got {self.log_format}.")
        for name in ("log_level", "protocol_log_level", "api_log_level"):
            level = getattr(self, name)
            if level is not None and level.upper() not in LOG_LEVELS:
                raise ValueError(f"{name} must be one of {list(LOG_LEVELS)}; got {level}.")
        validate_devices(self.devices)

    def logging_dict(self) -> Dict[str, Any]:
        """Return the configuration as a plain mapping with every secret masked."""

        data = {item.name: getattr(self, item.name) for item in fields(self)}
        data["devices"] = [
            {"id": d.id, "name": d.name, "ip": d.ip, "channel": d.channel, "key": _MASK}
            for d in self.devices
        ]
        for secret in ("api_key", "api_bearer_token"):
            data[secret] = _MASK if data[secret] else None
        return data

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Build a config from defaults, file, environment and CLI, in that order."""

        args = _build_parser().parse_args(args=cli_args)
        path = args.config or _env_path(f"{CONFIG_ENV_PREFIX}CONFIG")
        config = cls()
        for layer in (_read_toml(path), _read_env(CONFIG_ENV_PREFIX), _read_cli(args)):
            config = _apply_mapping(config, layer)
        return config


def validate_devices(devices: Sequence[DeviceConfig], require_any: bool = False) -> None:
    """Check that every device is complete and that ids are unique.

    Raises:
        ConfigurationError: for the first offending entry, or for an empty list
            when ``require_any`` is set.
    """

    if require_any and not devices:
        raise ConfigurationError(
            "Config error: devices[] is required and must contain at least one device"
        )
    seen = set()
    for device in devices:
        _require_fields({name: getattr(device, name, None) for name in _REQUIRED_DEVICE_FIELDS})
        if device.channel < 0:
            raise ConfigurationError(
                f"Config error: device \"{device.id}\" channel must be >= 0; got {device.channel}"
            )
        if device.id in seen:
            raise ConfigurationError(f"Config error: duplicate device id \"{device.id}\"")
        seen.add(device.id)


def _require_fields(values: Mapping[str, Any]) -> None:
    missing = [name for name in _REQUIRED_DEVICE_FIELDS if not values.get(name)]
    if missing:
        raise ConfigurationError(
            f"Config error: each device requires id, name, ip, key (missing {', '.join(missing)})"
        )


def _check_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); upgrade the bridge."
        )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="meross-lan-bridge",
        description="Bridge Meross lights and plugs on the local network.",
    )
    parser.add_argument("--config", type=Path, help="TOML configuration file.")
    parser.add_argument(
        "--device",
        action="append",
        dest="devices",
        metavar="DEVICE",
        help="Device as id=<id>,name=<name>,ip=<ip>,key=<key>[,channel=<n>]; repeatable.",
    )
    parser.add_argument(
        "--device-request-timeout", type=float, help="Seconds to wait for a device reply."
    )
    parser.add_argument(
        "--device-offline-threshold",
        type=int,
        help="Consecutive failures before a device is reported offline.",
    )
    parser.add_argument(
        "--no-api", dest="api_enabled", action="store_false", default=None,
        help="Do not start the HTTP API.",
    )
    parser.add_argument("--api-host", help="HTTP API bind address.")
    parser.add_argument("--api-port", type=int, help="HTTP API port.")
    parser.add_argument("--api-key", help="Require this key (X-API-Key or 'ApiKey <key>').")
    parser.add_argument("--api-bearer-token", help="Require 'Authorization: Bearer <token>'.")
    parser.add_argument(
        "--no-api-docs", dest="api_docs", action="store_false", default=None,
        help="Disable /docs and /redoc.",
    )
    parser.add_argument("--log-format", choices=["plain", "json"], help="Log output format.")
    parser.add_argument("--log-level", choices=LOG_LEVELS, help="Default log level.")
    parser.add_argument(
        "--protocol-log-level", choices=LOG_LEVELS, help="Log level for device requests."
    )
    parser.add_argument("--api-log-level", choices=LOG_LEVELS, help="Log level for the API.")
    parser.add_argument(
        "--dry-run", action="store_true", default=None,
        help="Log signed requests instead of sending them.",
    )
    parser.add_argument("--config-version", type=int, help="Schema version of the supplied config.")
    return parser


def _env_path(name: str) -> Optional[Path]:
    value = os.environ.get(name)
    return Path(value).expanduser() if value else None


def _read_toml(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as handle:
        parsed = tomllib.load(handle)
    return {key.replace("-", "_"): value for key, value in parsed.items()}


def _read_env(prefix: str) -> Dict[str, Any]:
    names = (item.name for item in fields(Config))
    return {
        name: os.environ[f"{prefix}{name}".upper()]
        for name in names
        if f"{prefix}{name}".upper() in os.environ
    }


def _read_cli(args: argparse.Namespace) -> Dict[str, Any]:
    return {key: value for key, value in vars(args).items() if key != "config" and value is not None}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _upper(value: Any) -> str:
    return str(value).upper()


_COERCERS: Dict[str, Callable[[Any], Any]] = {
    "devices": lambda value: _coerce_devices(value),
    "api_port": int,
    "device_offline_threshold": int,
    "config_version": int,
    "device_request_timeout": float,
    "api_enabled": _as_bool,
    "api_docs": _as_bool,
    "dry_run": _as_bool,
    "log_format": lambda value: str(value).lower(),
    "log_level": _upper,
    "protocol_log_level": _upper,
    "api_log_level": _upper,
}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    known = {item.name for item in fields(Config)}
    data: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in known:
            raise ValueError(f"Unknown configuration key: {key}")
        if value is None:
            continue
        data[key] = _COERCERS.get(key, lambda item: item)(value)
    return replace(config, **data)


def _coerce_devices(value: Any) -> Tuple[DeviceConfig, ...]:
    """Accept DeviceConfig objects, mappings, JSON text or ``key=value`` strings."""

    if isinstance(value, (DeviceConfig, Mapping)):
        value = [value]
    elif isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            value = [value]
        if isinstance(value, Mapping):
            value = [value]
    if not isinstance(value, Iterable):
        raise ConfigurationError("Config error: devices must be a list")

    devices: List[DeviceConfig] = []
    for item in value:
        if isinstance(item, DeviceConfig):
            devices.append(item)
        elif isinstance(item, Mapping):
            devices.append(_device_from_mapping(item))
        elif isinstance(item, str):
            devices.append(_device_from_mapping(_parse_device_arg(item)))
        else:
            raise ConfigurationError(f"Config error: unsupported device entry {item!r}")
    return tuple(devices)


def _parse_device_arg(text: str) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for part in filter(None, (chunk.strip() for chunk in text.split(","))):
        key, sep, value = part.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(
                f"Config error: --device must be key=value pairs separated by commas; got {text!r}"
            )
        mapping[key.strip()] = value.strip()
    return mapping


def _device_from_mapping(value: Mapping[str, Any]) -> DeviceConfig:
    _require_fields(value)
    channel = value.get("channel", 0)
    try:
        channel = int(channel)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Config error: invalid channel {channel!r}") from exc
    return DeviceConfig(
        id=str(value["id"]),
        name=str(value["name"]),
        ip=str(value["ip"]),
        key=str(value["key"]),
        channel=channel,
    )


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Load configuration for the entrypoint, reporting failures on stderr."""

    try:
        return Config.from_sources(cli_args)
    except (ValueError, FileNotFoundError, tomllib.TOMLDecodeError) as exc:
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
