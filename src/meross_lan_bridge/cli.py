"""``meross-lan``: command-line client for a running bridge.

Talks to the bridge HTTP API only; it never contacts devices directly.
Defaults come from ``MEROSS_LAN_*`` environment variables and responses are
printed as JSON (default) or YAML.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, TextIO

import httpx
import yaml


ENV_PREFIX = "MEROSS_LAN_"
DEFAULT_SERVER_URL = "http://127.0.0.1:8000"
OUTPUT_FORMATS = ("json", "yaml")

# Read-only subcommands and the route each one fetches.
_VIEW_ROUTES = {
    "health": "/health",
    "status": "/status",
    "list": "/devices",
}


class CliError(Exception):
    """User-facing failure; printed without a traceback."""


@dataclass(frozen=True)
class ClientConfig:
    """Where the bridge lives and how to authenticate against it."""

    server_url: str
    api_key: Optional[str] = None
    api_bearer_token: Optional[str] = None
    output: str = "json"
    timeout: float = 10.0

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "ClientConfig":
        output = (args.output or "json").lower()
        if output not in OUTPUT_FORMATS:
            raise CliError(f"--output must be one of {', '.join(OUTPUT_FORMATS)}; got {output}")
        return cls(
            server_url=args.server_url,
            api_key=args.api_key or None,
            api_bearer_token=args.api_bearer_token or None,
            output=output,
        )

    def auth_headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
            headers["Authorization"] = f"ApiKey {self.api_key}"
        if self.api_bearer_token:
            headers["Authorization"] = f"Bearer {self.api_bearer_token}"
        return headers


def open_client(config: ClientConfig) -> httpx.Client:
    return httpx.Client(
        base_url=config.server_url,
        headers=config.auth_headers(),
        timeout=config.timeout,
    )


def emit(data: Any, output: str, stream: Optional[TextIO] = None) -> None:
    """Write ``data`` to ``stream`` (stdout by default) in the chosen format."""

    stream = stream or sys.stdout
    if output == "yaml":
        yaml.safe_dump(data, stream, sort_keys=False, default_flow_style=False)
        return
    stream.write(json.dumps(data, indent=2))
    stream.write("\n")


def unwrap(response: httpx.Response) -> Any:
    """Return the decoded body of a successful response or raise :class:`CliError`."""

    if response.is_success:
        return response.json() if response.content else None
    try:
        detail = response.json().get("detail", response.text)
    except ValueError:
        detail = response.text
    raise CliError(
        f"{response.request.method} {response.request.url.path} failed "
        f"({response.status_code}): {detail}"
    )


def _check_range(flag: str, value: Optional[int]) -> None:
    if value is not None and not 0 <= value <= 254:
        raise CliError(f"{flag} must be between 0 and 254; got {value}")


def build_command_payload(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate ``devices command`` flags into a ``POST /devices/{id}/command`` body."""

    if args.on and args.off:
        raise CliError("--on and --off are mutually exclusive")
    if (args.hue is None) != (args.saturation is None):
        raise CliError("--hue and --saturation must be given together")
    for flag, value in (("--level", args.level), ("--hue", args.hue), ("--saturation", args.saturation)):
        _check_range(flag, value)

    payload: Dict[str, Any] = {}
    if args.on or args.off:
        payload["on"] = bool(args.on)
    if args.level is not None:
        payload["level"] = args.level
    if args.hue is not None:
        payload.update(hue=args.hue, saturation=args.saturation)
    if not payload:
        raise CliError("Nothing to do: pass --on, --off, --level or --hue/--saturation")
    return payload


def _cmd_view(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    route = _VIEW_ROUTES[args.device_command or args.command]
    emit(unwrap(client.get(route)), config.output)


def _cmd_show(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    emit(unwrap(client.get(f"/devices/{args.device_id}")), config.output)


def _cmd_command(config: ClientConfig, client: httpx.Client, args: argparse.Namespace) -> None:
    payload = build_command_payload(args)
    emit(unwrap(client.post(f"/devices/{args.device_id}/command", json=payload)), config.output)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="meross-lan",
        description=(
            "Control a running Meross LAN bridge. Examples: `meross-lan devices list`, "
            "`meross-lan devices command desk --on --level 200`."
        ),
    )
    parser.add_argument(
        "--server-url",
        default=os.environ.get(f"{ENV_PREFIX}SERVER_URL", DEFAULT_SERVER_URL),
        help=f"Bridge API base URL (env: {ENV_PREFIX}SERVER_URL).",
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get(f"{ENV_PREFIX}API_KEY"),
        help=f"API key (env: {ENV_PREFIX}API_KEY).",
    )
    parser.add_argument(
        "--api-bearer-token",
        default=os.environ.get(f"{ENV_PREFIX}API_BEARER_TOKEN"),
        help=f"Bearer token (env: {ENV_PREFIX}API_BEARER_TOKEN).",
    )
    parser.add_argument(
        "--output",
        choices=OUTPUT_FORMATS,
        default=os.environ.get(f"{ENV_PREFIX}OUTPUT", "json"),
        help=f"Response format (env: {ENV_PREFIX}OUTPUT).",
    )
    parser.set_defaults(device_command=None)

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("health", help="GET /health").set_defaults(func=_cmd_view)
    commands.add_parser("status", help="Per-device reachability (GET /status)").set_defaults(
        func=_cmd_view
    )

    devices = commands.add_parser("devices", help="List, inspect and command devices")
    device_commands = devices.add_subparsers(dest="device_command", required=True)
    device_commands.add_parser("list", help="List registered devices").set_defaults(func=_cmd_view)

    show = device_commands.add_parser("show", help="Show a device and its cached light state")
    show.add_argument("device_id")
    show.set_defaults(func=_cmd_show)

    command = device_commands.add_parser(
        "command",
        help="Send power, brightness and color intents",
        description="Level, hue and saturation use 0-254. --on with --level powers on first.",
    )
    command.add_argument("device_id")
    command.add_argument("--on", action="store_true", help="Turn the device on.")
    command.add_argument("--off", action="store_true", help="Turn the device off.")
    command.add_argument("--level", type=int, help="Brightness level (0-254).")
    command.add_argument("--hue", type=int, help="Hue (0-254).")
    command.add_argument("--saturation", type=int, help="Saturation (0-254).")
    command.set_defaults(func=_cmd_command)
    return parser


def main(argv: Optional[Iterable[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(args=argv)
    if not args.command:
        parser.print_help()
        raise SystemExit(1)

    try:
        config = ClientConfig.from_args(args)
        with open_client(config) as client:
            args.func(config, client, args)
    except CliError as exc:
        sys.stderr.write(f"Error: {exc}\n")
        raise SystemExit(1) from exc
    except httpx.RequestError as exc:
        sys.stderr.write(f"Could not reach bridge at {args.server_url}: {exc}\n")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
