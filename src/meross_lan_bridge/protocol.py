"""Meross LAN HTTP protocol: signed envelopes and the async device client."""

from __future__ import annotations

import asyncio
import hashlib
import json
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx

from .color import clamp, round_half_up
from .errors import DeviceRejected, DeviceUnreachable
from .logging import get_logger
from .metrics import observe_device_request, record_device_command

NAMESPACE_TOGGLEX = "Appliance.Control.ToggleX"
NAMESPACE_LIGHT = "Appliance.Control.Light"

METHOD_GET = "GET"
METHOD_SET = "SET"
METHODS = frozenset({METHOD_GET, METHOD_SET})

PAYLOAD_VERSION = 1
DEFAULT_TIMEOUT = 4.0

CAPACITY_LUMINANCE = 4
CAPACITY_RGB_LUMINANCE = 5


@dataclass(frozen=True)
class DeviceIdentity:
    """Network address, shared key and logical channel of one device."""

    address: str
    secret: str = field(repr=False)
    channel: int = 0


@dataclass(frozen=True)
class RequestEnvelope:
    """Signed request sent as the body of ``POST /config``."""

    from_: str
    message_id: str
    method: str
    namespace: str
    timestamp: int
    sign: str
    payload: Mapping[str, Any]
    payload_version: int = PAYLOAD_VERSION

    def header(self) -> Dict[str, Any]:
        return {
            "from": self.from_,
            "messageId": self.message_id,
            "method": self.method,
            "namespace": self.namespace,
            "payloadVersion": self.payload_version,
            "timestamp": self.timestamp,
            "sign": self.sign,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {"header": self.header(), "payload": self.payload}


@dataclass(frozen=True)
class DeviceResponse:
    """Successful device reply.

    Devices often answer fire-and-forget commands with an empty or non-JSON
    body; ``is_json`` is False in that case and ``body`` holds the raw text.
    """

    status_code: int
    raw: str
    data: Any = None
    is_json: bool = False

    @property
    def body(self) -> Any:
        return self.data if self.is_json else self.raw


def config_url(address: str) -> str:
    return f"http://{address}/config"


def create_message_id() -> str:
    """Return 16 random bytes as 32 lowercase hex characters."""

    return secrets.token_hex(16)


def create_timestamp() -> int:
    return int(time.time())


def create_sign(message_id: str, key: str, timestamp: int) -> str:
    """Sign a request: md5(messageId + key + timestamp), lowercase hex."""

    digest = hashlib.md5(f"{message_id}{key}{timestamp}".encode("utf-8"))
    return digest.hexdigest().lower()


def build_request(
    address: str,
    secret: str,
    namespace: str,
    method: str,
    payload: Mapping[str, Any],
    *,
    message_id: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> RequestEnvelope:
    """Build a complete signed envelope.

    ``message_id`` and ``timestamp`` are generated when omitted; passing them
    makes the envelope reproducible.
    """

    if method not in METHODS:
        raise ValueError(f"method must be one of {sorted(METHODS)}; got {method}.")
    message_id = message_id or create_message_id()
    timestamp = create_timestamp() if timestamp is None else int(timestamp)
    return RequestEnvelope(
        from_=config_url(address),
        message_id=message_id,
        method=method,
        namespace=namespace,
        timestamp=timestamp,
        sign=create_sign(message_id, secret, timestamp),
        payload=payload,
    )


def toggle_payload(channel: int, on: bool) -> Dict[str, Any]:
    return {"togglex": {"channel": int(channel), "onoff": 1 if on else 0}}


def light_payload(channel: int, luminance: float, rgb: Optional[int] = None) -> Dict[str, Any]:
    """Build an ``Appliance.Control.Light`` payload.

    Capacity 4 carries luminance only; capacity 5 adds the packed ``rgb``.
    """

    lum = int(clamp(round_half_up(luminance), 0, 100))
    light: Dict[str, Any] = {"channel": int(channel), "luminance": lum}
    if rgb is None:
        light["capacity"] = CAPACITY_LUMINANCE
    else:
        light["capacity"] = CAPACITY_RGB_LUMINANCE
        light["rgb"] = int(rgb) & 0xFFFFFF
    return {"light": light}


def _parse_body(status_code: int, text: str) -> DeviceResponse:
    if not text.strip():
        return DeviceResponse(status_code=status_code, raw=text)
    try:
        data = json.loads(text)
    except ValueError:
        return DeviceResponse(status_code=status_code, raw=text)
    return DeviceResponse(status_code=status_code, raw=text, data=data, is_json=True)


class MerossHttpClient:
    """Send signed envelopes to devices over HTTP.

    Every call is independent: no retries, no shared request state. The
    underlying ``httpx.AsyncClient`` is created lazily and closed by
    :meth:`aclose`.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        dry_run: bool = False,
    ) -> None:
        self.timeout = timeout
        self.logger = get_logger("meross.protocol")
        self._transport = transport
        self._dry_run = dry_run
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "MerossHttpClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    async def send(
        self,
        address: str,
        secret: str,
        namespace: str,
        method: str,
        payload: Mapping[str, Any],
        timeout: Optional[float] = None,
    ) -> DeviceResponse:
        """POST a freshly signed envelope to ``http://<address>/config``.

        Raises:
            DeviceUnreachable: timeout or connection failure; the in-flight
                request is cancelled.
            DeviceRejected: non-2xx HTTP status.
        """

        envelope = build_request(address, secret, namespace, method, payload)
        limit = self.timeout if timeout is None else timeout
        started = time.perf_counter()
        context = {
            "address": address,
            "namespace": namespace,
            "method": method,
            "message_id": envelope.message_id,
        }

        def _finalize(result: str) -> None:
            record_device_command(namespace, result)
            observe_device_request(namespace, result, time.perf_counter() - started)

        if self._dry_run:
            self.logger.info(
                "Dry-run: would send request",
                extra={**context, "payload": dict(payload)},
            )
            _finalize("dry_run")
            return DeviceResponse(status_code=200, raw="")

        self.logger.debug("Sending request", extra={**context, "payload": dict(payload)})
        try:
            response = await asyncio.wait_for(
                self._http().post(
                    config_url(address),
                    content=json.dumps(envelope.to_dict()),
                    headers={"Content-Type": "application/json"},
                    timeout=limit,
                ),
                timeout=limit,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            _finalize("timeout")
            self.logger.warning("Device request timed out", extra={**context, "timeout": limit})
            raise DeviceUnreachable(address, f"no response within {limit}s") from exc
        except httpx.TransportError as exc:
            _finalize("unreachable")
            self.logger.warning(
                "Device request failed",
                extra={**context, "error": str(exc) or type(exc).__name__},
            )
            raise DeviceUnreachable(address, str(exc) or type(exc).__name__) from exc

        text = response.text
        if not response.is_success:
            _finalize("rejected")
            self.logger.warning(
                "Device rejected request",
                extra={**context, "status": response.status_code},
            )
            raise DeviceRejected(address, response.status_code, text)

        _finalize("success")
        result = _parse_body(response.status_code, text)
        self.logger.debug(
            "Device accepted request",
            extra={**context, "status": response.status_code, "json": result.is_json},
        )
        return result

    async def toggle_x(self, device: DeviceIdentity, on: bool) -> DeviceResponse:
        return await self.send(
            device.address,
            device.secret,
            NAMESPACE_TOGGLEX,
            METHOD_SET,
            toggle_payload(device.channel, on),
        )

    async def set_light(
        self, device: DeviceIdentity, luminance: float, rgb: Optional[int] = None
    ) -> DeviceResponse:
        return await self.send(
            device.address,
            device.secret,
            NAMESPACE_LIGHT,
            METHOD_SET,
            light_payload(device.channel, luminance, rgb),
        )
