"""Device registration and the per-device command surface."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from .config import Config, DeviceConfig, validate_devices
from .errors import DeviceError, UnsupportedIntent
from .health import HealthMonitor
from .logging import get_logger, set_level
from .metrics import record_intent, set_registered_devices
from .protocol import DeviceIdentity, DeviceResponse, MerossHttpClient
from .translator import DeviceCommandTranslator, LightState

CMD_ON = "on"
CMD_OFF = "off"
CMD_MOVE_TO_LEVEL = "moveToLevel"
CMD_MOVE_TO_LEVEL_WITH_ON_OFF = "moveToLevelWithOnOff"
CMD_MOVE_TO_HUE_AND_SATURATION = "moveToHueAndSaturation"
CMD_MOVE_TO_COLOR = "moveToColor"

Handler = Callable[[Mapping[str, Any]], Awaitable[Optional[DeviceResponse]]]


@dataclass(frozen=True)
class CommandOutcome:
    """Result of one endpoint command.

    ``status`` is ``ok``, ``ignored`` (nothing sent) or ``failed``.
    """

    device_id: str
    command: str
    status: str
    response: Optional[DeviceResponse] = None
    error: Optional[DeviceError] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


def _number(request: Mapping[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        value = request.get(key)
        if value is None:
            continue
        try:
            parsed = float(value)
        except (TypeError, ValueError):
            return None
        return parsed if math.isfinite(parsed) else None
    return None


class LightEndpoint:
    """Controllable endpoint for one configured device."""

    def __init__(
        self,
        device: DeviceConfig,
        translator: DeviceCommandTranslator,
        health: HealthMonitor,
    ) -> None:
        self.device = device
        self.identity = DeviceIdentity(address=device.ip, secret=device.key, channel=device.channel)
        self.translator = translator
        self.health = health
        self.logger = get_logger("meross.platform")
        self._handlers: Dict[str, Handler] = {
            CMD_ON: self._on,
            CMD_OFF: self._off,
            CMD_MOVE_TO_LEVEL: self._move_to_level,
            CMD_MOVE_TO_LEVEL_WITH_ON_OFF: self._move_to_level_with_on_off,
            CMD_MOVE_TO_HUE_AND_SATURATION: self._move_to_hue_and_saturation,
            CMD_MOVE_TO_COLOR: self._move_to_color,
        }

    @property
    def id(self) -> str:
        return self.device.id

    @property
    def name(self) -> str:
        return self.device.name

    @property
    def commands(self) -> Tuple[str, ...]:
        return tuple(self._handlers)

    def state(self) -> LightState:
        return self.translator.state(self.identity)

    def _context(self, command: str) -> Dict[str, Any]:
        return {
            "device_id": self.device.id,
            "address": self.device.ip,
            "channel": self.device.channel,
            "command": command,
        }

    def _handler(self, command: str) -> Handler:
        handler = self._handlers.get(command)
        if handler is None:
            raise UnsupportedIntent(command)
        return handler

    async def invoke(
        self, command: str, request: Optional[Mapping[str, Any]] = None
    ) -> CommandOutcome:
        """Run a command; device errors are reported in the outcome, not raised."""

        request = request or {}
        try:
            handler = self._handler(command)
        except UnsupportedIntent as exc:
            self.logger.info(str(exc), extra=self._context(command))
            record_intent(command, "ignored")
            return CommandOutcome(self.device.id, command, "ignored")

        try:
            response = await handler(request)
        except DeviceError as exc:
            await self.health.record_failure(self.device.id, exc)
            self.logger.warning(
                "Device command failed",
                extra={**self._context(command), "error": str(exc)},
            )
            record_intent(command, "failed")
            return CommandOutcome(self.device.id, command, "failed", error=exc)

        if response is None:
            record_intent(command, "ignored")
            return CommandOutcome(self.device.id, command, "ignored")
        await self.health.record_success(self.device.id)
        record_intent(command, "ok")
        return CommandOutcome(self.device.id, command, "ok", response=response)

    async def _on(self, request: Mapping[str, Any]) -> DeviceResponse:
        self.logger.info("Meross ON", extra=self._context(CMD_ON))
        return await self.translator.set_power(self.identity, True)

    async def _off(self, request: Mapping[str, Any]) -> DeviceResponse:
        self.logger.info("Meross OFF", extra=self._context(CMD_OFF))
        return await self.translator.set_power(self.identity, False)

    async def _move_to_level(self, request: Mapping[str, Any]) -> Optional[DeviceResponse]:
        self.logger.debug("moveToLevel request", extra={**self._context(CMD_MOVE_TO_LEVEL), "request": dict(request)})
        level = _number(request, "level", "newLevel")
        if level is None:
            return None
        return await self.translator.set_brightness(self.identity, level)

    async def _move_to_level_with_on_off(
        self, request: Mapping[str, Any]
    ) -> Optional[DeviceResponse]:
        self.logger.debug(
            "moveToLevelWithOnOff request",
            extra={**self._context(CMD_MOVE_TO_LEVEL_WITH_ON_OFF), "request": dict(request)},
        )
        level = _number(request, "level", "newLevel")
        if level is None:
            return None
        return await self.translator.set_brightness_with_on_off(self.identity, level)

    async def _move_to_hue_and_saturation(
        self, request: Mapping[str, Any]
    ) -> Optional[DeviceResponse]:
        self.logger.debug(
            "moveToHueAndSaturation request",
            extra={**self._context(CMD_MOVE_TO_HUE_AND_SATURATION), "request": dict(request)},
        )
        hue = _number(request, "hue")
        saturation = _number(request, "saturation")
        if hue is None or saturation is None:
            return None
        return await self.translator.set_hue_saturation(self.identity, hue, saturation)

    async def _move_to_color(self, request: Mapping[str, Any]) -> None:
        await self.translator.set_color_xy(
            self.identity, _number(request, "colorX", "x"), _number(request, "colorY", "y")
        )
        return None


class MerossPlatform:
    """Register one light endpoint per configured device."""

    def __init__(
        self,
        config: Config,
        client: Optional[MerossHttpClient] = None,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.config = config
        self.logger = get_logger("meross.platform")
        self.client = client or MerossHttpClient(
            timeout=config.device_request_timeout, dry_run=config.dry_run
        )
        self.translator = DeviceCommandTranslator(self.client)
        self.health = health or HealthMonitor(offline_threshold=config.device_offline_threshold)
        self._endpoints: Dict[str, LightEndpoint] = {}

    @property
    def endpoints(self) -> Mapping[str, LightEndpoint]:
        return dict(self._endpoints)

    def endpoint(self, device_id: str) -> Optional[LightEndpoint]:
        return self._endpoints.get(device_id)

    async def start(self, reason: Optional[str] = None) -> None:
        self.logger.info("Platform starting", extra={"reason": reason or "none"})
        self.unregister_all()
        await self.discover_devices()

    async def stop(self, reason: Optional[str] = None) -> None:
        self.unregister_all()
        await self.client.aclose()
        self.logger.info("Platform stopped", extra={"reason": reason or "none"})

    async def discover_devices(self) -> None:
        """Validate the configured devices, then register all of them.

        Raises:
            ConfigurationError: before anything is registered when any device
                is incomplete or an id is duplicated.
        """

        self.logger.info("Discovering devices...")
        validate_devices(self.config.devices, require_any=True)
        endpoints = [
            LightEndpoint(device, self.translator, self.health) for device in self.config.devices
        ]
        for endpoint in endpoints:
            self.register_endpoint(endpoint)

    def register_endpoint(self, endpoint: LightEndpoint) -> None:
        device = endpoint.device
        self.logger.info(
            "Registering Meross light",
            extra={
                "device_id": device.id,
                "device_name": device.name,
                "address": device.ip,
                "channel": device.channel,
            },
        )
        self.translator.register(endpoint.identity)
        self.health.track(device.id)
        self._endpoints[device.id] = endpoint
        set_registered_devices(len(self._endpoints))

    def unregister_all(self) -> None:
        for endpoint in self._endpoints.values():
            self.translator.unregister(endpoint.identity)
            self.health.forget(endpoint.id)
        self._endpoints.clear()
        set_registered_devices(0)

    def set_log_level(self, level: str) -> None:
        self.logger.info("Changing log level", extra={"level": level})
        set_level(level)
