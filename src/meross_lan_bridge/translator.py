"""Translate abstract light intents into Meross protocol requests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Dict, Optional

from .color import WHITE, hsv_to_rgb_int, level_to_luminance
from .logging import get_logger
from .protocol import DeviceIdentity, DeviceResponse, MerossHttpClient


@dataclass(frozen=True)
class LightState:
    """Last commanded color and brightness of a device."""

    rgb: int = WHITE
    luminance: int = 100


class DeviceCommandTranslator:
    """Map power/brightness/color intents onto toggle and light requests.

    ``Appliance.Control.Light`` only accepts a combined update, so every
    brightness change resends the cached color and every color change resends
    the cached luminance. Intents for the same device are serialized with a
    per-device lock held from the cache read until the request completes;
    different devices never wait on each other.
    """

    def __init__(self, client: MerossHttpClient) -> None:
        self.client = client
        self.logger = get_logger("meross.translator")
        self._states: Dict[DeviceIdentity, LightState] = {}
        self._locks: Dict[DeviceIdentity, asyncio.Lock] = {}

    def register(self, device: DeviceIdentity) -> None:
        """Start (or restart) tracking a device with the default full white state."""

        self._states[device] = LightState()
        self._locks.setdefault(device, asyncio.Lock())

    def unregister(self, device: DeviceIdentity) -> None:
        # Locks outlive registration: an intent in flight across a restart shares it.
        self._states.pop(device, None)

    def state(self, device: DeviceIdentity) -> LightState:
        return self._states.get(device, LightState())

    def _lock(self, device: DeviceIdentity) -> asyncio.Lock:
        lock = self._locks.get(device)
        if lock is None:
            lock = self._locks[device] = asyncio.Lock()
        return lock

    async def set_power(self, device: DeviceIdentity, on: bool) -> DeviceResponse:
        async with self._lock(device):
            return await self.client.toggle_x(device, on)

    async def set_brightness(self, device: DeviceIdentity, level_raw: float) -> DeviceResponse:
        luminance = level_to_luminance(level_raw)
        async with self._lock(device):
            state = replace(self.state(device), luminance=luminance)
            return await self._send_light(device, state)

    async def set_brightness_with_on_off(
        self, device: DeviceIdentity, level_raw: float
    ) -> DeviceResponse:
        """Set brightness, powering the device on first when the level is above zero.

        The light request is only sent once the power-on request succeeded; a
        failed power-on propagates and leaves the cached state unchanged.
        """

        luminance = level_to_luminance(level_raw)
        async with self._lock(device):
            if luminance > 0:
                await self.client.toggle_x(device, True)
            state = replace(self.state(device), luminance=luminance)
            return await self._send_light(device, state)

    async def set_hue_saturation(
        self, device: DeviceIdentity, hue254: float, sat254: float
    ) -> DeviceResponse:
        rgb = hsv_to_rgb_int(hue254, sat254)
        async with self._lock(device):
            state = replace(self.state(device), rgb=rgb)
            return await self._send_light(device, state)

    async def set_color_xy(
        self, device: DeviceIdentity, x: Optional[float], y: Optional[float]
    ) -> None:
        # XY needs a gamut definition the protocol does not provide.
        self.logger.info(
            "XY color requested; not supported, ignoring",
            extra={"address": device.address, "channel": device.channel, "x": x, "y": y},
        )

    async def _send_light(self, device: DeviceIdentity, state: LightState) -> DeviceResponse:
        self._states[device] = state
        self.logger.debug(
            "Sending light state",
            extra={
                "address": device.address,
                "channel": device.channel,
                "rgb": state.rgb,
                "luminance": state.luminance,
            },
        )
        return await self.client.set_light(device, state.luminance, state.rgb)
