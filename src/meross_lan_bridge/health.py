"""Per-device reachability tracking."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

from .metrics import clear_device_status, record_device_status


@dataclass
class DeviceHealth:
    """Mutable reachability status for a device."""

    device_id: str
    status: str = "unknown"
    failures: int = 0
    last_error: Optional[str] = None
    last_success: Optional[float] = None
    last_failure: Optional[float] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "failures": self.failures,
            "last_error": self.last_error,
            "last_success": self.last_success,
            "last_failure": self.last_failure,
        }


class HealthMonitor:
    """Track consecutive device failures.

    Purely observational: nothing is retried or suppressed, a device is only
    reported ``offline`` after ``offline_threshold`` consecutive failures.
    """

    def __init__(self, device_ids: Iterable[str] = (), offline_threshold: int = 3) -> None:
        self._states: Dict[str, DeviceHealth] = {}
        self._offline_threshold = max(1, offline_threshold)
        self._lock = asyncio.Lock()
        for device_id in device_ids:
            self.track(device_id)

    def track(self, device_id: str) -> None:
        if device_id not in self._states:
            self._states[device_id] = DeviceHealth(device_id=device_id)
            record_device_status(device_id, "unknown")

    def forget(self, device_id: str) -> None:
        if self._states.pop(device_id, None) is not None:
            clear_device_status(device_id)

    async def record_success(self, device_id: str) -> None:
        async with self._lock:
            state = self._states.setdefault(device_id, DeviceHealth(device_id=device_id))
            state.status = "ok"
            state.failures = 0
            state.last_error = None
            state.last_success = time.time()
            record_device_status(device_id, state.status)

    async def record_failure(self, device_id: str, error: Optional[BaseException] = None) -> None:
        async with self._lock:
            state = self._states.setdefault(device_id, DeviceHealth(device_id=device_id))
            state.failures += 1
            state.last_failure = time.time()
            state.last_error = str(error) if error else state.last_error
            if state.failures >= self._offline_threshold:
                state.status = "offline"
            else:
                state.status = "degraded"
            record_device_status(device_id, state.status)

    def get(self, device_id: str) -> Optional[DeviceHealth]:
        return self._states.get(device_id)

    async def snapshot(self) -> Mapping[str, Dict[str, Any]]:
        """Return a copy of every device's health state."""

        async with self._lock:
            return {name: state.as_dict() for name, state in self._states.items()}
