"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

REQUEST_LATENCY = Histogram(
    "meross_api_request_duration_seconds",
    "Time spent processing API requests",
    ["method", "path", "status"],
    registry=_REGISTRY,
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
REQUEST_COUNT = Counter(
    "meross_api_requests_total",
    "HTTP requests processed by the API",
    ["method", "path", "status"],
    registry=_REGISTRY,
)
DEVICE_COMMANDS = Counter(
    "meross_device_commands_total",
    "Device request outcomes",
    ["namespace", "result"],
    registry=_REGISTRY,
)
DEVICE_REQUEST_DURATION = Histogram(
    "meross_device_request_duration_seconds",
    "Time to deliver a signed request to a device",
    ["namespace", "result"],
    registry=_REGISTRY,
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5],
)
INTENTS = Counter(
    "meross_intents_total",
    "Endpoint commands handled, by outcome",
    ["command", "status"],
    registry=_REGISTRY,
)
DEVICE_STATUS = Gauge(
    "meross_device_status",
    "Device reachability (0=offline,1=degraded/unknown,2=ok)",
    ["device_id"],
    registry=_REGISTRY,
)
REGISTERED_DEVICES = Gauge(
    "meross_registered_devices",
    "Number of registered device endpoints",
    registry=_REGISTRY,
)


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def observe_request(method: str, path: str, status: int, duration_seconds: float) -> None:
    """Record API request metrics."""

    status_str = str(status)
    REQUEST_COUNT.labels(method=method, path=path, status=status_str).inc()
    REQUEST_LATENCY.labels(method=method, path=path, status=status_str).observe(duration_seconds)


def record_device_command(namespace: str, result: str) -> None:
    DEVICE_COMMANDS.labels(namespace=namespace, result=result).inc()


def observe_device_request(namespace: str, result: str, duration_seconds: float) -> None:
    DEVICE_REQUEST_DURATION.labels(namespace=namespace, result=result).observe(duration_seconds)


def record_intent(command: str, status: str) -> None:
    INTENTS.labels(command=command, status=status).inc()


def record_device_status(device_id: str, status: str) -> None:
    """Record the current reachability of a device."""

    code = 1
    if status == "ok":
        code = 2
    elif status == "offline":
        code = 0
    DEVICE_STATUS.labels(device_id=device_id).set(code)


def clear_device_status(device_id: str) -> None:
    DEVICE_STATUS.remove(device_id)


def set_registered_devices(count: int) -> None:
    REGISTERED_DEVICES.set(count)


METRICS_CONTENT_TYPE = CONTENT_TYPE_LATEST
