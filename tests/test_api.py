import httpx
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from meross_lan_bridge.api import DeviceCommand, create_app, plan_commands
from meross_lan_bridge.config import Config, DeviceConfig
from meross_lan_bridge.platform import MerossPlatform
from meross_lan_bridge.protocol import NAMESPACE_LIGHT, NAMESPACE_TOGGLEX

_DESK = DeviceConfig(id="desk", name="Desk Lamp", ip="10.0.0.2", key="k")


async def _app(fake_device, **overrides):
    config = Config(devices=(_DESK,), **overrides)
    platform = MerossPlatform(config, client=fake_device.client())
    await platform.start(reason="test")
    return create_app(config, platform), platform


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def test_plan_orders_power_before_color() -> None:
    plan = plan_commands(DeviceCommand(on=True, level=127, hue=10, saturation=20))
    assert plan == [
        ("moveToLevelWithOnOff", {"level": 127}),
        ("moveToHueAndSaturation", {"hue": 10, "saturation": 20}),
    ]


def test_plan_off_short_circuits() -> None:
    assert plan_commands(DeviceCommand(on=False, level=127)) == [("off", {})]


def test_plan_level_without_power() -> None:
    assert plan_commands(DeviceCommand(level=10, x=0.2, y=0.4)) == [
        ("moveToLevel", {"level": 10}),
        ("moveToColor", {"colorX": 0.2, "colorY": 0.4}),
    ]


def test_plan_requires_hue_and_saturation_together() -> None:
    with pytest.raises(HTTPException) as excinfo:
        plan_commands(DeviceCommand(hue=10))
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_command_powers_on_then_sets_light(fake_device) -> None:
    app, platform = await _app(fake_device)

    async with _client(app) as client:
        response = await client.post("/devices/desk/command", json={"on": True, "level": 127})

    assert response.status_code == 200
    body = response.json()
    assert body["device_id"] == "desk"
    assert [result["command"] for result in body["results"]] == ["moveToLevelWithOnOff"]
    assert body["results"][0]["status"] == "ok"
    assert fake_device.namespaces() == [NAMESPACE_TOGGLEX, NAMESPACE_LIGHT]
    assert fake_device.payloads(NAMESPACE_LIGHT)[0]["light"] == {
        "channel": 0,
        "luminance": 50,
        "capacity": 5,
        "rgb": 16777215,
    }


@pytest.mark.asyncio
async def test_device_view_reflects_cached_state(fake_device) -> None:
    app, platform = await _app(fake_device)

    async with _client(app) as client:
        await client.post("/devices/desk/command", json={"hue": 0, "saturation": 254})
        response = await client.get("/devices/desk")
        listing = await client.get("/devices")

    assert response.status_code == 200
    device = response.json()
    assert device["rgb"] == 0xFF0000
    assert device["luminance"] == 100
    assert device["status"] == "ok"
    assert "key" not in device
    assert [item["id"] for item in listing.json()] == ["desk"]


@pytest.mark.asyncio
async def test_rejected_device_maps_to_bad_gateway(fake_device) -> None:
    fake_device.status = 500
    fake_device.body = "sign error"
    app, platform = await _app(fake_device)

    async with _client(app) as client:
        response = await client.post("/devices/desk/command", json={"on": True})

    assert response.status_code == 502
    body = response.json()
    assert body["detail"] == "Meross HTTP 500: sign error"
    assert body["results"] == [{"command": "on", "status": "failed", "response": None}]


@pytest.mark.asyncio
async def test_unreachable_device_maps_to_gateway_timeout(fake_device) -> None:
    def _refuse(request, envelope):
        raise httpx.ConnectError("connection refused", request=request)

    fake_device.on_request = _refuse
    app, platform = await _app(fake_device)

    async with _client(app) as client:
        response = await client.post("/devices/desk/command", json={"on": True})

    assert response.status_code == 504
    body = response.json()
    assert body["detail"] == "Device 10.0.0.2 unreachable: connection refused"
    assert body["results"] == [{"command": "on", "status": "failed", "response": None}]


@pytest.mark.asyncio
async def test_unknown_device_returns_404(fake_device) -> None:
    app, platform = await _app(fake_device)
    async with _client(app) as client:
        response = await client.get("/devices/nope")
        command = await client.post("/devices/nope/command", json={"on": True})
    assert response.status_code == 404
    assert command.status_code == 404


@pytest.mark.asyncio
async def test_empty_command_returns_400(fake_device) -> None:
    app, platform = await _app(fake_device)
    async with _client(app) as client:
        response = await client.post("/devices/desk/command", json={})
    assert response.status_code == 400
    assert fake_device.requests == []


@pytest.mark.asyncio
async def test_out_of_range_level_returns_422(fake_device) -> None:
    app, platform = await _app(fake_device)
    async with _client(app) as client:
        response = await client.post("/devices/desk/command", json={"level": 255})
    assert response.status_code == 422
    assert response.json()["detail"][0]["loc"][-1] == "level"


@pytest.mark.asyncio
async def test_auth_required_when_key_configured(fake_device) -> None:
    app, platform = await _app(fake_device, api_key="secret")
    async with _client(app) as client:
        denied = await client.get("/devices")
        allowed = await client.get("/devices", headers={"X-API-Key": "secret"})
        scheme = await client.get("/devices", headers={"Authorization": "ApiKey secret"})
    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert scheme.status_code == 200


@pytest.mark.asyncio
async def test_status_and_metrics(fake_device) -> None:
    app, platform = await _app(fake_device, dry_run=False)
    async with _client(app) as client:
        await client.post("/devices/desk/command", json={"on": True})
        status = await client.get("/status")
        metrics = await client.get("/metrics")

    assert status.json()["registered"] == 1
    assert status.json()["devices"]["desk"]["status"] == "ok"
    assert "meross_device_commands_total" in metrics.text


def test_docs_can_be_disabled() -> None:
    app = create_app(Config(api_docs=False), MerossPlatform(Config()))
    client = TestClient(app)
    assert client.get("/docs").status_code == 404
    assert client.get("/health").json() == {"status": "ok"}
