import asyncio
import json
import re
import time

import httpx
import pytest

from meross_lan_bridge.errors import DeviceRejected, DeviceUnreachable
from meross_lan_bridge.protocol import (
    NAMESPACE_LIGHT,
    NAMESPACE_TOGGLEX,
    MerossHttpClient,
    build_request,
    create_message_id,
    create_sign,
    light_payload,
    toggle_payload,
)


def test_sign_matches_reference_digest() -> None:
    sign = create_sign("00112233445566778899aabbccddeeff", "k", 1700000000)
    assert sign == "c7fabf3599be1af177a8695edb743e1a"


def test_message_ids_are_random_hex_tokens() -> None:
    ids = {create_message_id() for _ in range(200)}
    assert len(ids) == 200
    for message_id in ids:
        assert re.fullmatch(r"[0-9a-f]{32}", message_id)


def test_build_request_envelope_shape() -> None:
    envelope = build_request(
        "10.0.0.7",
        "k",
        NAMESPACE_TOGGLEX,
        "SET",
        toggle_payload(0, True),
        message_id="00112233445566778899aabbccddeeff",
        timestamp=1700000000,
    )
    assert envelope.to_dict() == {
        "header": {
            "from": "http://10.0.0.7/config",
            "messageId": "00112233445566778899aabbccddeeff",
            "method": "SET",
            "namespace": "Appliance.Control.ToggleX",
            "payloadVersion": 1,
            "timestamp": 1700000000,
            "sign": "c7fabf3599be1af177a8695edb743e1a",
        },
        "payload": {"togglex": {"channel": 0, "onoff": 1}},
    }


def test_build_request_defaults_to_current_time_and_fresh_id() -> None:
    before = int(time.time())
    first = build_request("10.0.0.7", "k", NAMESPACE_LIGHT, "SET", {})
    second = build_request("10.0.0.7", "k", NAMESPACE_LIGHT, "SET", {})
    assert before <= first.timestamp <= int(time.time())
    assert first.message_id != second.message_id
    assert first.sign == create_sign(first.message_id, "k", first.timestamp)


def test_build_request_rejects_unknown_method() -> None:
    with pytest.raises(ValueError, match="method"):
        build_request("10.0.0.7", "k", NAMESPACE_LIGHT, "PUSH", {})


def test_secret_not_in_envelope_or_identity_repr(identity) -> None:
    envelope = build_request(identity.address, identity.secret, NAMESPACE_LIGHT, "SET", {})
    assert identity.secret not in json.dumps(envelope.to_dict())
    assert identity.secret not in repr(identity)


def test_light_payload_capacity() -> None:
    assert light_payload(0, 40) == {"light": {"channel": 0, "luminance": 40, "capacity": 4}}
    assert light_payload(1, 100.4, 0xFF0000) == {
        "light": {"channel": 1, "luminance": 100, "capacity": 5, "rgb": 16711680}
    }
    assert light_payload(0, 140, 0x1FFFFFF)["light"] == {
        "channel": 0,
        "luminance": 100,
        "capacity": 5,
        "rgb": 0xFFFFFF,
    }


def test_toggle_payload() -> None:
    assert toggle_payload(2, False) == {"togglex": {"channel": 2, "onoff": 0}}


@pytest.mark.asyncio
async def test_send_posts_signed_envelope(fake_device, identity) -> None:
    fake_device.body = {"header": {"method": "SETACK"}, "payload": {}}
    async with fake_device.client() as client:
        response = await client.toggle_x(identity, True)

    assert response.is_json
    assert response.body == {"header": {"method": "SETACK"}, "payload": {}}
    request = fake_device.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "http://192.168.1.50/config"
    assert request.headers["content-type"] == "application/json"
    header = fake_device.envelopes[0]["header"]
    assert header["namespace"] == NAMESPACE_TOGGLEX
    assert header["sign"] == create_sign(header["messageId"], "shared-key", header["timestamp"])
    assert fake_device.envelopes[0]["payload"] == {"togglex": {"channel": 0, "onoff": 1}}


@pytest.mark.asyncio
@pytest.mark.parametrize("body", ["", "OK", "<html></html>"])
async def test_send_returns_raw_text_for_non_json_body(fake_device, identity, body) -> None:
    fake_device.body = body
    async with fake_device.client() as client:
        response = await client.set_light(identity, 50, 0x00FF00)

    assert response.is_json is False
    assert response.body == body


@pytest.mark.asyncio
async def test_send_rejected_status_raises_with_body(fake_device, identity) -> None:
    fake_device.status = 500
    fake_device.body = "sign error"
    async with fake_device.client() as client:
        with pytest.raises(DeviceRejected) as excinfo:
            await client.toggle_x(identity, False)

    assert excinfo.value.status_code == 500
    assert excinfo.value.body == "sign error"
    assert excinfo.value.address == identity.address


@pytest.mark.asyncio
async def test_send_times_out_as_unreachable(fake_device, identity) -> None:
    async def _hang(request, envelope):
        await asyncio.sleep(5)

    fake_device.on_request = _hang
    started = time.perf_counter()
    async with fake_device.client(timeout=0.05) as client:
        with pytest.raises(DeviceUnreachable):
            await client.toggle_x(identity, True)
    assert time.perf_counter() - started < 1.0


@pytest.mark.asyncio
async def test_per_call_timeout_overrides_default(fake_device, identity) -> None:
    async def _hang(request, envelope):
        await asyncio.sleep(5)

    fake_device.on_request = _hang
    async with fake_device.client(timeout=30.0) as client:
        with pytest.raises(DeviceUnreachable):
            await client.send(
                identity.address, identity.secret, NAMESPACE_LIGHT, "SET", {}, timeout=0.05
            )


@pytest.mark.asyncio
async def test_connection_error_is_unreachable(identity) -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with MerossHttpClient(transport=httpx.MockTransport(_refuse)) as client:
        with pytest.raises(DeviceUnreachable, match="connection refused"):
            await client.toggle_x(identity, True)


@pytest.mark.asyncio
async def test_dry_run_sends_nothing(fake_device, identity) -> None:
    client = MerossHttpClient(transport=httpx.MockTransport(fake_device.handler), dry_run=True)
    async with client:
        response = await client.toggle_x(identity, True)
    assert response.status_code == 200
    assert fake_device.requests == []
