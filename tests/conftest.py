import json
from typing import Any, Callable, List, Optional

import httpx
import pytest

from meross_lan_bridge.protocol import DeviceIdentity, MerossHttpClient


class FakeDevice:
    """Records envelopes POSTed to /config and answers with a canned reply."""

    def __init__(self, status: int = 200, body: Any = None) -> None:
        self.status = status
        self.body = body if body is not None else {}
        self.requests: List[httpx.Request] = []
        self.envelopes: List[dict] = []
        self.on_request: Optional[Callable[[httpx.Request, dict], Any]] = None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        envelope = json.loads(request.content.decode())
        self.requests.append(request)
        self.envelopes.append(envelope)
        if self.on_request is not None:
            override = self.on_request(request, envelope)
            if hasattr(override, "__await__"):
                override = await override
            if isinstance(override, httpx.Response):
                return override
        if isinstance(self.body, str):
            return httpx.Response(self.status, text=self.body)
        return httpx.Response(self.status, json=self.body)

    def namespaces(self) -> List[str]:
        return [envelope["header"]["namespace"] for envelope in self.envelopes]

    def payloads(self, namespace: Optional[str] = None) -> List[dict]:
        return [
            envelope["payload"]
            for envelope in self.envelopes
            if namespace is None or envelope["header"]["namespace"] == namespace
        ]

    def client(self, timeout: float = 1.0) -> MerossHttpClient:
        return MerossHttpClient(timeout=timeout, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def fake_device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def identity() -> DeviceIdentity:
    return DeviceIdentity(address="192.168.1.50", secret="shared-key", channel=0)
