"""Tests for the registration client."""

import json

import httpx
import pytest

from sparecompute.registration import (
    RegistrationClient,
    RegistrationError,
    build_registration_payload,
)
from sparecompute.schemas import Capability


def _client(handler) -> RegistrationClient:
    return RegistrationClient(
        broker_url="http://broker.test/api/",
        pricing=0.0002,
        capabilities=["mistral-7b"],
        transport=httpx.MockTransport(handler),
    )


class TestPayload:
    def test_payload_with_gpu(self):
        capability = Capability(
            gpu_descriptor="NVIDIA GeForce RTX 4090",
            gpu_memory="24564 MiB",
            local_endpoint="http://localhost:1234/v1",
        )
        payload = build_registration_payload(capability, 0.0001, ["gpt-4"])
        assert payload == {
            "gpuInfo": {"gpu": "NVIDIA GeForce RTX 4090", "vram": "24564 MiB"},
            "localEndpoint": "http://localhost:1234/v1",
            "pricing": 0.0001,
            "capabilities": ["gpt-4"],
        }

    def test_payload_without_gpu(self):
        payload = build_registration_payload(Capability(), 0.0001, [])
        assert payload["gpuInfo"] is None
        assert payload["localEndpoint"] is None


class TestRegister:
    async def test_success_returns_identity(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["method"] = request.method
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "pluginId": "p-1", "connectionToken": "t-1"})

        identity = await _client(handler).register(Capability(gpu_descriptor="GPU"))

        assert identity.plugin_id == "p-1"
        assert identity.connection_token == "t-1"
        assert captured["method"] == "POST"
        assert captured["url"] == "http://broker.test/api/plugin/register"
        assert captured["body"]["pricing"] == 0.0002
        assert captured["body"]["capabilities"] == ["mistral-7b"]

    async def test_rejection_carries_broker_message(self):
        client = _client(lambda request: httpx.Response(200, json={"success": False, "error": "bad capability"}))

        with pytest.raises(RegistrationError, match="bad capability"):
            await client.register(Capability())

    async def test_non_success_status(self):
        client = _client(lambda request: httpx.Response(500, json={"success": False}))

        with pytest.raises(RegistrationError, match="HTTP 500"):
            await client.register(Capability())

    async def test_invalid_body(self):
        client = _client(lambda request: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(RegistrationError, match="invalid response"):
            await client.register(Capability())

    async def test_missing_credentials(self):
        client = _client(lambda request: httpx.Response(200, json={"success": True, "pluginId": "p-1"}))

        with pytest.raises(RegistrationError, match="missing"):
            await client.register(Capability())

    async def test_broker_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RegistrationError, match="unavailable"):
            await _client(handler).register(Capability())


class TestEarnings:
    async def test_fetch_earnings(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/plugin/earnings/p-1"
            return httpx.Response(200, json={"earnings": 1.25})

        assert await _client(handler).fetch_earnings("p-1") == {"earnings": 1.25}

    async def test_fetch_earnings_error_propagates(self):
        client = _client(lambda request: httpx.Response(404))

        with pytest.raises(httpx.HTTPStatusError):
            await client.fetch_earnings("p-1")
