"""One-shot HTTP exchanges with the broker: registration and earnings."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from sparecompute.config import DEFAULT_BASE_RATE, DEFAULT_BROKER_URL, DEFAULT_CAPABILITIES
from sparecompute.schemas import Capability, PluginIdentity

logger = logging.getLogger(__name__)


class RegistrationError(Exception):
    """Raised when the broker rejects or cannot process a registration."""

    pass


def build_registration_payload(
    capability: Capability,
    pricing: float,
    capabilities: list[str],
) -> dict[str, Any]:
    """Build the body of a registration request."""
    gpu_info = None
    if capability.gpu_descriptor:
        gpu_info = {
            "gpu": capability.gpu_descriptor,
            "vram": capability.gpu_memory or "Unknown",
        }

    return {
        "gpuInfo": gpu_info,
        "localEndpoint": capability.local_endpoint,
        "pricing": pricing,
        "capabilities": list(capabilities),
    }


class RegistrationClient:
    """Obtains a plugin identity from the broker."""

    def __init__(
        self,
        broker_url: str = DEFAULT_BROKER_URL,
        pricing: float = DEFAULT_BASE_RATE,
        capabilities: list[str] | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.broker_url = broker_url.rstrip("/")
        self.pricing = pricing
        self.capabilities = list(capabilities) if capabilities is not None else list(DEFAULT_CAPABILITIES)
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def register(self, capability: Capability) -> PluginIdentity:
        """Register this agent and return the identity issued by the broker.

        Raises:
            RegistrationError: the broker is unreachable, answered with a
                non-success status, or rejected the payload.
        """
        payload = build_registration_payload(capability, self.pricing, self.capabilities)
        url = f"{self.broker_url}/plugin/register"

        try:
            async with self._client() as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Registration request failed: {e}")
            raise RegistrationError(f"Broker unavailable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            raise RegistrationError(f"Broker returned an invalid response (HTTP {response.status_code})")

        if not response.is_success or not body.get("success"):
            message = body.get("error") or f"Registration rejected (HTTP {response.status_code})"
            logger.error(f"Registration rejected: {message}")
            raise RegistrationError(message)

        try:
            identity = PluginIdentity.model_validate(body)
        except ValueError as e:
            raise RegistrationError("Broker response is missing pluginId or connectionToken") from e

        logger.info(f"Registered as plugin {identity.plugin_id}")
        return identity

    async def fetch_earnings(self, plugin_id: str) -> dict[str, Any]:
        """Return the broker's earnings record for plugin_id.

        Errors propagate; callers that face a UI degrade them to zero.
        """
        async with self._client() as client:
            response = await client.get(f"{self.broker_url}/plugin/earnings/{plugin_id}")
            response.raise_for_status()
            return response.json()
