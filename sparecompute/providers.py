"""Inference providers tried, in order, by the dispatcher."""

from __future__ import annotations

import logging

import httpx

from sparecompute.schemas import WorkItem

logger = logging.getLogger(__name__)

# Completion defaults
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TIMEOUT = 60.0  # seconds


class ProviderError(Exception):
    """Raised when a provider cannot produce a completion."""

    pass


class Provider:
    """Base class for a link in the fallback chain."""

    name = "provider"

    @property
    def available(self) -> bool:
        return True

    async def complete(self, item: WorkItem) -> str:
        raise NotImplementedError


class LocalEndpointProvider(Provider):
    """Chat completions against a local OpenAI-compatible server."""

    name = "local-endpoint"

    def __init__(
        self,
        endpoint: str | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = endpoint
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self._transport = transport

    @property
    def available(self) -> bool:
        return bool(self.endpoint)

    async def complete(self, item: WorkItem) -> str:
        if not self.endpoint:
            raise ProviderError("No local endpoint configured")

        url = f"{self.endpoint.rstrip('/')}/chat/completions"
        payload = {
            "model": item.model_name,
            "messages": [{"role": "user", "content": item.prompt}],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            raise ProviderError(f"Local endpoint timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise ProviderError(f"Local endpoint returned error: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Local endpoint unavailable: {e}") from e
        except httpx.InvalidURL as e:
            raise ProviderError(f"Local endpoint URL is invalid: {e}") from e
        except ValueError as e:
            raise ProviderError("Local endpoint returned invalid JSON") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("Local endpoint response has no completion") from e

        if not isinstance(content, str):
            raise ProviderError("Local endpoint completion is not text")
        return content


class PlaceholderProvider(Provider):
    """Deterministic stand-in that always answers."""

    name = "placeholder"

    async def complete(self, item: WorkItem) -> str:
        return f'[Local Processing] Response to: "{item.prompt}" (Model: {item.model_name})'
