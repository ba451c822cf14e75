"""Inference dispatcher: runs the provider fallback chain and prices the result."""

from __future__ import annotations

import logging

from sparecompute.config import DEFAULT_BASE_RATE
from sparecompute.providers import Provider, ProviderError
from sparecompute.schemas import WorkItem, WorkResult

logger = logging.getLogger(__name__)


def count_tokens(text: str) -> int:
    """Coarse token count: one token per character."""
    return len(text)


def compute_cost(token_count: int, base_rate: float = DEFAULT_BASE_RATE) -> float:
    """Price a completion. Never negative."""
    if token_count < 0 or base_rate < 0:
        raise ValueError("token_count and base_rate must be non-negative")
    return token_count * base_rate


class InferenceDispatcher:
    """Turns work items into priced results.

    ``handle`` never raises: a failing provider falls through to the next
    one, and a failure of the whole chain becomes ``WorkResult.error_message``.
    """

    def __init__(self, providers: list[Provider], base_rate: float = DEFAULT_BASE_RATE):
        if not providers:
            raise ValueError("At least one provider is required")
        self.providers = list(providers)
        self.base_rate = base_rate

    async def handle(self, item: WorkItem) -> WorkResult:
        """Process one work item."""
        try:
            text, provider = await self._run_chain(item)
            tokens = count_tokens(text)
            result = WorkResult(
                response_text=text,
                token_count=tokens,
                cost=compute_cost(tokens, self.base_rate),
                model=item.model_name,
                provider=provider.name,
            )
        except Exception as e:
            logger.error(f"Inference request {item.request_id} failed: {e}", exc_info=True)
            return WorkResult(error_message=str(e) or e.__class__.__name__)

        logger.info(
            f"Completed request {item.request_id} via {result.provider}: "
            f"tokens={result.token_count}, cost={result.cost:.6f}"
        )
        return result

    async def _run_chain(self, item: WorkItem) -> tuple[str, Provider]:
        """Return the first completion and the provider that produced it.

        Any failure moves on to the next provider. When every provider
        fails, the last error is raised.
        """
        last_error: Exception = ProviderError("No provider produced a result")
        for provider in self.providers:
            if not provider.available:
                continue
            try:
                return await provider.complete(item), provider
            except ProviderError as e:
                logger.warning(f"Provider {provider.name} failed for request {item.request_id}, falling back: {e}")
                last_error = e
            except Exception as e:
                logger.error(f"Provider {provider.name} raised for request {item.request_id}: {e}", exc_info=True)
                last_error = e
        raise last_error
