"""
Model Provider - Chat completion client contract.

The Usage Guard only needs "prompt in, text out". The HTTP client is bounded by
the provider timeout, so a slow upstream surfaces as ProviderTimeoutError and
other transport and HTTP failures as ProviderError.
"""

import re
from typing import Protocol

import httpx
from structlog import get_logger

from tokenguard.config import settings
from tokenguard.exceptions import ProviderError, ProviderTimeoutError
from tokenguard.models.domain import ModelCostEntry

logger = get_logger(__name__)

_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>")


def strip_reasoning(text: str) -> str:
    """Remove <think>...</think> blocks some upstream models emit."""
    return _THINK_BLOCK.sub("", text).strip()


class ModelProvider(Protocol):
    """Anything that can turn a prompt into a completion."""

    async def complete(self, model: ModelCostEntry, prompt: str) -> str:
        """
        Produce a completion.

        Raises:
            ProviderError: Upstream failure
        """
        ...


class OpenAICompatibleProvider:
    """Client for an OpenAI-compatible /chat/completions endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds or settings.provider_timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def complete(self, model: ModelCostEntry, prompt: str) -> str:
        payload = {
            "model": model.upstream_model,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            response = await self.http_client.post(
                f"{self.base_url}/chat/completions", json=payload, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "provider_http_error",
                model_id=model.model_id,
                upstream_model=model.upstream_model,
                status_code=e.response.status_code,
            )
            raise ProviderError(f"upstream returned {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            logger.error(
                "provider_timeout",
                model_id=model.model_id,
                timeout_seconds=self.timeout_seconds,
                error=type(e).__name__,
            )
            raise ProviderTimeoutError(self.timeout_seconds) from e
        except httpx.HTTPError as e:
            logger.error(
                "provider_transport_error",
                model_id=model.model_id,
                error=str(e),
            )
            raise ProviderError(f"transport failure: {type(e).__name__}") from e

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError("malformed completion response") from e

        if not isinstance(content, str):
            raise ProviderError("completion content is not text")

        return strip_reasoning(content)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
