"""OpenAI embeddings client used behind the embedding cache.

Requests go through one pooled ``httpx.AsyncClient``. Rate limits, server errors
and transport failures are retried with bounded exponential backoff; other
non-2xx responses fail immediately. Cancelling the awaiting task aborts the
in-flight HTTP request.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from aida_libs.common.errors import ProviderError

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS = {408, 409, 429, 500, 502, 503, 504}


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


class OpenAIEmbeddingClient:
    """OpenAI client for generating embeddings."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        dimensions: Optional[int] = None,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.dimensions = dimensions
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def embed(self, text: str) -> List[float]:
        """Get embedding for a single text."""
        return (await self.embed_batch([text]))[0]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Batch embeddings for multiple inputs in one request."""
        if not self.api_key:
            raise ProviderError("OpenAI API key not configured", retryable=False)

        payload = {"model": self.model, "input": list(texts), "encoding_format": "float"}
        if self.dimensions:
            payload["dimensions"] = self.dimensions

        try:
            response = await self._client.post(
                f"{self.base_url}/embeddings",
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=payload,
            )
        except httpx.HTTPError as e:
            logger.warning("Embedding request failed", error=str(e), error_type=type(e).__name__)
            raise ProviderError(f"Embedding transport error: {e}") from e

        if response.status_code != 200:
            logger.error(
                "OpenAI embedding failed",
                status=response.status_code,
                response=response.text[:200],
            )
            raise ProviderError(
                f"Embedding provider returned {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code in RETRYABLE_STATUS,
            )

        try:
            data = response.json()["data"]
            embeddings = [item["embedding"] for item in sorted(data, key=lambda d: d.get("index", 0))]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError("Malformed embedding response", retryable=False) from e

        logger.debug(
            "Embeddings generated",
            model=self.model,
            inputs=len(texts),
            embedding_dim=len(embeddings[0]) if embeddings else 0,
        )
        return embeddings

    async def aclose(self) -> None:
        await self._client.aclose()
