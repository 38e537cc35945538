"""
Two-tier embedding cache.

Provides:
- Level 1: bounded in-process map (FIFO eviction, default 1000 entries)
- Level 2: external key/value store with TTL (default 24h)
- Level 3: generation through the embedding provider on a full miss
- Batch generation with chunking, inter-chunk delay and per-item fallback

Keys are SHA-256 digests of the model id and text. A vector is only ever cached
after its length has been checked against the configured dimension.
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
import structlog

from aida_libs.caching.kv_store import CacheStore, FifoMemoryCache
from aida_libs.common.errors import InvalidEmbeddingError, ProviderError, ValidationError

logger = structlog.get_logger(__name__)


class EmbeddingProvider(Protocol):
    """External embedding capability."""

    async def embed(self, text: str) -> List[float]:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        ...


@dataclass(frozen=True)
class EmbeddingCacheEntry:
    key: str
    vector: Tuple[float, ...]
    inserted_at: datetime


@dataclass(frozen=True)
class EmbeddingResult:
    """Vector returned by ``EmbeddingCache.embed``."""

    vector: List[float]
    cached: bool
    key: str


@dataclass
class EmbeddingCacheStats:
    """Cache statistics for monitoring."""

    total_requests: int = 0
    memory_hits: int = 0
    store_hits: int = 0
    coalesced: int = 0
    misses: int = 0
    generated: int = 0
    invalid: int = 0
    errors: int = 0
    batch_fallbacks: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate overall cache hit rate."""
        if self.total_requests == 0:
            return 0.0
        return (self.memory_hits + self.store_hits + self.coalesced) / self.total_requests

    def to_dict(self) -> dict:
        data = dict(self.__dict__)
        data["hit_rate"] = round(self.hit_rate, 4)
        return data


class EmbeddingCache:
    """
    Content-addressed embedding cache in front of an embedding provider.

    Concurrent misses for the same key share one provider call, and so do
    repeats of a text within one batch.

    Usage:
        cache = EmbeddingCache(provider, model_id="text-embedding-3-small", dimension=1536,
                               store=RedisCacheStore(redis_client, namespace="aida:emb"))
        result = await cache.embed("What is the refund policy?")
        result.cached  # False on first call, True afterwards
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        model_id: str,
        dimension: int,
        store: Optional[CacheStore] = None,
        capacity: int = 1000,
        ttl_seconds: int = 86400,
        batch_size: int = 100,
        batch_delay_seconds: float = 1.0,
        max_content_chars: int = 8000,
    ):
        """
        Initialize embedding cache.

        Args:
            provider: Embedding capability used on a full miss
            model_id: Model identifier, part of every cache key
            dimension: Declared vector length for the model
            store: Optional external key/value tier
            capacity: In-process tier size
            ttl_seconds: External tier TTL
            batch_size: Provider batch limit
            batch_delay_seconds: Pause between batch chunks
            max_content_chars: Texts are truncated to this length before hashing
        """
        self.provider = provider
        self.model_id = model_id
        self.dimension = dimension
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.max_content_chars = max_content_chars
        self._memory: FifoMemoryCache[str, EmbeddingCacheEntry] = FifoMemoryCache(capacity)
        self._pending: Dict[str, "asyncio.Future[Tuple[Tuple[float, ...], bool]]"] = {}
        self._stats = EmbeddingCacheStats()

    def cache_key(self, text: str) -> str:
        """SHA-256 of model id and text."""
        return hashlib.sha256(f"{self.model_id}\x1f{text}".encode("utf-8")).hexdigest()

    def _prepare(self, text: str) -> str:
        """
        Strip and truncate to ``max_content_chars``.

        The truncated text is both hashed and embedded, so texts that differ
        only past the limit share one key and one vector. The provider would
        reject or truncate longer input anyway.
        """
        if not text or not text.strip():
            raise ValidationError("Cannot embed empty text")
        return text.strip()[: self.max_content_chars]

    def _validate(self, vector: Sequence[float]) -> Tuple[float, ...]:
        """Check vector length and finiteness against the configured model."""
        if vector is None or len(vector) != self.dimension:
            actual = 0 if vector is None else len(vector)
            self._stats.invalid += 1
            logger.error(
                "Invalid embedding rejected",
                security_event=True,
                model=self.model_id,
                expected_dimension=self.dimension,
                actual_dimension=actual,
            )
            raise InvalidEmbeddingError(
                f"Embedding dimension {actual} does not match expected {self.dimension}",
                expected=self.dimension,
                actual=actual,
            )
        array = np.asarray(vector, dtype=float)
        if not np.all(np.isfinite(array)):
            self._stats.invalid += 1
            logger.error(
                "Invalid embedding rejected",
                security_event=True,
                model=self.model_id,
                reason="non_finite_values",
            )
            raise InvalidEmbeddingError("Embedding contains non-finite values")
        return tuple(float(x) for x in array)

    def _remember(self, key: str, vector: Tuple[float, ...]) -> None:
        self._memory.put(
            key,
            EmbeddingCacheEntry(key=key, vector=vector, inserted_at=datetime.now(timezone.utc)),
        )

    async def _read_store(self, key: str) -> Optional[Tuple[float, ...]]:
        if self.store is None:
            return None
        try:
            raw = await self.store.get(key)
        except Exception as e:
            logger.warning("Embedding store read failed", error=str(e), key=key[:12])
            return None
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            vector = payload["vector"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Corrupt embedding cache entry ignored", error=str(e), key=key[:12])
            return None
        if len(vector) != self.dimension:
            logger.error(
                "Stored embedding has wrong dimension, ignoring",
                security_event=True,
                key=key[:12],
                expected_dimension=self.dimension,
                actual_dimension=len(vector),
            )
            return None
        return tuple(float(x) for x in vector)

    async def _write_store(self, key: str, vector: Tuple[float, ...]) -> None:
        if self.store is None:
            return
        payload = json.dumps({
            "vector": list(vector),
            "model": self.model_id,
            "inserted_at": datetime.now(timezone.utc).isoformat(),
        })
        try:
            await self.store.put(key, payload, self.ttl_seconds)
        except Exception as e:
            logger.warning("Embedding store write failed", error=str(e), key=key[:12])

    async def _load_or_generate(self, key: str, text: str) -> Tuple[Tuple[float, ...], bool]:
        stored = await self._read_store(key)
        if stored is not None:
            self._stats.store_hits += 1
            self._remember(key, stored)
            return stored, True

        self._stats.misses += 1
        raw = await self.provider.embed(text)
        vector = self._validate(raw)
        self._stats.generated += 1
        self._remember(key, vector)
        await self._write_store(key, vector)
        return vector, False

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Get the embedding for a text, generating it on a full miss.

        Args:
            text: Text to embed

        Returns:
            EmbeddingResult with the vector and whether it came from a cache

        Raises:
            ValidationError: Empty text
            ProviderError: Provider failed
            InvalidEmbeddingError: Provider returned a vector of the wrong dimension
        """
        prepared = self._prepare(text)
        key = self.cache_key(prepared)
        self._stats.total_requests += 1

        entry = self._memory.get(key)
        if entry is not None:
            self._stats.memory_hits += 1
            return EmbeddingResult(vector=list(entry.vector), cached=True, key=key)

        pending = self._pending.get(key)
        if pending is not None:
            self._stats.coalesced += 1
            vector, _ = await asyncio.shield(pending)
            return EmbeddingResult(vector=list(vector), cached=True, key=key)

        task = asyncio.ensure_future(self._load_or_generate(key, prepared))
        self._pending[key] = task
        task.add_done_callback(lambda _: self._pending.pop(key, None))
        try:
            vector, cached = await asyncio.shield(task)
        except (ProviderError, InvalidEmbeddingError):
            self._stats.errors += 1
            raise
        return EmbeddingResult(vector=list(vector), cached=cached, key=key)

    async def embed_batch(self, texts: Sequence[str]) -> List[Optional[EmbeddingResult]]:
        """
        Embed many texts, aligned with the input.

        Cached texts are served first. Misses go to the provider in chunks of
        ``batch_size`` with ``batch_delay_seconds`` between chunks; a failed
        chunk is retried item by item. Entries that still fail are ``None``.

        Args:
            texts: Texts to embed

        Returns:
            List of EmbeddingResult or None per input text
        """
        results: List[Optional[EmbeddingResult]] = [None] * len(texts)
        misses: List[Tuple[str, str]] = []
        positions: Dict[str, List[int]] = {}

        for index, text in enumerate(texts):
            try:
                prepared = self._prepare(text)
            except ValidationError:
                logger.debug("Skipping empty text in batch", index=index)
                continue
            key = self.cache_key(prepared)
            self._stats.total_requests += 1
            if key in positions:
                # Repeated text in this batch, generated once
                self._stats.coalesced += 1
                positions[key].append(index)
                continue
            entry = self._memory.get(key)
            if entry is not None:
                self._stats.memory_hits += 1
                results[index] = EmbeddingResult(vector=list(entry.vector), cached=True, key=key)
                continue
            stored = await self._read_store(key)
            if stored is not None:
                self._stats.store_hits += 1
                self._remember(key, stored)
                results[index] = EmbeddingResult(vector=list(stored), cached=True, key=key)
                continue
            positions[key] = [index]
            misses.append((key, prepared))

        chunks = [misses[i:i + self.batch_size] for i in range(0, len(misses), self.batch_size)]
        for chunk_number, chunk in enumerate(chunks):
            if chunk_number > 0 and self.batch_delay_seconds > 0:
                await asyncio.sleep(self.batch_delay_seconds)
            try:
                await self._embed_chunk(chunk, positions, results)
            except ProviderError as e:
                self._stats.batch_fallbacks += 1
                logger.warning(
                    "Batch embedding failed, falling back to sequential generation",
                    error=str(e),
                    chunk=chunk_number,
                    chunk_size=len(chunk),
                )
                await self._embed_sequentially(chunk, positions, results)

        logger.debug(
            "Batch embedding complete",
            requested=len(texts),
            generated=len(misses),
            failed=sum(1 for r in results if r is None),
        )
        return results

    def _accept(
        self,
        key: str,
        vector: Tuple[float, ...],
        positions: Dict[str, List[int]],
        results: List[Optional[EmbeddingResult]],
    ) -> None:
        for index in positions[key]:
            results[index] = EmbeddingResult(vector=list(vector), cached=False, key=key)

    async def _embed_chunk(
        self,
        chunk: List[Tuple[str, str]],
        positions: Dict[str, List[int]],
        results: List[Optional[EmbeddingResult]],
    ) -> None:
        vectors = await self.provider.embed_batch([text for _, text in chunk])
        if len(vectors) != len(chunk):
            raise ProviderError(
                f"Provider returned {len(vectors)} embeddings for {len(chunk)} inputs"
            )
        for (key, _), raw in zip(chunk, vectors):
            self._stats.misses += 1
            try:
                vector = self._validate(raw)
            except InvalidEmbeddingError:
                self._stats.errors += 1
                continue
            self._stats.generated += 1
            self._remember(key, vector)
            await self._write_store(key, vector)
            self._accept(key, vector, positions, results)

    async def _embed_sequentially(
        self,
        chunk: List[Tuple[str, str]],
        positions: Dict[str, List[int]],
        results: List[Optional[EmbeddingResult]],
    ) -> None:
        for key, text in chunk:
            try:
                self._stats.misses += 1
                vector = self._validate(await self.provider.embed(text))
            except (ProviderError, InvalidEmbeddingError) as e:
                self._stats.errors += 1
                logger.warning("Sequential embedding failed", indexes=positions[key], error=str(e))
                continue
            self._stats.generated += 1
            self._remember(key, vector)
            await self._write_store(key, vector)
            self._accept(key, vector, positions, results)

    def __contains__(self, text: str) -> bool:
        """True when the text is in the in-process tier."""
        return self.cache_key(text.strip()[: self.max_content_chars]) in self._memory

    @property
    def memory_size(self) -> int:
        return len(self._memory)

    def get_stats(self) -> EmbeddingCacheStats:
        """Get cache statistics."""
        return self._stats

    def clear(self) -> None:
        """Drop the in-process tier."""
        self._memory.clear()
