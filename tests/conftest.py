"""
Pytest configuration and fixtures for engine tests.

Provides shared fixtures for:
- Fake Redis client (fakeredis)
- Deterministic embedding and completion providers
- Wired engine components (windows, embeddings, knowledge, aggregator)
"""

import asyncio
import hashlib
import re
from typing import List, Optional, Sequence

import pytest

from aida_libs.common.errors import ProviderError


class FakeEmbeddingProvider:
    """Bag-of-words vectors: texts sharing words get high cosine similarity."""

    def __init__(self, dimension: int = 64):
        self.dimension = dimension
        self.calls = 0
        self.batch_calls = 0
        self.batch_inputs: List[List[str]] = []
        self.delay = 0.0
        self.fail = False
        self.fail_batch = False
        self.output_dimension: Optional[int] = None

    def vector_for(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dimension
            vector[bucket] += 1.0
        if not any(vector):
            vector[0] = 1.0
        if self.output_dimension is not None:
            vector = (vector * (self.output_dimension // self.dimension + 1))[: self.output_dimension]
        return vector

    async def embed(self, text: str) -> List[float]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ProviderError("embedding provider unavailable")
        return self.vector_for(text)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.batch_calls += 1
        self.batch_inputs.append(list(texts))
        if self.fail or self.fail_batch:
            raise ProviderError("embedding batch endpoint unavailable")
        return [self.vector_for(text) for text in texts]


class FakeCompletionProvider:
    """Completion provider returning canned text, optionally slow or failing first."""

    def __init__(self, text: str = "We are open from 9am to 6pm, Monday to Saturday."):
        self.text = text
        self.calls = 0
        self.delay = 0.0
        self.failures: List[Exception] = []
        self.cancelled = False
        self.last_system_prompt: Optional[str] = None
        self.last_messages = None

    async def complete(self, system_prompt, messages, options):
        from aida_api.llm.completion import Completion

        self.calls += 1
        self.last_system_prompt = system_prompt
        self.last_messages = list(messages)
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.failures:
            raise self.failures.pop(0)
        return Completion(
            text=self.text,
            token_usage={"prompt_tokens": 120, "completion_tokens": 20, "total_tokens": 140},
            model="fake-model",
        )


@pytest.fixture
async def redis_client():
    """
    Provide fakeredis client for testing.

    This avoids requiring actual Redis server during tests.
    """
    from fakeredis import aioredis as fakeredis

    client = fakeredis.FakeRedis(decode_responses=True)

    yield client

    await client.flushdb()
    await client.aclose()


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Run every test in test mode with freshly loaded settings."""
    from aida_libs.common.settings import get_settings

    monkeypatch.setenv("AIDA_APP_ENV", "test")
    monkeypatch.delenv("AIDA_REDIS_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def embedding_provider():
    return FakeEmbeddingProvider(dimension=64)


@pytest.fixture
def completion_provider():
    return FakeCompletionProvider()


@pytest.fixture
def analyzer():
    from aida_libs.memory.text_analyzer import KeywordTextAnalyzer

    return KeywordTextAnalyzer()


@pytest.fixture
def context_store(redis_client):
    from aida_libs.memory.store import RedisContextStore

    return RedisContextStore(redis_client, namespace="test")


@pytest.fixture
def embeddings(embedding_provider):
    from aida_libs.caching.embedding_cache import EmbeddingCache

    return EmbeddingCache(
        embedding_provider,
        model_id="fake-embedding",
        dimension=64,
        batch_delay_seconds=0,
    )


@pytest.fixture
def windows(analyzer, context_store):
    from aida_libs.memory.context_window import ContextWindowStore

    return ContextWindowStore(analyzer, store=context_store, max_turns=20, max_context_tokens=8000)


@pytest.fixture
def knowledge_base(context_store, embeddings, analyzer):
    from aida_libs.memory.knowledge import KnowledgeBase

    return KnowledgeBase(context_store, embeddings, analyzer)


@pytest.fixture
def scoring():
    from aida_api.tools.hybrid_scoring import HybridScoringEngine

    return HybridScoringEngine(window_size=15)


@pytest.fixture
def retrieval_engine(context_store, embeddings, scoring, analyzer):
    from aida_api.tools.retrieval_engine import KnowledgeRetrievalEngine

    return KnowledgeRetrievalEngine(
        context_store,
        embeddings,
        scoring,
        analyzer=analyzer,
        similarity_threshold=0.5,
    )


@pytest.fixture
def aggregator(windows, embeddings, retrieval_engine, scoring, analyzer):
    from aida_api.tools.context_aggregator import ContextAggregator

    return ContextAggregator(windows, embeddings, retrieval_engine, scoring, analyzer)
