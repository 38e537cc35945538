"""
Tests for context aggregation.

Tests verify:
- Empty conversation with no knowledge gives zero confidence and no context
- Conversation, knowledge and entity sources are fused
- Query analysis (references, expansions, filters, optimized query)
- Strategy recommendation
- Failing sources degrade, integrity errors propagate
"""

from unittest.mock import AsyncMock

import pytest

from aida_api.tools.context_aggregator import ContextAggregator
from aida_libs.common.errors import InvalidEmbeddingError, ValidationError


@pytest.mark.asyncio
async def test_refund_policy_on_empty_conversation(aggregator):
    """Test a query with no turns and no knowledge yields nothing."""

    context = await aggregator.get_context("what is the refund policy", "conv-1", "biz-1")

    assert context.confidence == 0
    assert context.relevant_context == []
    assert context.ranked == []


@pytest.mark.asyncio
async def test_empty_query_rejected(aggregator):
    with pytest.raises(ValidationError):
        await aggregator.get_context("   ", "conv-1", "biz-1")


@pytest.mark.asyncio
async def test_conversation_and_entity_matches(aggregator, windows):
    """Test a repeated question matches the earlier turn and the named entity."""

    window = await windows.get_or_create("biz-1", "conv-2")
    windows.add_turn(window, "Do you deliver to Porto on weekends?", "Yes we do.")
    windows.add_turn(window, "My blender arrived broken", "Sorry about that.")

    context = await aggregator.get_context("Do you deliver to Porto on weekends?", "conv-2", "biz-1")

    assert len(context.conversation_matches) == 1
    assert context.conversation_matches[0].content.startswith("User: Do you deliver to Porto")
    assert [m.payload.name for m in context.entity_matches] == ["Porto"]
    assert context.ranked[0].source_type == "conversation"
    assert context.relevant_context[0] == context.ranked[0].content
    assert context.confidence >= 0.7


@pytest.mark.asyncio
async def test_knowledge_documents_included(aggregator, knowledge_base):
    """Test knowledge nodes matching the query are returned as documents."""

    node = await knowledge_base.create_node(
        "biz-1", "policy", "Refund policy", "Refunds are issued within 30 days of purchase."
    )

    context = await aggregator.get_context("what is the refund policy", "conv-3", "biz-1")

    assert context.document_ids == [node.id]
    assert any("Refunds are issued" in text for text in context.relevant_context)
    assert context.confidence > 0.5


@pytest.mark.asyncio
async def test_analyze_query(aggregator, windows):
    """Test references, expansions, filters and the optimized query."""

    window = await windows.get_or_create("biz-1", "conv-4")
    windows.add_turn(window, "I need a replacement filter for the Aqua purifier", "We have it in stock.")

    analysis = aggregator.analyze_query("how much does the Aqua filter cost", window)

    assert analysis.referenced_entities == ["Aqua"]
    assert "filter" in analysis.referenced_topics
    assert "filter" not in analysis.expansions
    assert "replacement" in analysis.expansions
    assert len(analysis.expansions) <= 5
    assert analysis.filters.recency == "recent"
    assert analysis.filters.topics == window.topics
    assert analysis.optimized_query.startswith("how much does the Aqua filter cost ")
    assert analysis.has_references is True


@pytest.mark.parametrize(
    "query,strategy",
    [
        ("pricing plans", "keyword"),
        ("how do I track my order?", "vector"),
        ("I want to know more about the premium plan features for teams", "hybrid"),
    ],
)
def test_recommend_strategy(aggregator, query, strategy):
    assert aggregator.recommend_strategy(query) == strategy


@pytest.mark.asyncio
async def test_failing_searcher_degrades(windows, embeddings, scoring, analyzer):
    """Test a failing knowledge source is dropped, not fatal."""

    searcher = AsyncMock()
    searcher.hybrid_search.side_effect = RuntimeError("vector index offline")
    aggregator = ContextAggregator(windows, embeddings, searcher, scoring, analyzer)

    context = await aggregator.get_context("what is the refund policy", "conv-5", "biz-1")

    assert context.document_matches == []
    assert context.confidence == 0


@pytest.mark.asyncio
async def test_provider_failure_falls_back_to_recent_turns(aggregator, windows, embedding_provider):
    """Test turns are still returned, unscored, when embeddings are unavailable."""

    window = await windows.get_or_create("biz-1", "conv-6")
    for i in range(7):
        windows.add_turn(window, f"question number {i}", "answer")
    embedding_provider.fail = True

    context = await aggregator.get_context("another question", "conv-6", "biz-1")

    assert len(context.conversation_matches) == 5
    assert all(m.raw_score == 0.0 for m in context.conversation_matches)


@pytest.mark.asyncio
async def test_invalid_embedding_propagates(windows, scoring, analyzer, embedding_provider):
    """Test malformed provider vectors abort aggregation."""
    from aida_api.tools.retrieval_engine import KnowledgeRetrievalEngine
    from aida_libs.caching.embedding_cache import EmbeddingCache

    embedding_provider.output_dimension = 32
    embeddings = EmbeddingCache(embedding_provider, model_id="fake", dimension=64, batch_delay_seconds=0)
    aggregator = ContextAggregator(
        windows, embeddings, KnowledgeRetrievalEngine(None, embeddings, scoring), scoring, analyzer
    )
    window = await windows.get_or_create("biz-1", "conv-7")
    windows.add_turn(window, "hello there", "hi")

    with pytest.raises(InvalidEmbeddingError):
        await aggregator.get_context("hello again", "conv-7", "biz-1")
