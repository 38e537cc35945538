"""
Tests for the request coordinator.

Tests verify:
- Successful pipeline runs every stage and persists the turn
- Duplicate in-flight requests share one execution
- Deadline expiry cancels the pipeline and returns a timeout result
- Validation, generation and unexpected failures map to result envelopes
- Persistence failures do not fail the request
- Memory context retrieval
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from tenacity import wait_none

from aida_api.composer.quality_gates import FALLBACK_MESSAGE, QualityControlPipeline
from aida_api.models import CustomerInfo, ResponseRequest
from aida_api.orchestrators.request_coordinator import (
    RequestCoordinator,
    build_request_coordinator,
    stable_hash,
)
from aida_libs.common.errors import PersistenceError, ProviderError, ValidationError
from aida_libs.common.settings import Settings
from aida_libs.memory.models import AssistantProfile

ALL_STAGES = ["load_context", "preprocess", "generate", "quality_gate", "format", "persist"]


@pytest.fixture
async def make_coordinator(aggregator, windows, embeddings, completion_provider, analyzer, context_store):
    await context_store.put_assistant(AssistantProfile(id="asst-1", business_id="biz-1", name="Lia"))

    def factory(**overrides):
        options = dict(
            aggregator=aggregator,
            windows=windows,
            embeddings=embeddings,
            completion=completion_provider,
            quality=QualityControlPipeline(),
            analyzer=analyzer,
            store=context_store,
            request_timeout_seconds=2.0,
            retry_wait=wait_none(),
        )
        options.update(overrides)
        return RequestCoordinator(**options)

    return factory


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


def make_request(message="What time do you open on Saturday?", **overrides):
    fields = dict(
        message=message,
        conversation_id="conv-1",
        assistant_id="asst-1",
        business_id="biz-1",
    )
    fields.update(overrides)
    return ResponseRequest(**fields)


@pytest.mark.asyncio
async def test_successful_response(coordinator, completion_provider, context_store, windows):
    """Test the full pipeline runs and the turn is stored."""

    result = await coordinator.generate_response(make_request())

    assert result.success is True
    assert result.error is None
    assert result.response.content.startswith(completion_provider.text)
    assert result.response.messages
    assert result.response.query_type == "question"
    assert result.response.token_usage["total_tokens"] == 140
    assert result.metadata.stages_completed == ALL_STAGES
    assert result.metadata.persisted is True
    assert result.metadata.fallback_used is False
    assert completion_provider.calls == 1

    window = await windows.get_or_create("biz-1", "conv-1")
    assert [t.user_text for t in window.turns] == ["What time do you open on Saturday?"]
    assert len(await context_store.list_turn_ids("biz-1", "conv-1")) == 1
    assert (await context_store.get_window("biz-1", "conv-1")).turns[0].system_text == result.response.content


@pytest.mark.asyncio
async def test_empty_context_confidence_escalates(coordinator):
    """Test a reply with no supporting context is flagged for a human."""

    result = await coordinator.generate_response(make_request())

    assert result.response.confidence == 0.4
    assert result.response.should_escalate is True
    assert result.metadata.context_confidence == 0.0


@pytest.mark.asyncio
async def test_duplicate_requests_share_one_execution(coordinator, completion_provider):
    """Test two requests 5ms apart for the same message make one LLM call."""

    completion_provider.delay = 0.2
    request = make_request("hello")

    first = asyncio.create_task(coordinator.generate_response(request))
    await asyncio.sleep(0.005)
    second = asyncio.create_task(coordinator.generate_response(request))
    results = await asyncio.gather(first, second)

    assert completion_provider.calls == 1
    assert results[0] is results[1]
    assert coordinator.get_stats().deduplicated == 1
    assert coordinator.in_flight_count() == 0


@pytest.mark.asyncio
async def test_same_message_after_completion_runs_again(coordinator, completion_provider):
    await coordinator.generate_response(make_request("hello"))
    await coordinator.generate_response(make_request("hello"))

    assert completion_provider.calls == 2


@pytest.mark.asyncio
async def test_different_conversations_not_deduplicated(coordinator, completion_provider):
    completion_provider.delay = 0.05

    await asyncio.gather(
        coordinator.generate_response(make_request("hello", conversation_id="conv-a")),
        coordinator.generate_response(make_request("hello", conversation_id="conv-b")),
    )

    assert completion_provider.calls == 2


@pytest.mark.asyncio
async def test_timeout_cancels_pipeline(make_coordinator, completion_provider):
    """Test the deadline cancels generation and returns a fallback."""

    completion_provider.delay = 1.0
    coordinator = make_coordinator(request_timeout_seconds=0.1)

    result = await coordinator.generate_response(make_request())

    assert result.success is False
    assert result.error.type == "timeout"
    assert result.error.retryable is True
    assert result.response.content == FALLBACK_MESSAGE
    assert result.response.should_escalate is True
    assert result.metadata.fallback_used is True
    assert result.metadata.stages_completed == ["load_context", "preprocess"]
    assert completion_provider.cancelled is True
    assert coordinator.get_stats().timeouts == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"message": "   "},
        {"message": "x" * 4001},
        {"business_id": ""},
        {"conversation_id": ""},
        {"assistant_id": ""},
    ],
)
async def test_validation_failures(coordinator, completion_provider, overrides):
    """Test invalid requests are rejected without calling the model."""

    fields = {"message": "hello"}
    fields.update(overrides)
    result = await coordinator.generate_response(make_request(**fields))

    assert result.success is False
    assert result.error.type == "validation"
    assert result.error.retryable is False
    assert result.response is None
    assert completion_provider.calls == 0


@pytest.mark.asyncio
async def test_unknown_assistant_rejected(coordinator, completion_provider):
    result = await coordinator.generate_response(make_request(assistant_id="asst-404"))

    assert result.error.type == "validation"
    assert result.response is None
    assert completion_provider.calls == 0


@pytest.mark.asyncio
async def test_assistant_of_other_business_rejected(coordinator):
    result = await coordinator.generate_response(make_request(business_id="biz-2"))

    assert result.success is False
    assert result.error.type == "validation"


@pytest.mark.asyncio
async def test_generation_failure_returns_fallback(coordinator, completion_provider):
    """Test exhausted retries produce a generation error with a fallback reply."""

    completion_provider.failures = [ProviderError("unavailable") for _ in range(3)]

    result = await coordinator.generate_response(make_request())

    assert result.success is False
    assert result.error.type == "generation"
    assert result.response.content == FALLBACK_MESSAGE
    assert result.metadata.fallback_used is True
    assert completion_provider.calls == 3


@pytest.mark.asyncio
async def test_unexpected_error_is_processing_error(coordinator, completion_provider):
    completion_provider.failures = [RuntimeError("boom")]

    result = await coordinator.generate_response(make_request())

    assert result.success is False
    assert result.error.type == "processing"
    assert result.response.content == FALLBACK_MESSAGE


@pytest.mark.asyncio
async def test_persistence_failure_still_succeeds(coordinator, context_store, monkeypatch):
    """Test a failing turn write is logged and the reply is still returned."""

    monkeypatch.setattr(context_store, "put_turn", AsyncMock(side_effect=PersistenceError("redis down")))

    result = await coordinator.generate_response(make_request())

    assert result.success is True
    assert result.metadata.persisted is False
    assert "persist" not in result.metadata.stages_completed
    assert coordinator.get_stats().persistence_failures == 1


@pytest.mark.asyncio
async def test_customer_name_and_history_reach_the_model(coordinator, completion_provider):
    """Test personalization and conversation history on a second message."""

    await coordinator.generate_response(make_request("Do you sell gift cards?"))
    result = await coordinator.generate_response(
        make_request("Can I use them online?", customer=CustomerInfo(name="Ana"))
    )

    assert result.response.content.startswith("Ana, ")
    assert "Name: Ana" in completion_provider.last_system_prompt
    assert [m.role for m in completion_provider.last_messages] == ["user", "assistant", "user"]
    assert completion_provider.last_messages[0].content == "Do you sell gift cards?"


@pytest.mark.asyncio
async def test_reply_split_by_assistant_limit(make_coordinator, context_store, completion_provider):
    await context_store.put_assistant(
        AssistantProfile(id="asst-short", business_id="biz-1", max_message_length=30)
    )
    completion_provider.text = "We open at nine. We close at six. Sundays we are closed."
    coordinator = make_coordinator(quality=QualityControlPipeline(enable_fact_checking=False))

    result = await coordinator.generate_response(make_request(assistant_id="asst-short"))

    assert len(result.response.messages) > 1
    assert all(len(part) <= 30 for part in result.response.messages)


@pytest.mark.asyncio
async def test_get_memory_context(coordinator, knowledge_base):
    """Test retrieval-only context resolves the business from the assistant."""

    node = await knowledge_base.create_node(
        "biz-1", "policy", "Refund policy", "Refunds are issued within 30 days of purchase."
    )

    context = await coordinator.get_memory_context("conv-9", "what is the refund policy", "asst-1")

    assert context.business_id == "biz-1"
    assert context.document_ids == [node.id]

    with pytest.raises(ValidationError):
        await coordinator.get_memory_context("conv-9", "refunds", "asst-404")


def test_stable_hash():
    assert stable_hash("hello") == stable_hash("hello")
    assert stable_hash("hello") != stable_hash("hello ")


@pytest.mark.asyncio
async def test_build_request_coordinator(redis_client, embedding_provider, completion_provider):
    """Test the factory wires Redis-backed stores and injected providers."""

    settings = Settings(embedding_dimension=64, analyzer_language="pt", request_timeout_seconds=5)

    coordinator = build_request_coordinator(
        settings, redis_client, completion=completion_provider, embedding_provider=embedding_provider
    )

    assert coordinator.store is not None
    assert coordinator.embeddings.store is not None
    assert coordinator.analyzer.profile.code == "pt"
    assert coordinator.request_timeout_seconds == 5

    await coordinator.store.put_assistant(AssistantProfile(id="asst-1", business_id="biz-1"))
    result = await coordinator.generate_response(make_request("Qual é o horário de sábado?"))

    assert result.success is True
    assert result.response.query_type == "question"
