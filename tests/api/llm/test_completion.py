"""
Tests for LLM completion and retry.

Tests verify:
- LangChain responses are mapped to Completion with token usage
- OpenAI errors are mapped to retryable / non-retryable ProviderError
- complete_with_retry retries, then raises GenerationError
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from tenacity import wait_none

from aida_api.llm.completion import (
    ChatMessage,
    CompletionOptions,
    OpenAIChatProvider,
    complete_with_retry,
)
from aida_libs.common.errors import GenerationError, ProviderError

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def provider_with(result=None, error=None):
    llm = MagicMock()
    bound = llm.bind.return_value
    bound.ainvoke = AsyncMock(return_value=result, side_effect=error)
    return OpenAIChatProvider(api_key="sk-test", model="gpt-4o-mini", llm=llm), llm


@pytest.mark.asyncio
async def test_complete_maps_response():
    """Test text and usage are read from the LangChain message."""

    message = AIMessage(
        content=" We open at 9am. ",
        usage_metadata={"input_tokens": 50, "output_tokens": 6, "total_tokens": 56},
    )
    provider, llm = provider_with(result=message)

    completion = await provider.complete(
        "system prompt",
        [ChatMessage(role="user", content="hi"), ChatMessage(role="assistant", content="hello"),
         ChatMessage(role="user", content="when do you open?")],
        CompletionOptions(temperature=0.2, max_tokens=200),
    )

    assert completion.text == "We open at 9am."
    assert completion.token_usage == {"prompt_tokens": 50, "completion_tokens": 6, "total_tokens": 56}
    llm.bind.assert_called_once_with(temperature=0.2, max_tokens=200)

    sent = llm.bind.return_value.ainvoke.call_args.args[0]
    assert [type(m) for m in sent] == [SystemMessage, HumanMessage, AIMessage, HumanMessage]


@pytest.mark.asyncio
async def test_timeout_is_retryable():
    provider, _ = provider_with(error=openai.APITimeoutError(request=REQUEST))

    with pytest.raises(ProviderError) as exc_info:
        await provider.complete("s", [ChatMessage(role="user", content="hi")], CompletionOptions())

    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_bad_request_is_not_retryable():
    error = openai.BadRequestError(
        "invalid request", response=httpx.Response(400, request=REQUEST), body=None
    )
    provider, _ = provider_with(error=error)

    with pytest.raises(ProviderError) as exc_info:
        await provider.complete("s", [ChatMessage(role="user", content="hi")], CompletionOptions())

    assert exc_info.value.retryable is False
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_empty_completion_is_provider_error():
    provider, _ = provider_with(result=AIMessage(content="   "))

    with pytest.raises(ProviderError):
        await provider.complete("s", [ChatMessage(role="user", content="hi")], CompletionOptions())


@pytest.mark.asyncio
async def test_retry_then_success(completion_provider):
    """Test transient failures are retried."""

    completion_provider.failures = [ProviderError("rate limited"), ProviderError("rate limited")]

    completion = await complete_with_retry(
        completion_provider, "s", [ChatMessage(role="user", content="hi")], CompletionOptions(),
        max_attempts=3, wait=wait_none(),
    )

    assert completion.text == completion_provider.text
    assert completion_provider.calls == 3


@pytest.mark.asyncio
async def test_retries_exhausted(completion_provider):
    """Test GenerationError after all attempts fail."""

    completion_provider.failures = [ProviderError("unavailable")] * 3

    with pytest.raises(GenerationError):
        await complete_with_retry(
            completion_provider, "s", [ChatMessage(role="user", content="hi")], CompletionOptions(),
            max_attempts=3, wait=wait_none(),
        )

    assert completion_provider.calls == 3


@pytest.mark.asyncio
async def test_non_retryable_fails_fast(completion_provider):
    completion_provider.failures = [ProviderError("rejected", status_code=400, retryable=False)]

    with pytest.raises(GenerationError):
        await complete_with_retry(
            completion_provider, "s", [ChatMessage(role="user", content="hi")], CompletionOptions(),
            wait=wait_none(),
        )

    assert completion_provider.calls == 1
