"""
Language model completion for response generation.

Provides:
- ``CompletionProvider`` interface: complete(system_prompt, messages, options)
- ``OpenAIChatProvider`` on LangChain's ``ChatOpenAI``
- ``complete_with_retry``: bounded exponential backoff, then ``GenerationError``

Provider unavailability (rate limits, timeouts, 5xx, connection errors) is
retryable; other API errors are not.
"""

from typing import Dict, List, Literal, Optional, Protocol, Sequence

import openai
import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from aida_libs.common.errors import GenerationError, ProviderError

logger = structlog.get_logger(__name__)


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class CompletionOptions(BaseModel):
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, gt=0)


class Completion(BaseModel):
    text: str
    token_usage: Dict[str, int] = Field(default_factory=dict)
    model: Optional[str] = None


class CompletionProvider(Protocol):
    """LLM completion capability."""

    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        options: CompletionOptions,
    ) -> Completion:
        ...


_RETRYABLE_OPENAI_ERRORS = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


class OpenAIChatProvider:
    """
    OpenAI chat completion through LangChain.

    The client's own retries are disabled; ``complete_with_retry`` owns the
    retry policy.

    Usage:
        provider = OpenAIChatProvider(api_key=settings.openai_api_key, model="gpt-4o-mini")
        completion = await provider.complete(system_prompt, messages, CompletionOptions())
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        timeout: float = 25.0,
        llm: Optional[ChatOpenAI] = None,
    ):
        self.model = model
        self._llm = llm or ChatOpenAI(
            model=model,
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )

    @staticmethod
    def _to_langchain(system_prompt: str, messages: Sequence[ChatMessage]) -> List[BaseMessage]:
        converted: List[BaseMessage] = [SystemMessage(content=system_prompt)]
        for message in messages:
            if message.role == "user":
                converted.append(HumanMessage(content=message.content))
            else:
                converted.append(AIMessage(content=message.content))
        return converted

    async def complete(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        options: CompletionOptions,
    ) -> Completion:
        llm = self._llm.bind(temperature=options.temperature, max_tokens=options.max_tokens)
        try:
            response = await llm.ainvoke(self._to_langchain(system_prompt, messages))
        except _RETRYABLE_OPENAI_ERRORS as e:
            raise ProviderError(f"Completion provider unavailable: {e}") from e
        except openai.APIStatusError as e:
            raise ProviderError(
                f"Completion provider rejected request: {e}",
                status_code=e.status_code,
                retryable=False,
            ) from e

        text = response.content if isinstance(response.content, str) else str(response.content)
        if not text.strip():
            raise ProviderError("Completion provider returned empty text")

        usage = getattr(response, "usage_metadata", None) or {}
        return Completion(
            text=text.strip(),
            token_usage={
                "prompt_tokens": usage.get("input_tokens", 0),
                "completion_tokens": usage.get("output_tokens", 0),
                "total_tokens": usage.get("total_tokens", 0),
            },
            model=self.model,
        )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


async def complete_with_retry(
    provider: CompletionProvider,
    system_prompt: str,
    messages: Sequence[ChatMessage],
    options: CompletionOptions,
    max_attempts: int = 3,
    wait: Optional[wait_base] = None,
) -> Completion:
    """
    Call the provider with bounded exponential backoff.

    Args:
        provider: Completion capability
        system_prompt: System prompt with assembled context
        messages: Conversation history ending with the user message
        options: Sampling options
        max_attempts: Total attempts before giving up
        wait: Backoff strategy, defaults to exponential 1s..10s

    Returns:
        Completion

    Raises:
        GenerationError: All attempts failed or the error was not retryable
    """
    attempt_number = 0
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait or wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception(_is_retryable),
        ):
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    logger.warning("Retrying completion", attempt=attempt_number)
                return await provider.complete(system_prompt, messages, options)
    except RetryError as e:
        last = e.last_attempt.exception()
        logger.error("Completion failed after retries", attempts=attempt_number, error=str(last))
        raise GenerationError(
            f"Completion failed after {attempt_number} attempts: {last}",
            attempts=attempt_number,
        ) from last
    except ProviderError as e:
        logger.error("Completion failed with non-retryable error", error=str(e))
        raise GenerationError(f"Completion failed: {e}", attempts=attempt_number) from e
