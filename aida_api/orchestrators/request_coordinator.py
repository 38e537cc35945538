"""
Request coordinator for customer message replies.

Drives the response pipeline for one customer message:

    load context -> preprocess -> generate -> quality gate -> format -> persist

Guarantees:
- At most one pipeline execution per (conversation, message hash); duplicate
  callers share the in-flight execution and receive the same result object
- A hard deadline per execution; on expiry the pipeline task is cancelled,
  which aborts in-flight provider requests, and a timeout result is returned
- Every outcome, success or failure, is a ``ResponseResult`` envelope
- Persistence is best-effort and never turns a successful reply into a failure
"""

import asyncio
import hashlib
import time
import uuid
from dataclasses import dataclass
from functools import partial
from typing import Dict, List, Optional, Tuple

import structlog
from tenacity.wait import wait_base

from aida_api.composer.formatter import split_message
from aida_api.composer.prompts import build_messages, build_system_prompt
from aida_api.composer.quality_gates import FALLBACK_CONFIDENCE, FALLBACK_MESSAGE, QualityControlPipeline
from aida_api.llm.completion import CompletionOptions, CompletionProvider, complete_with_retry
from aida_api.models import (
    CustomerProfile,
    ErrorInfo,
    GeneratedResponse,
    ResponseMetadata,
    ResponseRequest,
    ResponseResult,
)
from aida_api.tools.context_aggregator import AggregatedContext, ContextAggregator
from aida_libs.caching.embedding_cache import EmbeddingCache
from aida_libs.common.errors import (
    EngineError,
    PersistenceError,
    ProcessingError,
    ProviderError,
    RequestTimeoutError,
    ValidationError,
    best_effort,
)
from aida_libs.memory.context_window import ContextWindowStore
from aida_libs.memory.models import AssistantProfile, ContextWindow, QueryType
from aida_libs.memory.store import ContextStore
from aida_libs.memory.text_analyzer import TextAnalyzer

logger = structlog.get_logger(__name__)

Fingerprint = Tuple[str, str]

# Completion providers report no confidence; replies start from this prior,
# blended with the retrieval confidence
GENERATION_PRIOR_CONFIDENCE = 0.8


def stable_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class CoordinatorStats:
    total_requests: int = 0
    successful: int = 0
    failed: int = 0
    timeouts: int = 0
    deduplicated: int = 0
    validation_failures: int = 0
    persistence_failures: int = 0
    total_processing_ms: float = 0.0

    @property
    def average_processing_ms(self) -> float:
        executed = self.successful + self.failed
        return self.total_processing_ms / executed if executed else 0.0

    def to_dict(self) -> dict:
        data = dict(self.__dict__)
        data["average_processing_ms"] = round(self.average_processing_ms, 2)
        return data


class RequestCoordinator:
    """
    Entry point of the engine.

    Usage:
        coordinator = build_request_coordinator(settings, redis_client)
        result = await coordinator.generate_response(ResponseRequest(
            message="Do you deliver on Sundays?",
            conversation_id="conv-1", assistant_id="asst-1", business_id="biz-1",
        ))
        context = await coordinator.get_memory_context("conv-1", "refunds?", "asst-1")
    """

    def __init__(
        self,
        aggregator: ContextAggregator,
        windows: ContextWindowStore,
        embeddings: EmbeddingCache,
        completion: CompletionProvider,
        quality: QualityControlPipeline,
        analyzer: TextAnalyzer,
        store: Optional[ContextStore] = None,
        request_timeout_seconds: float = 30.0,
        max_message_length: int = 4000,
        llm_max_retries: int = 3,
        llm_temperature: float = 0.7,
        llm_max_tokens: int = 1000,
        history_turns: int = 10,
        retry_wait: Optional[wait_base] = None,
    ):
        """
        Initialize coordinator.

        Args:
            aggregator: Context retrieval and fusion
            windows: Context window store (same instance the aggregator uses)
            embeddings: Embedding cache
            completion: LLM completion capability
            quality: Quality gates
            analyzer: Text analysis (query type, sentiment)
            store: Persistent store for assistants and turns
            request_timeout_seconds: Deadline per pipeline execution
            max_message_length: Longest accepted customer message
            llm_max_retries: Completion attempts before failing
            llm_temperature: Default sampling temperature
            llm_max_tokens: Default completion length
            history_turns: Turns replayed to the model as chat history
            retry_wait: Backoff between completion attempts
        """
        self.aggregator = aggregator
        self.windows = windows
        self.embeddings = embeddings
        self.completion = completion
        self.quality = quality
        self.analyzer = analyzer
        self.store = store
        self.request_timeout_seconds = request_timeout_seconds
        self.max_message_length = max_message_length
        self.llm_max_retries = llm_max_retries
        self.llm_temperature = llm_temperature
        self.llm_max_tokens = llm_max_tokens
        self.history_turns = history_turns
        self.retry_wait = retry_wait
        self._in_flight: Dict[Fingerprint, "asyncio.Task[ResponseResult]"] = {}
        self._stats = CoordinatorStats()

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def generate_response(self, request: ResponseRequest) -> ResponseResult:
        """
        Produce a reply for a customer message.

        Args:
            request: Message with conversation, assistant and business ids

        Returns:
            ResponseResult envelope; never raises for pipeline failures
        """
        request_id = uuid.uuid4().hex
        start = time.perf_counter()
        self._stats.total_requests += 1

        try:
            self._validate(request)
        except ValidationError as e:
            self._stats.validation_failures += 1
            logger.info("Request rejected", request_id=request_id, reason=e.message)
            return self._failure(request, e, request_id, start, [])

        fingerprint = (request.conversation_id, stable_hash(request.message))
        task = self._in_flight.get(fingerprint)
        if task is not None:
            self._stats.deduplicated += 1
            logger.info(
                "Duplicate request joined in-flight execution",
                request_id=request_id,
                conversation_id=request.conversation_id,
            )
            return await asyncio.shield(task)

        task = asyncio.ensure_future(self._execute(request, request_id, start))
        self._in_flight[fingerprint] = task
        task.add_done_callback(partial(self._release, fingerprint))
        return await asyncio.shield(task)

    # Alias
    handle = generate_response

    async def get_memory_context(
        self,
        conversation_id: str,
        message: str,
        assistant_id: str,
        business_id: Optional[str] = None,
    ) -> AggregatedContext:
        """
        Retrieval only: aggregated context for a message, no generation.

        The business defaults to the assistant's business.

        Raises:
            ValidationError: Unknown assistant or assistant of another business
        """
        assistant = await self._load_assistant(assistant_id, business_id)
        return await self.aggregator.get_context(message, conversation_id, assistant.business_id)

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def get_stats(self) -> CoordinatorStats:
        return self._stats

    async def aclose(self) -> None:
        """Release provider connections."""
        close = getattr(self.embeddings.provider, "aclose", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _release(self, fingerprint: Fingerprint, task: "asyncio.Task[ResponseResult]") -> None:
        if self._in_flight.get(fingerprint) is task:
            del self._in_flight[fingerprint]

    def _validate(self, request: ResponseRequest) -> None:
        if not request.message or not request.message.strip():
            raise ValidationError("Message cannot be empty")
        if len(request.message) > self.max_message_length:
            raise ValidationError(f"Message exceeds {self.max_message_length} characters")
        for field_name in ("conversation_id", "assistant_id", "business_id"):
            if not getattr(request, field_name).strip():
                raise ValidationError(f"{field_name} is required")

    async def _execute(self, request: ResponseRequest, request_id: str, start: float) -> ResponseResult:
        stages: List[str] = []
        log = logger.bind(
            request_id=request_id,
            conversation_id=request.conversation_id,
            business_id=request.business_id,
        )
        try:
            return await asyncio.wait_for(
                self._run_pipeline(request, request_id, start, stages),
                timeout=self.request_timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._stats.timeouts += 1
            log.error(
                "Pipeline timed out",
                timeout_seconds=self.request_timeout_seconds,
                last_stage=stages[-1] if stages else None,
            )
            error = RequestTimeoutError(f"Request timed out after {self.request_timeout_seconds}s")
            return self._failure(request, error, request_id, start, stages)
        except EngineError as e:
            log.error(
                "Pipeline failed",
                error=e.message,
                error_type=e.error_type,
                last_stage=stages[-1] if stages else None,
            )
            return self._failure(request, e, request_id, start, stages)
        except Exception as e:
            log.exception("Unexpected pipeline error", last_stage=stages[-1] if stages else None)
            return self._failure(request, ProcessingError(str(e)), request_id, start, stages)

    async def _run_pipeline(
        self,
        request: ResponseRequest,
        request_id: str,
        start: float,
        stages: List[str],
    ) -> ResponseResult:
        # 1. Load context
        assistant = await self._load_assistant(request.assistant_id, request.business_id)
        context = await self.aggregator.get_context(
            request.message, request.conversation_id, request.business_id, request.user_id
        )
        window = await self.windows.get_or_create(
            request.business_id, request.conversation_id, request.user_id
        )
        customer = self._customer_profile(request, window, assistant)
        stages.append("load_context")

        # 2. Preprocess
        query_type = self.analyzer.classify_query(request.message)
        try:
            await self.embeddings.embed(request.message)
        except ProviderError as e:
            logger.warning("Message embedding failed, continuing", request_id=request_id, error=str(e))
        self.windows.extend_summary(window, request.message)
        stages.append("preprocess")

        # 3. Generate
        options = CompletionOptions(
            temperature=assistant.temperature if assistant.temperature is not None else self.llm_temperature,
            max_tokens=assistant.max_tokens or self.llm_max_tokens,
        )
        completion = await complete_with_retry(
            self.completion,
            build_system_prompt(assistant, context, customer),
            build_messages(window, request.message, self.history_turns),
            options,
            max_attempts=self.llm_max_retries,
            wait=self.retry_wait,
        )
        response = GeneratedResponse(
            content=completion.text,
            confidence=round(0.5 * GENERATION_PRIOR_CONFIDENCE + 0.5 * context.confidence, 2),
            query_type=query_type,
            sources=context.document_ids,
            token_usage=completion.token_usage,
        )
        stages.append("generate")

        # 4. Quality gate
        response = self.quality.process(response, customer, assistant.confidence_threshold)
        stages.append("quality_gate")

        # 5. Format
        response = response.model_copy(update={
            "messages": split_message(response.content, assistant.max_message_length),
        })
        stages.append("format")

        # 6. Persist
        outcome = await best_effort(
            self._persist(window, request, response, query_type),
            operation="persist_turn",
            request_id=request_id,
            conversation_id=request.conversation_id,
        )
        if outcome.ok:
            stages.append("persist")
        else:
            self._stats.persistence_failures += 1

        elapsed_ms = self._elapsed_ms(start)
        self._stats.successful += 1
        self._stats.total_processing_ms += elapsed_ms
        logger.info(
            "Response generated",
            request_id=request_id,
            conversation_id=request.conversation_id,
            confidence=response.confidence,
            should_escalate=response.should_escalate,
            duration_ms=elapsed_ms,
        )
        return ResponseResult(
            success=True,
            response=response,
            metadata=self._metadata(
                request,
                request_id,
                elapsed_ms,
                stages,
                fallback_used=False,
                context_confidence=context.confidence,
                persisted=outcome.ok,
            ),
        )

    async def _load_assistant(self, assistant_id: str, business_id: Optional[str]) -> AssistantProfile:
        """Assistant profile from the store, a default profile when no store is configured."""
        if self.store is None:
            if not business_id:
                raise ValidationError("business_id is required when no assistant store is configured")
            return AssistantProfile(id=assistant_id, business_id=business_id)

        try:
            assistant = await self.store.get_assistant(assistant_id)
        except PersistenceError as e:
            if not business_id:
                raise
            logger.warning("Assistant lookup failed, using defaults", assistant_id=assistant_id, error=str(e))
            return AssistantProfile(id=assistant_id, business_id=business_id)

        if assistant is None:
            raise ValidationError(f"Assistant {assistant_id} not found")
        if business_id and assistant.business_id != business_id:
            raise ValidationError(f"Assistant {assistant_id} does not belong to business {business_id}")
        return assistant

    def _customer_profile(
        self,
        request: ResponseRequest,
        window: ContextWindow,
        assistant: AssistantProfile,
    ) -> CustomerProfile:
        customer = request.customer
        recent_messages = [turn.user_text for turn in window.turns[-5:]] + [request.message]
        try:
            sentiment = self.analyzer.sentiment(recent_messages)
        except Exception as e:
            logger.warning("Sentiment analysis failed, assuming neutral", error=str(e))
            sentiment = "neutral"
        return CustomerProfile(
            name=customer.name if customer else None,
            sentiment=sentiment,
            language=(customer.language if customer and customer.language else assistant.language),
        )

    async def _persist(
        self,
        window: ContextWindow,
        request: ResponseRequest,
        response: GeneratedResponse,
        query_type: QueryType,
    ) -> None:
        turn = self.windows.add_turn(
            window,
            request.message,
            response.content,
            query_type=query_type,
            confidence=response.confidence,
            relevant_document_ids=response.sources,
        )
        if self.store is not None:
            await self.store.put_turn(request.business_id, request.conversation_id, turn)
        await self.windows.persist(window)

    # ------------------------------------------------------------------
    # Envelopes
    # ------------------------------------------------------------------

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return round((time.perf_counter() - start) * 1000, 2)

    @staticmethod
    def _metadata(
        request: ResponseRequest,
        request_id: str,
        elapsed_ms: float,
        stages: List[str],
        fallback_used: bool,
        context_confidence: Optional[float] = None,
        persisted: Optional[bool] = None,
    ) -> ResponseMetadata:
        return ResponseMetadata(
            request_id=request_id,
            conversation_id=request.conversation_id,
            assistant_id=request.assistant_id,
            business_id=request.business_id,
            processing_time_ms=elapsed_ms,
            fallback_used=fallback_used,
            context_confidence=context_confidence,
            persisted=persisted,
            stages_completed=list(stages),
        )

    def _failure(
        self,
        request: ResponseRequest,
        error: EngineError,
        request_id: str,
        start: float,
        stages: List[str],
    ) -> ResponseResult:
        elapsed_ms = self._elapsed_ms(start)
        if not isinstance(error, ValidationError):
            self._stats.failed += 1
            self._stats.total_processing_ms += elapsed_ms

        fallback = None
        if error.fallback_eligible:
            fallback = GeneratedResponse(
                content=FALLBACK_MESSAGE,
                confidence=FALLBACK_CONFIDENCE,
                should_escalate=True,
                messages=[FALLBACK_MESSAGE],
                quality_flags=["fallback"],
            )
        return ResponseResult(
            success=False,
            response=fallback,
            error=ErrorInfo(type=error.error_type, message=error.message, retryable=error.retryable),
            metadata=self._metadata(request, request_id, elapsed_ms, stages, fallback_used=True),
        )


def build_request_coordinator(
    settings,
    redis_client=None,
    completion: Optional[CompletionProvider] = None,
    embedding_provider=None,
) -> RequestCoordinator:
    """
    Wire the engine from settings.

    Args:
        settings: ``aida_libs.common.settings.Settings``
        redis_client: Async Redis client; None keeps all state in process
        completion: Completion provider override (defaults to OpenAI chat)
        embedding_provider: Embedding provider override (defaults to OpenAI embeddings)

    Returns:
        RequestCoordinator with its collaborators
    """
    from aida_api.llm.completion import OpenAIChatProvider
    from aida_api.tools.embedding_client import OpenAIEmbeddingClient
    from aida_api.tools.hybrid_scoring import HybridScoringEngine
    from aida_api.tools.retrieval_engine import KnowledgeRetrievalEngine
    from aida_libs.caching.kv_store import RedisCacheStore
    from aida_libs.memory.store import RedisContextStore
    from aida_libs.memory.text_analyzer import KeywordTextAnalyzer

    analyzer = KeywordTextAnalyzer.for_language(settings.analyzer_language)
    store = RedisContextStore(redis_client, namespace=settings.redis_namespace) if redis_client else None
    embeddings = EmbeddingCache(
        embedding_provider or OpenAIEmbeddingClient(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            base_url=settings.openai_base_url,
        ),
        model_id=settings.embedding_model,
        dimension=settings.embedding_dimension,
        store=RedisCacheStore(redis_client, namespace=f"{settings.redis_namespace}:emb") if redis_client else None,
        capacity=settings.embedding_memory_capacity,
        ttl_seconds=settings.embedding_cache_ttl_seconds,
        batch_size=settings.embedding_batch_size,
        batch_delay_seconds=settings.embedding_batch_delay_seconds,
        max_content_chars=settings.embedding_max_content_chars,
    )
    windows = ContextWindowStore(
        analyzer,
        store=store,
        max_turns=settings.max_turns,
        max_context_tokens=settings.max_context_tokens,
        persistence_enabled=settings.context_persistence,
        retention_days=settings.context_retention_days,
        max_windows=settings.max_cached_windows,
    )
    scoring = HybridScoringEngine(
        window_size=settings.fusion_window_size,
        algorithm=settings.fusion_algorithm,
    )
    aggregator = ContextAggregator(
        windows,
        embeddings,
        KnowledgeRetrievalEngine(
            store,
            embeddings,
            scoring,
            analyzer=analyzer,
            similarity_threshold=settings.knowledge_similarity_threshold,
        ),
        scoring,
        analyzer,
        similarity_threshold=settings.similarity_threshold,
        max_conversation_results=settings.max_conversation_results,
        max_document_results=settings.max_document_results,
    )
    return RequestCoordinator(
        aggregator=aggregator,
        windows=windows,
        embeddings=embeddings,
        completion=completion or OpenAIChatProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout=settings.request_timeout_seconds,
        ),
        quality=QualityControlPipeline(
            confidence_threshold=settings.confidence_threshold,
            enable_content_filter=settings.enable_content_filter,
            enable_fact_checking=settings.enable_fact_checking,
            enable_personalization=settings.enable_personalization,
        ),
        analyzer=analyzer,
        store=store,
        request_timeout_seconds=settings.request_timeout_seconds,
        max_message_length=settings.max_message_length,
        llm_max_retries=settings.llm_max_retries,
        llm_temperature=settings.llm_temperature,
        llm_max_tokens=settings.llm_max_tokens,
        history_turns=settings.history_turns_in_prompt,
    )
