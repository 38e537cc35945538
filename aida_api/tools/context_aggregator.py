"""
Context aggregation across conversation memory and business knowledge.

Combines three sources for a query:
- Conversation turns similar to the query (embedding cosine above threshold)
- Knowledge nodes from hybrid search, biased by the recommended strategy
- Entities of the conversation named in the query

Sources are fetched in parallel, fused with ``HybridScoringEngine`` and scored
with a confidence in [0, 1].
"""

import asyncio
import re
import time
from datetime import timedelta
from typing import List, Mapping, Optional

import structlog
from pydantic import BaseModel, Field

from aida_api.tools.hybrid_scoring import (
    MEMORY_WEIGHTS,
    HybridScoringEngine,
    calculate_confidence,
    cosine_similarity,
)
from aida_api.tools.retrieval_engine import HybridSearcher, SearchFilters, SearchStrategy
from aida_libs.caching.embedding_cache import EmbeddingCache
from aida_libs.common.errors import (
    DimensionMismatchError,
    InvalidEmbeddingError,
    ProviderError,
    ValidationError,
)
from aida_libs.memory.context_window import ContextWindowStore
from aida_libs.memory.models import (
    ContextWindow,
    ConversationPayload,
    EntityPayload,
    ScoredResult,
    utc_now,
)
from aida_libs.memory.text_analyzer import TextAnalyzer

logger = structlog.get_logger(__name__)

MAX_EXPANSIONS = 5
RECENT_WINDOW = timedelta(hours=24)
_PUNCT_RE = re.compile(r"[^\w\s]", re.UNICODE)

# Errors that mean corrupted data rather than an unavailable source
_FATAL_ERRORS = (InvalidEmbeddingError, DimensionMismatchError, ValidationError)


class QueryAnalysis(BaseModel):
    """How a query relates to the conversation so far."""

    referenced_entities: List[str] = Field(default_factory=list)
    referenced_topics: List[str] = Field(default_factory=list)
    expansions: List[str] = Field(default_factory=list)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    strategy: SearchStrategy = "hybrid"
    optimized_query: str = ""

    @property
    def has_references(self) -> bool:
        return bool(self.referenced_entities or self.referenced_topics)


class AggregatedContext(BaseModel):
    """Everything retrieved for one query."""

    query: str
    conversation_id: str
    business_id: str
    analysis: QueryAnalysis
    conversation_matches: List[ScoredResult] = Field(default_factory=list)
    document_matches: List[ScoredResult] = Field(default_factory=list)
    entity_matches: List[ScoredResult] = Field(default_factory=list)
    ranked: List[ScoredResult] = Field(default_factory=list, description="Fused ranking, best first")
    relevant_context: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    summary: str = ""
    topics: List[str] = Field(default_factory=list)
    processing_time_ms: float = 0.0

    @property
    def document_ids(self) -> List[str]:
        return [r.payload.node_id for r in self.document_matches if hasattr(r.payload, "node_id")]


class ContextAggregator:
    """
    Builds the aggregated context for a query.

    Usage:
        aggregator = ContextAggregator(windows, embeddings, retrieval_engine, scoring, analyzer)
        context = await aggregator.get_context("what is the refund policy", "conv-1", "biz-1")
        context.confidence, context.relevant_context
    """

    def __init__(
        self,
        windows: ContextWindowStore,
        embeddings: EmbeddingCache,
        searcher: HybridSearcher,
        scoring: HybridScoringEngine,
        analyzer: TextAnalyzer,
        similarity_threshold: float = 0.7,
        max_conversation_results: int = 5,
        max_document_results: int = 10,
        weights: Optional[Mapping[str, float]] = None,
    ):
        """
        Initialize aggregator.

        Args:
            windows: Context window store
            embeddings: Embedding cache for query and turn vectors
            searcher: Hybrid search over business knowledge
            scoring: Fusion engine
            analyzer: Text analysis for strategy recommendation
            similarity_threshold: Minimum cosine similarity for conversation matches
            max_conversation_results: Conversation matches kept
            max_document_results: Knowledge results requested
            weights: Source weights, defaults to conversation 0.6 / knowledge 0.4 / entity 0.1
        """
        self.windows = windows
        self.embeddings = embeddings
        self.searcher = searcher
        self.scoring = scoring
        self.analyzer = analyzer
        self.similarity_threshold = similarity_threshold
        self.max_conversation_results = max_conversation_results
        self.max_document_results = max_document_results
        self.weights = dict(weights or MEMORY_WEIGHTS)

    async def get_context(
        self,
        query: str,
        conversation_id: str,
        business_id: str,
        user_id: Optional[str] = None,
    ) -> AggregatedContext:
        """
        Retrieve, fuse and score context for a query.

        Args:
            query: User message
            conversation_id: Conversation identifier
            business_id: Tenant identifier
            user_id: Optional end-user identifier stored on new windows

        Returns:
            AggregatedContext

        Raises:
            ValidationError: Empty query
            InvalidEmbeddingError: Provider returned a malformed vector
        """
        if not query or not query.strip():
            raise ValidationError("Query cannot be empty")
        start = time.perf_counter()

        window = await self.windows.get_or_create(business_id, conversation_id, user_id)
        analysis = self.analyze_query(query, window)

        # Fetch in parallel; unavailable sources degrade to no matches
        conversation, documents, entities = await asyncio.gather(
            self._conversation_matches(query, window),
            self._document_matches(analysis, business_id),
            self._entity_matches(query, window),
            return_exceptions=True,
        )
        conversation = self._settle(conversation, "conversation")
        documents = self._settle(documents, "knowledge")
        entities = self._settle(entities, "entity")

        ranked = self.scoring.fuse_channels(
            {"conversation": conversation, "knowledge": documents, "entity": entities},
            self.weights,
        )
        relevant_context = [result.content for result in ranked]
        confidence = calculate_confidence(
            query,
            "\n".join(relevant_context),
            has_conversation=bool(conversation),
            has_documents=bool(documents),
            has_entities=bool(entities),
        )

        self.windows.refresh(window)
        self.windows.prune_if_needed(window)

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "Context aggregated",
            business_id=business_id,
            conversation_id=conversation_id,
            strategy=analysis.strategy,
            conversation_matches=len(conversation),
            document_matches=len(documents),
            entity_matches=len(entities),
            confidence=confidence,
            duration_ms=round(elapsed_ms, 2),
        )

        return AggregatedContext(
            query=query,
            conversation_id=conversation_id,
            business_id=business_id,
            analysis=analysis,
            conversation_matches=conversation,
            document_matches=documents,
            entity_matches=entities,
            ranked=ranked,
            relevant_context=relevant_context,
            confidence=confidence,
            summary=window.summary,
            topics=list(window.topics),
            processing_time_ms=round(elapsed_ms, 2),
        )

    @staticmethod
    def _settle(result, source: str) -> List[ScoredResult]:
        if isinstance(result, _FATAL_ERRORS):
            raise result
        if isinstance(result, BaseException) and not isinstance(result, Exception):
            raise result
        if isinstance(result, Exception):
            logger.error(
                "Context source failed, continuing without it",
                source=source,
                error=str(result),
                error_type=type(result).__name__,
            )
            return []
        return result

    # ------------------------------------------------------------------
    # Query analysis
    # ------------------------------------------------------------------

    def analyze_query(self, query: str, window: ContextWindow) -> QueryAnalysis:
        """Detect references to the conversation and derive expansions and filters."""
        lowered = query.lower()
        referenced_entities = [name for name in window.entities if name.lower() in lowered]
        referenced_topics = [topic for topic in window.topics if topic.lower() in lowered]

        expansions = self._expansions(lowered, window)
        strategy = self.recommend_strategy(query)

        last_turn = window.turns[-1] if window.turns else None
        recency = "recent" if last_turn and utc_now() - last_turn.timestamp < RECENT_WINDOW else None
        filters = SearchFilters(
            topics=list(window.topics),
            entities=list(window.entities),
            recency=recency,
            strategy=strategy,
        )

        optimized = [query.strip()] + expansions[:2]
        if window.topics and window.topics[0] not in optimized and window.topics[0] not in lowered:
            optimized.append(window.topics[0])

        return QueryAnalysis(
            referenced_entities=referenced_entities,
            referenced_topics=referenced_topics,
            expansions=expansions,
            filters=filters,
            strategy=strategy,
            optimized_query=" ".join(optimized),
        )

    @staticmethod
    def _expansions(lowered_query: str, window: ContextWindow) -> List[str]:
        recent_terms = window.turns[-1].extracted_terms[:2] if window.turns else []
        candidates = window.topics[:3] + list(window.entities)[:3] + recent_terms
        expansions: List[str] = []
        for term in candidates:
            if len(term) > 2 and term.lower() not in lowered_query and term not in expansions:
                expansions.append(term)
        return expansions[:MAX_EXPANSIONS]

    def recommend_strategy(self, query: str) -> SearchStrategy:
        """
        Recommend the retrieval bias for a query.

        Short queries with domain terms favour keyword search, questions without
        domain terms favour vector search, everything else (including queries
        about known conversation topics) uses hybrid search.
        """
        words = _PUNCT_RE.sub(" ", query.lower()).split()
        has_domain_terms = any(self.analyzer.is_domain_term(word) for word in words)

        if len(words) <= 3 and has_domain_terms:
            return "keyword"
        if self.analyzer.classify_query(query) == "question" and not has_domain_terms:
            return "vector"
        return "hybrid"

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def _conversation_matches(self, query: str, window: ContextWindow) -> List[ScoredResult]:
        turns = list(window.turns)
        if not turns:
            return []

        try:
            query_vector = (await self.embeddings.embed(query)).vector
            turn_vectors = await self.embeddings.embed_batch([turn.text for turn in turns])
        except ProviderError as e:
            logger.warning("Turn similarity unavailable, using recent turns", error=str(e))
            return [
                self._turn_result(turn, 0.0)
                for turn in turns[-self.max_conversation_results:]
            ]

        matches = []
        for turn, embedded in zip(turns, turn_vectors):
            if embedded is None:
                continue
            similarity = cosine_similarity(query_vector, embedded.vector)
            if similarity > self.similarity_threshold:
                matches.append(self._turn_result(turn, similarity))
        matches.sort(key=lambda r: r.raw_score, reverse=True)
        return matches[: self.max_conversation_results]

    @staticmethod
    def _turn_result(turn, score: float) -> ScoredResult:
        return ScoredResult(
            content=f"User: {turn.user_text}\nAssistant: {turn.system_text}",
            payload=ConversationPayload(turn_id=turn.id, timestamp=turn.timestamp, query_type=turn.query_type),
            raw_score=max(0.0, score),
        )

    async def _document_matches(self, analysis: QueryAnalysis, business_id: str) -> List[ScoredResult]:
        return await self.searcher.hybrid_search(
            analysis.optimized_query,
            business_id,
            analysis.filters,
            limit=self.max_document_results,
        )

    async def _entity_matches(self, query: str, window: ContextWindow) -> List[ScoredResult]:
        lowered = query.lower()
        matches = []
        for name, mention in window.entities.items():
            if name.lower() in lowered:
                matches.append(ScoredResult(
                    content=f"{name} ({mention.type}, mentioned {mention.mention_count} times)",
                    payload=EntityPayload(
                        name=name,
                        entity_type=mention.type,
                        mention_count=mention.mention_count,
                        last_seen=mention.last_seen,
                    ),
                    raw_score=1.0,
                ))
        return matches
