"""Hybrid knowledge retrieval for the context engine.

Searches a business's knowledge nodes through three channels and fuses them
with ``HybridScoringEngine``:
- vector: cosine similarity of the query embedding and the node embedding
- keyword: BM25 relevance of the query terms over the node texts
- graph: overlap of node tags/name with topics and entities referenced by the
  conversation

The recommended search strategy only changes the channel weights.
"""

from __future__ import annotations

import re
from typing import Dict, List, Literal, Optional, Protocol, Set

import structlog
from pydantic import BaseModel, Field
from rank_bm25 import BM25Plus

from aida_api.tools.hybrid_scoring import STRATEGY_WEIGHTS, HybridScoringEngine, cosine_similarity
from aida_libs.caching.embedding_cache import EmbeddingCache
from aida_libs.common.errors import DimensionMismatchError, ProviderError
from aida_libs.memory.models import DocumentPayload, GraphPayload, KnowledgeNode, ScoredResult
from aida_libs.memory.store import ContextStore
from aida_libs.memory.text_analyzer import TextAnalyzer

logger = structlog.get_logger(__name__)

SearchStrategy = Literal["keyword", "vector", "hybrid"]

_TERM_RE = re.compile(r"[^\w\s]", re.UNICODE)


class SearchFilters(BaseModel):
    """Contextual filters built from the conversation."""

    topics: List[str] = Field(default_factory=list)
    entities: List[str] = Field(default_factory=list)
    recency: Optional[Literal["recent"]] = None
    entity_types: Optional[List[str]] = Field(default=None, description="Restrict to these node types")
    strategy: SearchStrategy = "hybrid"


class HybridSearcher(Protocol):
    """Vector/graph query capability."""

    async def hybrid_search(
        self,
        query: str,
        business_id: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 10,
    ) -> List[ScoredResult]:
        ...


def tokenize(text: str) -> List[str]:
    return _TERM_RE.sub(" ", text.lower()).split()


def query_terms(query: str) -> List[str]:
    """Lowercased terms longer than 2 characters, in order, without duplicates."""
    seen: List[str] = []
    for word in tokenize(query):
        if len(word) > 2 and word not in seen:
            seen.append(word)
    return seen


class KnowledgeRetrievalEngine:
    """
    Hybrid search over business knowledge nodes.

    Usage:
        engine = KnowledgeRetrievalEngine(store, embeddings, HybridScoringEngine())
        results = await engine.hybrid_search("refund policy", "biz-1",
                                              SearchFilters(strategy="keyword"), limit=5)
    """

    def __init__(
        self,
        store: Optional[ContextStore],
        embeddings: EmbeddingCache,
        scoring: HybridScoringEngine,
        analyzer: Optional[TextAnalyzer] = None,
        similarity_threshold: float = 0.7,
    ):
        self.store = store
        self.embeddings = embeddings
        self.scoring = scoring
        self.analyzer = analyzer
        self.similarity_threshold = similarity_threshold

    def _terms(self, query: str) -> List[str]:
        if self.analyzer is None:
            return query_terms(query)
        return list(dict.fromkeys(self.analyzer.key_phrases(query)))

    async def hybrid_search(
        self,
        query: str,
        business_id: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 10,
    ) -> List[ScoredResult]:
        """
        Search knowledge nodes for a business.

        Args:
            query: Search text (usually the optimized query)
            business_id: Tenant whose nodes are searched
            filters: Conversation filters and strategy
            limit: Maximum results

        Returns:
            Document (or graph-only) results, best first, ``raw_score`` = fused relevance
        """
        filters = filters or SearchFilters()
        if self.store is None:
            logger.debug("No knowledge store configured, skipping hybrid search")
            return []
        nodes = [n for n in await self.store.list_knowledge_nodes(business_id) if n.is_active]
        if filters.entity_types:
            allowed = {t.lower() for t in filters.entity_types}
            nodes = [n for n in nodes if n.entity_type.lower() in allowed]
        if not nodes:
            return []

        nodes_by_id = {n.id: n for n in nodes}
        channels_by_node: Dict[str, Set[str]] = {}

        vector_results = await self._vector_channel(query, nodes, channels_by_node)
        keyword_results = self._keyword_channel(query, nodes, channels_by_node)
        graph_results = self._graph_channel(filters, nodes, channels_by_node)

        fused = self.scoring.fuse(
            vector_results,
            keyword_results,
            graph_results,
            weights=STRATEGY_WEIGHTS[filters.strategy],
            limit=limit,
        )

        results = []
        for result in fused:
            node = nodes_by_id[result.payload.node_id]
            channels = channels_by_node[node.id]
            payload = result.payload if channels == {"graph"} else self._document_payload(node, channels)
            results.append(ScoredResult(
                content=f"{node.entity_name}: {node.content}",
                payload=payload,
                raw_score=min(1.0, result.weighted_score),
                weighted_score=result.weighted_score,
            ))

        logger.debug(
            "Hybrid search complete",
            business_id=business_id,
            strategy=filters.strategy,
            candidates=len(nodes),
            vector_hits=len(vector_results),
            keyword_hits=len(keyword_results),
            graph_hits=len(graph_results),
            returned=len(results),
        )
        return results

    @staticmethod
    def _document_payload(node: KnowledgeNode, channels: Set[str]) -> DocumentPayload:
        return DocumentPayload(
            node_id=node.id,
            entity_type=node.entity_type,
            entity_name=node.entity_name,
            version=node.version,
            tags=node.tags,
            channels=sorted(channels),
        )

    async def _vector_channel(
        self,
        query: str,
        nodes: List[KnowledgeNode],
        channels_by_node: Dict[str, Set[str]],
    ) -> List[ScoredResult]:
        try:
            query_vector = (await self.embeddings.embed(query)).vector
        except ProviderError as e:
            logger.warning("Query embedding failed, skipping vector channel", error=str(e))
            return []

        results = []
        for node in nodes:
            if not node.embedding:
                continue
            try:
                similarity = cosine_similarity(query_vector, node.embedding)
            except DimensionMismatchError:
                # Node embedded with another model; it still matches via keyword/graph
                continue
            if similarity >= self.similarity_threshold:
                channels_by_node.setdefault(node.id, set()).add("vector")
                results.append(ScoredResult(
                    content=node.content,
                    payload=self._document_payload(node, {"vector"}),
                    raw_score=similarity,
                ))
        results.sort(key=lambda r: r.raw_score, reverse=True)
        return results

    def _keyword_channel(
        self,
        query: str,
        nodes: List[KnowledgeNode],
        channels_by_node: Dict[str, Set[str]],
    ) -> List[ScoredResult]:
        """
        BM25 over the candidate nodes, whole-token matches only.

        Scores are normalized by the best match so ``raw_score`` is in (0, 1].
        """
        terms = self._terms(query)
        if not terms:
            return []

        corpus = [tokenize(" ".join([n.entity_name, n.content, " ".join(n.tags)])) for n in nodes]
        wanted = set(terms)
        matched = [i for i, tokens in enumerate(corpus) if wanted.intersection(tokens)]
        if not matched:
            return []

        bm25 = BM25Plus(corpus)
        # BM25+ adds idf * delta for every query term, present or not
        baseline = bm25.delta * sum(bm25.idf.get(term, 0.0) for term in terms)
        scores = bm25.get_scores(terms) - baseline
        best = max(float(scores[i]) for i in matched)
        if best <= 0:
            return []

        results = []
        for index in matched:
            node = nodes[index]
            channels_by_node.setdefault(node.id, set()).add("keyword")
            results.append(ScoredResult(
                content=node.content,
                payload=self._document_payload(node, {"keyword"}),
                raw_score=round(max(0.0, float(scores[index])) / best, 6),
            ))
        results.sort(key=lambda r: r.raw_score, reverse=True)
        return results

    def _graph_channel(
        self,
        filters: SearchFilters,
        nodes: List[KnowledgeNode],
        channels_by_node: Dict[str, Set[str]],
    ) -> List[ScoredResult]:
        references = {term.lower() for term in filters.topics + filters.entities if term}
        if not references:
            return []

        results = []
        for node in nodes:
            node_terms = {tag.lower() for tag in node.tags} | set(query_terms(node.entity_name))
            matched = sorted(references & node_terms)
            if matched:
                channels_by_node.setdefault(node.id, set()).add("graph")
                results.append(ScoredResult(
                    content=node.content,
                    payload=GraphPayload(node_id=node.id, entity_name=node.entity_name, matched_terms=matched),
                    raw_score=len(matched) / len(references),
                ))
        results.sort(key=lambda r: r.raw_score, reverse=True)
        return results
