"""
Hybrid scoring and fusion.

Combines relevance scores from several retrieval channels into one ranking:
- ``weighted``: weighted_score = raw_score * channel weight (default)
- ``rrf``: reciprocal rank fusion, weight / (k + rank)
- ``adaptive``: 0.7 * weighted + 0.3 * rrf

The same item found through several channels (same ``ref_id``) is merged and
its channel contributions are summed.
"""

from typing import Dict, List, Literal, Mapping, Optional, Sequence

import numpy as np
import structlog

from aida_libs.common.errors import DimensionMismatchError
from aida_libs.memory.models import ScoredResult

logger = structlog.get_logger(__name__)

FusionAlgorithm = Literal["weighted", "rrf", "adaptive"]

HYBRID_WEIGHTS: Dict[str, float] = {"vector": 0.6, "keyword": 0.3, "graph": 0.1}
MEMORY_WEIGHTS: Dict[str, float] = {"conversation": 0.6, "knowledge": 0.4, "entity": 0.1}

# Channel weights used by the hybrid search for each recommended strategy
STRATEGY_WEIGHTS: Dict[str, Dict[str, float]] = {
    "hybrid": HYBRID_WEIGHTS,
    "vector": {"vector": 0.8, "keyword": 0.1, "graph": 0.1},
    "keyword": {"vector": 0.3, "keyword": 0.6, "graph": 0.1},
}

ADAPTIVE_WEIGHTED_SHARE = 0.7


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Raises:
        DimensionMismatchError: Vectors have different lengths

    Returns:
        Similarity in [-1, 1]; 0.0 when either vector has zero magnitude
    """
    if len(a) != len(b):
        logger.error(
            "Vector dimension mismatch",
            security_event=True,
            left_dimension=len(a),
            right_dimension=len(b),
        )
        raise DimensionMismatchError(
            f"Cannot compare vectors of length {len(a)} and {len(b)}",
            left=len(a),
            right=len(b),
        )
    vec1 = np.asarray(a, dtype=float)
    vec2 = np.asarray(b, dtype=float)
    norm_product = float(np.linalg.norm(vec1)) * float(np.linalg.norm(vec2))
    if norm_product == 0.0:
        return 0.0
    similarity = float(np.dot(vec1, vec2)) / norm_product
    return max(-1.0, min(1.0, similarity))


def calculate_confidence(
    query: str,
    context_text: str,
    has_conversation: bool,
    has_documents: bool,
    has_entities: bool,
) -> float:
    """
    Confidence that the retrieved context can answer the query.

    0.3 for any context, 0.2 for conversation matches, 0.3 for document matches,
    0.2 for entity matches, plus up to 0.3 for the share of query terms found in
    the context text. Clamped to [0, 1] and rounded to 2 decimals.
    """
    confidence = 0.0
    if context_text.strip():
        confidence += 0.3
    if has_conversation:
        confidence += 0.2
    if has_documents:
        confidence += 0.3
    if has_entities:
        confidence += 0.2

    terms = query.lower().split()
    if terms:
        haystack = context_text.lower()
        matched = sum(1 for term in terms if term in haystack)
        confidence += (matched / len(terms)) * 0.3

    return round(min(1.0, max(0.0, confidence)), 2)


class HybridScoringEngine:
    """
    Fuses scored results from multiple channels into one ranked list.

    Usage:
        engine = HybridScoringEngine(window_size=15)
        ranked = engine.fuse(vector_results, keyword_results, graph_results)
        ranked = engine.fuse_channels(
            {"conversation": turns, "knowledge": docs, "entity": entities},
            MEMORY_WEIGHTS,
        )
    """

    def __init__(
        self,
        window_size: int = 15,
        algorithm: FusionAlgorithm = "weighted",
        rrf_constant: int = 60,
    ):
        self.window_size = window_size
        self.algorithm = algorithm
        self.rrf_constant = rrf_constant

    def fuse(
        self,
        vector_results: Sequence[ScoredResult],
        keyword_results: Sequence[ScoredResult],
        graph_results: Sequence[ScoredResult],
        weights: Optional[Mapping[str, float]] = None,
        limit: Optional[int] = None,
    ) -> List[ScoredResult]:
        """Fuse vector, keyword and graph results (default weights 0.6 / 0.3 / 0.1)."""
        return self.fuse_channels(
            {"vector": vector_results, "keyword": keyword_results, "graph": graph_results},
            weights or HYBRID_WEIGHTS,
            limit=limit,
        )

    def fuse_channels(
        self,
        channels: Mapping[str, Sequence[ScoredResult]],
        weights: Mapping[str, float],
        limit: Optional[int] = None,
        algorithm: Optional[FusionAlgorithm] = None,
    ) -> List[ScoredResult]:
        """
        Fuse any set of named channels.

        Args:
            channels: Channel name -> results, each list in the channel's own rank order
            weights: Channel name -> weight; channels without a weight contribute 0
            limit: Maximum results, defaults to the window size
            algorithm: Overrides the engine's algorithm

        Returns:
            Results sorted by ``weighted_score`` descending, truncated
        """
        algorithm = algorithm or self.algorithm
        limit = self.window_size if limit is None else limit

        for name, results in channels.items():
            if results and name not in weights:
                logger.warning("No fusion weight for channel, scoring as zero", channel=name)

        weighted = self._weighted_scores(channels, weights)
        if algorithm == "weighted":
            scores = weighted
        else:
            rrf = self._rrf_scores(channels, weights)
            if algorithm == "rrf":
                scores = rrf
            else:
                scores = {
                    ref: ADAPTIVE_WEIGHTED_SHARE * weighted[ref] + (1 - ADAPTIVE_WEIGHTED_SHARE) * rrf[ref]
                    for ref in weighted
                }

        representatives = self._representatives(channels, weights)
        fused = [
            representatives[ref].model_copy(update={"weighted_score": score})
            for ref, score in scores.items()
        ]
        fused.sort(key=lambda r: r.weighted_score, reverse=True)
        return fused[:limit]

    def _weighted_scores(
        self,
        channels: Mapping[str, Sequence[ScoredResult]],
        weights: Mapping[str, float],
    ) -> Dict[str, float]:
        scores: Dict[str, float] = {}
        for name, results in channels.items():
            weight = weights.get(name, 0.0)
            for result in results:
                scores[result.ref_id] = scores.get(result.ref_id, 0.0) + result.raw_score * weight
        return scores

    def _rrf_scores(
        self,
        channels: Mapping[str, Sequence[ScoredResult]],
        weights: Mapping[str, float],
    ) -> Dict[str, float]:
        scores: Dict[str, float] = {}
        for name, results in channels.items():
            weight = weights.get(name, 0.0)
            ranked = sorted(results, key=lambda r: r.raw_score, reverse=True)
            for rank, result in enumerate(ranked, start=1):
                scores[result.ref_id] = scores.get(result.ref_id, 0.0) + weight / (self.rrf_constant + rank)
        return scores

    @staticmethod
    def _representatives(
        channels: Mapping[str, Sequence[ScoredResult]],
        weights: Mapping[str, float],
    ) -> Dict[str, ScoredResult]:
        """Pick, per item, the result from the channel contributing most."""
        best: Dict[str, ScoredResult] = {}
        best_contribution: Dict[str, float] = {}
        for name, results in channels.items():
            weight = weights.get(name, 0.0)
            for result in results:
                contribution = result.raw_score * weight
                ref = result.ref_id
                if ref not in best or contribution > best_contribution[ref]:
                    best[ref] = result
                    best_contribution[ref] = contribution
        return best
