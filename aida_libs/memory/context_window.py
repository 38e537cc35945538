"""
Context window store for conversation memory.

Keeps one ``ContextWindow`` per (business, conversation):
- In-process map first, then the persistent store, then a new empty window
- Turn append with derived summary, topics, entities and token estimate
- Deterministic pruning against turn and token budgets
- Best-effort persistence with a retention TTL
- Bounded in-process map; evicted windows reload from the store

Token budget uses a 4-characters-per-token heuristic.
"""

import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

import structlog

from aida_libs.common.errors import PersistenceError
from aida_libs.memory.models import (
    ContextWindow,
    ConversationTurn,
    QueryType,
    utc_now,
    window_key,
)
from aida_libs.memory.store import ContextStore
from aida_libs.memory.text_analyzer import TextAnalyzer

logger = structlog.get_logger(__name__)

CHARS_PER_TOKEN = 4
RECENT_TURN_RATIO = 0.7
SUMMARY_EXTENSION_MIN_CHARS = 50
SUMMARY_MAX_CHARS = 500


def estimate_turn_tokens(turn: ConversationTurn) -> int:
    return math.ceil(len(turn.user_text + turn.system_text) / CHARS_PER_TOKEN)


def estimate_tokens(turns: Iterable[ConversationTurn]) -> int:
    """Estimated token count of user + system text across turns."""
    return sum(estimate_turn_tokens(turn) for turn in turns)


def prune_turns(
    turns: Sequence[ConversationTurn],
    max_turns: int,
    max_context_tokens: int,
) -> List[ConversationTurn]:
    """
    Select the turns that survive pruning.

    Important turns (confidence > 0.8 or commands) and the last
    ``floor(max_turns * 0.7)`` turns are always candidates. Remaining room up to
    ``max_turns`` is filled with the newest leftover turns while the token budget
    allows. Candidates are ordered by timestamp and cut to the newest
    ``max_turns``; if the estimate is still over budget, the oldest
    non-important turns go first, then the oldest overall.

    An important turn can still be dropped when more than ``max_turns``
    candidates exist or when important turns alone exceed the token budget.

    Args:
        turns: Turns in append order
        max_turns: Maximum turns to keep
        max_context_tokens: Maximum estimated tokens to keep

    Returns:
        Retained turns, oldest first
    """
    position = {turn.id: index for index, turn in enumerate(turns)}
    recent_count = math.floor(max_turns * RECENT_TURN_RATIO)

    selected: Dict[str, ConversationTurn] = {}
    for turn in turns:
        if turn.is_important:
            selected[turn.id] = turn
    for turn in turns[len(turns) - recent_count:] if recent_count else []:
        selected[turn.id] = turn

    tokens = estimate_tokens(selected.values())
    for turn in reversed(turns):
        if len(selected) >= max_turns:
            break
        if turn.id in selected:
            continue
        cost = estimate_turn_tokens(turn)
        if tokens + cost > max_context_tokens:
            break
        selected[turn.id] = turn
        tokens += cost

    kept = sorted(selected.values(), key=lambda t: (t.timestamp, position[t.id]))[-max_turns:]

    while kept and estimate_tokens(kept) > max_context_tokens:
        victim = next((t for t in kept if not t.is_important), kept[0])
        kept.remove(victim)

    return kept


@dataclass
class WindowStoreStats:
    cache_hits: int = 0
    loads: int = 0
    creations: int = 0
    prunes: int = 0
    analysis_failures: int = 0
    evictions: int = 0


class ContextWindowStore:
    """
    Manages per-conversation context windows.

    Usage:
        windows = ContextWindowStore(KeywordTextAnalyzer(), store=RedisContextStore(redis_client))
        window = await windows.get_or_create("biz-1", "conv-1")
        windows.add_turn(window, "Do you ship to Lisbon?", "Yes, in 3-5 days.")
        await windows.persist(window)
    """

    def __init__(
        self,
        analyzer: TextAnalyzer,
        store: Optional[ContextStore] = None,
        max_turns: int = 20,
        max_context_tokens: int = 8000,
        persistence_enabled: bool = True,
        retention_days: int = 30,
        max_windows: int = 1000,
    ):
        """
        Initialize window store.

        Args:
            analyzer: Text analysis used for derived metadata
            store: Persistent store, None keeps windows in process only
            max_turns: Turn budget per window
            max_context_tokens: Token budget per window
            persistence_enabled: Load/persist through the store
            retention_days: TTL of persisted windows
            max_windows: In-process windows kept, least recently used evicted first
        """
        self.analyzer = analyzer
        self.store = store
        self.max_turns = max_turns
        self.max_context_tokens = max_context_tokens
        self.persistence_enabled = persistence_enabled and store is not None
        self.retention_seconds = retention_days * 86400
        self.max_windows = max_windows
        self._windows: "OrderedDict[str, ContextWindow]" = OrderedDict()
        self._stats = WindowStoreStats()

    async def get_or_create(
        self,
        business_id: str,
        conversation_id: str,
        user_id: Optional[str] = None,
    ) -> ContextWindow:
        """Fetch the window from memory, then the store, else create it."""
        key = window_key(business_id, conversation_id)
        window = self._windows.get(key)
        if window is not None:
            self._stats.cache_hits += 1
            self._windows.move_to_end(key)
            return window

        if self.persistence_enabled:
            try:
                window = await self.store.get_window(business_id, conversation_id)
            except PersistenceError as e:
                logger.warning(
                    "Failed to load context window, starting empty",
                    business_id=business_id,
                    conversation_id=conversation_id,
                    error=str(e),
                )
                window = None
            if window is not None:
                self._stats.loads += 1
                self._cache(key, window)
                logger.debug("Context window loaded", key=key, turns=len(window.turns))
                return window

        window = ContextWindow(
            conversation_id=conversation_id,
            business_id=business_id,
            user_id=user_id,
        )
        self._stats.creations += 1
        self._cache(key, window)
        logger.debug("Context window created", key=key)
        return window

    def add_turn(
        self,
        window: ContextWindow,
        user_text: str,
        system_text: str = "",
        query_type: Optional[QueryType] = None,
        confidence: float = 0.8,
        relevant_document_ids: Optional[List[str]] = None,
    ) -> ConversationTurn:
        """
        Append a turn, refresh derived metadata and prune if over budget.

        Returns:
            The new turn
        """
        turn = ConversationTurn(
            user_text=user_text,
            system_text=system_text,
            extracted_terms=self._safe(lambda: self.analyzer.key_phrases(user_text), []),
            query_type=query_type or self._safe(lambda: self.analyzer.classify_query(user_text), "question"),
            confidence=confidence,
            relevant_document_ids=relevant_document_ids or [],
        )
        window.turns.append(turn)
        self.refresh(window)
        self.prune_if_needed(window)
        self._cache(window.key, window)
        return turn

    def needs_pruning(self, window: ContextWindow) -> bool:
        return (
            len(window.turns) > self.max_turns
            or window.total_token_estimate > self.max_context_tokens
        )

    def prune_if_needed(self, window: ContextWindow) -> bool:
        """Prune the window when a budget is exceeded. Returns True if pruned."""
        if not self.needs_pruning(window):
            return False

        before = len(window.turns)
        window.turns = prune_turns(window.turns, self.max_turns, self.max_context_tokens)
        self.refresh(window)
        self._stats.prunes += 1

        logger.info(
            "Context window pruned",
            key=window.key,
            turns_before=before,
            turns_after=len(window.turns),
            tokens=window.total_token_estimate,
        )
        return True

    def refresh(self, window: ContextWindow) -> None:
        """Regenerate summary, topics, entities and token estimate from the turns."""
        window.summary = self._safe(lambda: self.analyzer.summarize(window.turns), window.summary)
        window.topics = self._safe(lambda: self.analyzer.extract_topics(window.turns), window.topics)
        window.entities = self._safe(lambda: self.analyzer.extract_entities(window.turns), window.entities)
        window.total_token_estimate = estimate_tokens(window.turns)
        window.last_updated = utc_now()

    def extend_summary(self, window: ContextWindow, message: str) -> bool:
        """Append the latest long message to the running summary, capped in length."""
        if len(message) <= SUMMARY_EXTENSION_MIN_CHARS:
            return False
        addition = f". Latest: {message[:100]}"
        current = window.summary
        if len(current) + len(addition) > SUMMARY_MAX_CHARS:
            current = current[: SUMMARY_MAX_CHARS - len(addition)]
        window.summary = current + addition
        return True

    async def persist(self, window: ContextWindow) -> None:
        """
        Write the window to the persistent store.

        Raises:
            PersistenceError: Store write failed
        """
        if not self.persistence_enabled:
            return
        await self.store.put_window(window, ttl_seconds=self.retention_seconds)

    def _cache(self, key: str, window: ContextWindow) -> None:
        """Keep the window in process, evicting the least recently used beyond capacity."""
        self._windows[key] = window
        self._windows.move_to_end(key)
        while len(self._windows) > self.max_windows:
            evicted, _ = self._windows.popitem(last=False)
            self._stats.evictions += 1
            logger.debug("Context window evicted from memory", key=evicted)

    def __contains__(self, key: str) -> bool:
        """True when the window for ``business_id:conversation_id`` is held in process."""
        return key in self._windows

    def clear(self) -> None:
        self._windows.clear()

    def get_stats(self) -> WindowStoreStats:
        return self._stats

    def _safe(self, compute, default):
        """Run an analyzer call, keeping ``default`` if it fails."""
        try:
            return compute()
        except Exception as e:
            self._stats.analysis_failures += 1
            logger.warning("Text analysis failed, keeping previous value", error=str(e))
            return default
