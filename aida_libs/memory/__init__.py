"""
Conversation and business memory.

Provides:
- Context windows with pruning (per-conversation memory)
- Business knowledge base with versioned nodes
- Pluggable text analysis
- Redis-backed persistent store
"""

from aida_libs.memory.context_window import ContextWindowStore
from aida_libs.memory.knowledge import KnowledgeBase
from aida_libs.memory.store import RedisContextStore
from aida_libs.memory.text_analyzer import KeywordTextAnalyzer

__all__ = ["ContextWindowStore", "KnowledgeBase", "RedisContextStore", "KeywordTextAnalyzer"]
