"""
Heuristic text analysis behind the context window.

Provides:
- ``TextAnalyzer`` interface (key phrases, topics, entities, summary, sentiment,
  tags, query type)
- ``KeywordTextAnalyzer``, a keyword-list implementation
- ``LanguageProfile`` word lists for English and Portuguese, selected by config

The analyzer can be swapped for an NLP model without touching the retrieval or
pruning code.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Literal, Protocol, Sequence

from aida_libs.memory.models import ConversationTurn, EntityMention, QueryType

Sentiment = Literal["positive", "neutral", "negative"]


class TextAnalyzer(Protocol):
    """Pluggable text analysis capability."""

    def key_phrases(self, text: str) -> List[str]:
        ...

    def extract_topics(self, turns: Sequence[ConversationTurn]) -> List[str]:
        ...

    def extract_entities(self, turns: Sequence[ConversationTurn]) -> Dict[str, EntityMention]:
        ...

    def summarize(self, turns: Sequence[ConversationTurn]) -> str:
        ...

    def sentiment(self, texts: Iterable[str]) -> Sentiment:
        ...

    def extract_tags(self, content: str) -> List[str]:
        ...

    def classify_query(self, text: str) -> QueryType:
        ...

    def is_domain_term(self, word: str) -> bool:
        ...


@dataclass(frozen=True)
class LanguageProfile:
    """Word lists driving the keyword heuristics for one language."""

    code: str
    stop_words: FrozenSet[str]
    positive_words: FrozenSet[str]
    negative_words: FrozenSet[str]
    question_words: FrozenSet[str]
    command_words: FrozenSet[str]
    followup_openers: FrozenSet[str]
    clarification_markers: Sequence[str]
    domain_terms: FrozenSet[str] = field(default_factory=frozenset)
    # capitalized at sentence start but never entities
    common_words: FrozenSet[str] = field(default_factory=frozenset)


ENGLISH = LanguageProfile(
    code="en",
    stop_words=frozenset({
        "this", "that", "with", "have", "will", "from", "they", "know", "want", "been",
        "good", "much", "some", "time", "very", "when", "come", "here", "just", "like",
        "long", "make", "many", "over", "such", "take", "than", "them", "well", "were",
        "what", "your", "about", "would", "could", "there", "their", "which",
    }),
    positive_words=frozenset({"good", "great", "excellent", "happy", "satisfied", "love", "thanks"}),
    negative_words=frozenset({"bad", "terrible", "awful", "angry", "frustrated", "hate", "problem"}),
    question_words=frozenset({"what", "how", "why", "when", "where", "who", "which"}),
    command_words=frozenset({
        "cancel", "book", "schedule", "send", "update", "change", "stop", "start",
        "create", "delete", "remove", "add", "order", "buy", "show", "list", "find",
    }),
    followup_openers=frozenset({"and", "also", "then", "so", "but"}),
    clarification_markers=("what do you mean", "i meant", "i mean", "clarify", "not what i", "did you mean"),
    domain_terms=frozenset({"price", "cost", "feature", "specification", "pricing", "plan", "fee"}),
    common_words=frozenset({
        "the", "our", "you", "yes", "hello", "please", "thanks", "thank", "sure", "can",
        "are", "does", "for", "and", "but", "not", "how", "hey",
    }),
)

PORTUGUESE = LanguageProfile(
    code="pt",
    stop_words=frozenset({
        "para", "como", "mais", "isso", "esse", "essa", "este", "esta", "pelo", "pela",
        "quando", "onde", "qual", "quais", "muito", "também", "porque", "sobre", "entre",
        "depois", "ainda", "mesmo", "você", "vocês", "eles", "elas", "tenho", "quero",
    }),
    positive_words=frozenset({"obrigado", "obrigada", "ótimo", "bom", "excelente", "perfeito", "parabéns"}),
    negative_words=frozenset({"problema", "ruim", "péssimo", "erro", "falha", "terrível", "reclamação"}),
    question_words=frozenset({"que", "como", "quando", "onde", "quem", "qual"}),
    command_words=frozenset({
        "cancelar", "agendar", "marcar", "enviar", "mande", "atualizar", "alterar",
        "parar", "comprar", "pedir", "mostrar", "listar", "remover",
    }),
    followup_openers=frozenset({"e", "também", "então", "mas"}),
    clarification_markers=("o que você quer dizer", "quis dizer", "não foi isso", "esclarecer"),
    domain_terms=frozenset({"preço", "custo", "valor", "plano", "recurso", "especificação", "taxa"}),
    common_words=frozenset({
        "olá", "obrigado", "obrigada", "sim", "não", "por", "favor", "bom", "boa", "nós", "nosso",
    }),
)

LANGUAGE_PROFILES: Dict[str, LanguageProfile] = {
    ENGLISH.code: ENGLISH,
    PORTUGUESE.code: PORTUGUESE,
}

_WORD_RE = re.compile(r"[^\w\s]", re.UNICODE)
_ENTITY_RE = re.compile(r"\b[A-ZÀ-Ý][a-zà-ÿ]+\b")
_SENTENCE_RE = re.compile(r"[.!?]+")


class KeywordTextAnalyzer:
    """
    Keyword-list text analysis.

    Usage:
        analyzer = KeywordTextAnalyzer(LANGUAGE_PROFILES["en"])
        topics = analyzer.extract_topics(window.turns)
    """

    def __init__(
        self,
        profile: LanguageProfile = ENGLISH,
        max_key_phrases: int = 10,
        max_topics: int = 5,
        topic_turns: int = 10,
        entity_turns: int = 5,
        summary_turns: int = 5,
        summary_sentences: int = 3,
    ):
        self.profile = profile
        self.max_key_phrases = max_key_phrases
        self.max_topics = max_topics
        self.topic_turns = topic_turns
        self.entity_turns = entity_turns
        self.summary_turns = summary_turns
        self.summary_sentences = summary_sentences

    @classmethod
    def for_language(cls, language: str) -> "KeywordTextAnalyzer":
        """Build an analyzer for a configured language code (falls back to English)."""
        return cls(LANGUAGE_PROFILES.get(language, ENGLISH))

    def _words(self, text: str) -> List[str]:
        return _WORD_RE.sub(" ", text.lower()).split()

    def key_phrases(self, text: str) -> List[str]:
        """Content words longer than 3 characters, stop words removed, in order."""
        words = [
            w for w in self._words(text)
            if len(w) > 3 and w not in self.profile.stop_words
        ]
        return words[: self.max_key_phrases]

    def extract_topics(self, turns: Sequence[ConversationTurn]) -> List[str]:
        """Most frequent key phrases over the most recent turns."""
        counts: Counter = Counter()
        for turn in list(turns)[-self.topic_turns:]:
            counts.update(self.key_phrases(turn.text))
        # Counter.most_common keeps first-seen order for ties
        return [topic for topic, _ in counts.most_common(self.max_topics)]

    def extract_entities(self, turns: Sequence[ConversationTurn]) -> Dict[str, EntityMention]:
        """Capitalized words from the most recent turns, with mention counts."""
        entities: Dict[str, EntityMention] = {}
        for turn in list(turns)[-self.entity_turns:]:
            for word in _ENTITY_RE.findall(turn.text):
                if len(word) <= 2 or word.lower() in self.profile.stop_words:
                    continue
                if word.lower() in self.profile.question_words or word.lower() in self.profile.common_words:
                    continue
                previous = entities.get(word)
                entities[word] = EntityMention(
                    type="unknown",
                    mention_count=(previous.mention_count if previous else 0) + 1,
                    last_seen=turn.timestamp,
                )
        return entities

    def summarize(self, turns: Sequence[ConversationTurn]) -> str:
        """First few substantial sentences of the most recent turns."""
        sentences: List[str] = []
        for turn in list(turns)[-self.summary_turns:]:
            for sentence in _SENTENCE_RE.split(turn.text):
                sentence = sentence.strip()
                if len(sentence) > 20:
                    sentences.append(sentence)
        return ". ".join(sentences[: self.summary_sentences])

    def sentiment(self, texts: Iterable[str]) -> Sentiment:
        positive = negative = 0
        for text in texts:
            lowered = text.lower()
            positive += sum(1 for word in self.profile.positive_words if word in lowered)
            negative += sum(1 for word in self.profile.negative_words if word in lowered)
        if positive > negative:
            return "positive"
        if negative > positive:
            return "negative"
        return "neutral"

    def extract_tags(self, content: str, limit: int = 5) -> List[str]:
        """Most frequent words longer than 3 characters."""
        counts = Counter(
            w for w in self._words(content)
            if len(w) > 3 and w not in self.profile.stop_words
        )
        return [tag for tag, _ in counts.most_common(limit)]

    def classify_query(self, text: str) -> QueryType:
        lowered = text.strip().lower()
        words = self._words(lowered)
        if not words:
            return "statement"
        if any(marker in lowered for marker in self.profile.clarification_markers):
            return "clarification"
        if words[0] in self.profile.command_words:
            return "command"
        if words[0] in self.profile.followup_openers and len(words) > 1:
            return "followup"
        if lowered.endswith("?") or words[0] in self.profile.question_words:
            return "question"
        return "statement"

    def is_domain_term(self, word: str) -> bool:
        return word.lower() in self.profile.domain_terms
