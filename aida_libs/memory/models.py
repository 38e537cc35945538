"""
Memory data models.

Conversation turns, context windows, business knowledge nodes and the scored
results produced by retrieval. Retrieved context is a tagged variant: every
``ScoredResult`` carries a typed payload discriminated by ``kind``.
"""

import uuid
from datetime import datetime, timezone
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field


QueryType = Literal["question", "command", "clarification", "followup", "statement"]
SourceType = Literal["conversation", "document", "entity", "graph"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class ConversationTurn(BaseModel):
    """One user message and the system reply. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    user_text: str
    system_text: str = ""
    extracted_terms: List[str] = Field(default_factory=list)
    query_type: QueryType = "question"
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    relevant_document_ids: List[str] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return f"{self.user_text} {self.system_text}".strip()

    @property
    def is_important(self) -> bool:
        """High-confidence and command turns survive pruning."""
        return self.confidence > 0.8 or self.query_type == "command"


class EntityMention(BaseModel):
    type: str = "unknown"
    mention_count: int = 0
    last_seen: datetime = Field(default_factory=utc_now)


class ContextWindow(BaseModel):
    """Per (business, conversation) memory feeding the generator."""

    conversation_id: str
    business_id: str
    user_id: Optional[str] = None
    turns: List[ConversationTurn] = Field(default_factory=list)
    summary: str = ""
    topics: List[str] = Field(default_factory=list, description="Unique topics, most frequent first")
    entities: Dict[str, EntityMention] = Field(default_factory=dict)
    total_token_estimate: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    last_updated: datetime = Field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return window_key(self.business_id, self.conversation_id)


def window_key(business_id: str, conversation_id: str) -> str:
    return f"{business_id}:{conversation_id}"


class KnowledgeNode(BaseModel):
    """Versioned business knowledge entry."""

    id: str = Field(default_factory=new_id)
    business_id: str
    entity_type: str
    entity_name: str
    content: str
    embedding: Optional[List[float]] = None
    version: int = 1
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    tags: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class AssistantProfile(BaseModel):
    """Assistant configuration loaded during the context stage."""

    id: str
    business_id: str
    name: str = "Assistant"
    instructions: str = ""
    response_style: str = "friendly and concise"
    language: str = "en"
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    confidence_threshold: Optional[float] = None
    max_message_length: int = 1600


# ==============================================================================
# Retrieved context variants
# ==============================================================================


class ConversationPayload(BaseModel):
    kind: Literal["conversation"] = "conversation"
    turn_id: str
    timestamp: datetime
    query_type: QueryType = "question"


class DocumentPayload(BaseModel):
    kind: Literal["document"] = "document"
    node_id: str
    entity_type: str
    entity_name: str
    version: int = 1
    tags: List[str] = Field(default_factory=list)
    channels: List[str] = Field(default_factory=list, description="Search channels that matched")


class EntityPayload(BaseModel):
    kind: Literal["entity"] = "entity"
    name: str
    entity_type: str = "unknown"
    mention_count: int = 0
    last_seen: Optional[datetime] = None


class GraphPayload(BaseModel):
    kind: Literal["graph"] = "graph"
    node_id: str
    entity_name: str
    matched_terms: List[str] = Field(default_factory=list)


ContextPayload = Annotated[
    Union[ConversationPayload, DocumentPayload, EntityPayload, GraphPayload],
    Field(discriminator="kind"),
]


class ScoredResult(BaseModel):
    """One retrieved piece of context with its raw and weighted relevance."""

    content: str
    payload: ContextPayload
    raw_score: float = Field(ge=0.0)
    weighted_score: float = 0.0

    @computed_field
    @property
    def source_type(self) -> SourceType:
        return self.payload.kind

    @property
    def ref_id(self) -> str:
        """Identity used to merge the same item found through several channels."""
        payload = self.payload
        if isinstance(payload, ConversationPayload):
            return f"conversation:{payload.turn_id}"
        if isinstance(payload, EntityPayload):
            return f"entity:{payload.name.lower()}"
        return f"node:{payload.node_id}"
