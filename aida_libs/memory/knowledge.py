"""
Business knowledge base.

Knowledge nodes are owned by a business and versioned: an update archives the
current version and writes a new one with ``version + 1``; nothing is deleted
in place. Ingestion upserts by ``(entity_type, entity_name)``.
"""

from dataclasses import dataclass, field
from typing import List, Optional

import structlog
from pydantic import BaseModel, Field

from aida_libs.caching.embedding_cache import EmbeddingCache
from aida_libs.common.errors import ProviderError, ValidationError
from aida_libs.memory.models import KnowledgeNode, utc_now
from aida_libs.memory.store import ContextStore
from aida_libs.memory.text_analyzer import TextAnalyzer

logger = structlog.get_logger(__name__)


class KnowledgeInput(BaseModel):
    """One item of a knowledge ingestion batch."""

    entity_type: str = Field(min_length=1)
    entity_name: str = Field(min_length=1)
    content: str = Field(min_length=1)
    tags: Optional[List[str]] = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


@dataclass
class IngestReport:
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)


class KnowledgeBase:
    """
    Create, version and ingest business knowledge nodes.

    Usage:
        kb = KnowledgeBase(store, embeddings, analyzer)
        node = await kb.create_node("biz-1", "policy", "Refunds", "Refunds within 30 days.")
        node = await kb.update_node("biz-1", node.id, content="Refunds within 60 days.")
        node.version  # 2
    """

    def __init__(self, store: ContextStore, embeddings: EmbeddingCache, analyzer: TextAnalyzer):
        self.store = store
        self.embeddings = embeddings
        self.analyzer = analyzer

    async def _embed(self, node_text: str) -> Optional[List[float]]:
        # Nodes without an embedding still match through keyword and graph channels
        try:
            return (await self.embeddings.embed(node_text)).vector
        except ProviderError as e:
            logger.warning("Knowledge embedding failed, storing without vector", error=str(e))
            return None

    @staticmethod
    def _embedding_text(entity_name: str, content: str) -> str:
        return f"{entity_name}: {content}"

    async def create_node(
        self,
        business_id: str,
        entity_type: str,
        entity_name: str,
        content: str,
        tags: Optional[List[str]] = None,
        confidence: float = 1.0,
    ) -> KnowledgeNode:
        node = KnowledgeNode(
            business_id=business_id,
            entity_type=entity_type,
            entity_name=entity_name,
            content=content,
            embedding=await self._embed(self._embedding_text(entity_name, content)),
            confidence=confidence,
            tags=tags if tags is not None else self.analyzer.extract_tags(content),
        )
        await self.store.put_knowledge_node(node)
        logger.info(
            "Knowledge node created",
            business_id=business_id,
            node_id=node.id,
            entity_type=entity_type,
            entity_name=entity_name,
        )
        return node

    async def update_node(
        self,
        business_id: str,
        node_id: str,
        content: Optional[str] = None,
        tags: Optional[List[str]] = None,
        confidence: Optional[float] = None,
    ) -> KnowledgeNode:
        """
        Write a new version of a node, archiving the current one.

        Raises:
            ValidationError: Node does not exist for this business
        """
        current = await self.store.get_knowledge_node(business_id, node_id)
        if current is None:
            raise ValidationError(f"Knowledge node {node_id} not found", business_id=business_id)

        changes = {"version": current.version + 1, "updated_at": utc_now()}
        if content is not None and content != current.content:
            changes["content"] = content
            changes["embedding"] = await self._embed(self._embedding_text(current.entity_name, content))
            if tags is None:
                changes["tags"] = self.analyzer.extract_tags(content)
        if tags is not None:
            changes["tags"] = tags
        if confidence is not None:
            changes["confidence"] = confidence

        await self.store.archive_knowledge_node(current)
        updated = current.model_copy(update=changes)
        await self.store.put_knowledge_node(updated)

        logger.info(
            "Knowledge node updated",
            business_id=business_id,
            node_id=node_id,
            version=updated.version,
        )
        return updated

    async def get_node(self, business_id: str, node_id: str) -> Optional[KnowledgeNode]:
        return await self.store.get_knowledge_node(business_id, node_id)

    async def list_nodes(self, business_id: str) -> List[KnowledgeNode]:
        return [n for n in await self.store.list_knowledge_nodes(business_id) if n.is_active]

    async def ingest(self, business_id: str, items: List[KnowledgeInput]) -> IngestReport:
        """Upsert items by (entity_type, entity_name)."""
        report = IngestReport()
        existing = {
            (n.entity_type.lower(), n.entity_name.lower()): n
            for n in await self.list_nodes(business_id)
        }
        for item in items:
            match = existing.get((item.entity_type.lower(), item.entity_name.lower()))
            if match is None:
                node = await self.create_node(
                    business_id,
                    item.entity_type,
                    item.entity_name,
                    item.content,
                    tags=item.tags,
                    confidence=item.confidence,
                )
                existing[(item.entity_type.lower(), item.entity_name.lower())] = node
                report.created.append(node.id)
            elif match.content == item.content and (item.tags is None or item.tags == match.tags):
                report.unchanged.append(match.id)
            else:
                node = await self.update_node(
                    business_id,
                    match.id,
                    content=item.content,
                    tags=item.tags,
                    confidence=item.confidence,
                )
                existing[(item.entity_type.lower(), item.entity_name.lower())] = node
                report.updated.append(node.id)

        logger.info(
            "Knowledge ingested",
            business_id=business_id,
            created=len(report.created),
            updated=len(report.updated),
            unchanged=len(report.unchanged),
        )
        return report
