"""
Persistent context store.

``ContextStore`` is the system-of-record capability used by the window store,
the knowledge base and the retrieval engine. ``RedisContextStore`` implements it
on Redis with JSON documents:

- ``{ns}:window:{business}:{conversation}``      context window (TTL = retention)
- ``{ns}:turn:{business}:{conversation}:{id}``   single conversation turn
- ``{ns}:turns:{business}:{conversation}``       turn id list, oldest first
- ``{ns}:kn:{business}:{id}``                    active knowledge node
- ``{ns}:kn_index:{business}``                   set of node ids
- ``{ns}:kn_versions:{business}:{id}``           archived node versions
- ``{ns}:assistant:{id}``                        assistant profile
"""

from typing import List, Optional, Protocol, Type, TypeVar

import structlog
import redis.asyncio as redis
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from aida_libs.common.errors import PersistenceError
from aida_libs.memory.models import AssistantProfile, ContextWindow, ConversationTurn, KnowledgeNode

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ContextStore(Protocol):
    """Query/upsert capability over windows, turns, knowledge nodes and assistants."""

    async def get_window(self, business_id: str, conversation_id: str) -> Optional[ContextWindow]:
        ...

    async def put_window(self, window: ContextWindow, ttl_seconds: Optional[int] = None) -> None:
        ...

    async def get_turn(self, business_id: str, conversation_id: str, turn_id: str) -> Optional[ConversationTurn]:
        ...

    async def put_turn(self, business_id: str, conversation_id: str, turn: ConversationTurn) -> None:
        ...

    async def get_knowledge_node(self, business_id: str, node_id: str) -> Optional[KnowledgeNode]:
        ...

    async def put_knowledge_node(self, node: KnowledgeNode) -> None:
        ...

    async def archive_knowledge_node(self, node: KnowledgeNode) -> None:
        ...

    async def list_knowledge_nodes(self, business_id: str) -> List[KnowledgeNode]:
        ...

    async def get_assistant(self, assistant_id: str) -> Optional[AssistantProfile]:
        ...


class RedisContextStore:
    """
    Redis implementation of ``ContextStore``.

    Every Redis or decoding failure surfaces as ``PersistenceError``.

    Usage:
        store = RedisContextStore(redis_client, namespace="aida")
        await store.put_window(window, ttl_seconds=30 * 86400)
        window = await store.get_window("biz-1", "conv-1")
    """

    def __init__(self, redis_client: redis.Redis, namespace: str = "aida"):
        self.redis = redis_client
        self.namespace = namespace

    def _key(self, *parts: str) -> str:
        return ":".join((self.namespace,) + parts)

    async def _get_model(self, key: str, model: Type[ModelT]) -> Optional[ModelT]:
        try:
            raw = await self.redis.get(key)
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to read {key}", error=str(e)) from e
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except SchemaError as e:
            raise PersistenceError(f"Corrupt document at {key}", error=str(e)) from e

    async def _set_model(self, key: str, value: BaseModel, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self.redis.set(key, value.model_dump_json(), ex=ttl_seconds)
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to write {key}", error=str(e)) from e

    # --- context windows ---------------------------------------------------

    async def get_window(self, business_id: str, conversation_id: str) -> Optional[ContextWindow]:
        return await self._get_model(self._key("window", business_id, conversation_id), ContextWindow)

    async def put_window(self, window: ContextWindow, ttl_seconds: Optional[int] = None) -> None:
        await self._set_model(
            self._key("window", window.business_id, window.conversation_id), window, ttl_seconds
        )
        logger.debug(
            "Context window persisted",
            business_id=window.business_id,
            conversation_id=window.conversation_id,
            turns=len(window.turns),
        )

    # --- turns -------------------------------------------------------------

    async def get_turn(self, business_id: str, conversation_id: str, turn_id: str) -> Optional[ConversationTurn]:
        return await self._get_model(self._key("turn", business_id, conversation_id, turn_id), ConversationTurn)

    async def put_turn(self, business_id: str, conversation_id: str, turn: ConversationTurn) -> None:
        turn_key = self._key("turn", business_id, conversation_id, turn.id)
        index_key = self._key("turns", business_id, conversation_id)
        try:
            created = await self.redis.set(turn_key, turn.model_dump_json(), nx=True)
            if created:
                await self.redis.rpush(index_key, turn.id)
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to write turn {turn.id}", error=str(e)) from e
        if not created:
            logger.warning("Turn already stored, keeping original", turn_id=turn.id)

    async def list_turn_ids(self, business_id: str, conversation_id: str) -> List[str]:
        try:
            return await self.redis.lrange(self._key("turns", business_id, conversation_id), 0, -1)
        except redis.RedisError as e:
            raise PersistenceError("Failed to list turns", error=str(e)) from e

    # --- knowledge nodes -----------------------------------------------------

    async def get_knowledge_node(self, business_id: str, node_id: str) -> Optional[KnowledgeNode]:
        return await self._get_model(self._key("kn", business_id, node_id), KnowledgeNode)

    async def put_knowledge_node(self, node: KnowledgeNode) -> None:
        await self._set_model(self._key("kn", node.business_id, node.id), node)
        try:
            await self.redis.sadd(self._key("kn_index", node.business_id), node.id)
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to index node {node.id}", error=str(e)) from e

    async def archive_knowledge_node(self, node: KnowledgeNode) -> None:
        """Append a snapshot of ``node`` to its version history."""
        try:
            await self.redis.rpush(
                self._key("kn_versions", node.business_id, node.id), node.model_dump_json()
            )
        except redis.RedisError as e:
            raise PersistenceError(f"Failed to archive node {node.id}", error=str(e)) from e

    async def list_knowledge_versions(self, business_id: str, node_id: str) -> List[KnowledgeNode]:
        try:
            raw = await self.redis.lrange(self._key("kn_versions", business_id, node_id), 0, -1)
        except redis.RedisError as e:
            raise PersistenceError("Failed to list node versions", error=str(e)) from e
        return [KnowledgeNode.model_validate_json(item) for item in raw]

    async def list_knowledge_nodes(self, business_id: str) -> List[KnowledgeNode]:
        try:
            node_ids = sorted(await self.redis.smembers(self._key("kn_index", business_id)))
            if not node_ids:
                return []
            raw_nodes = await self.redis.mget([self._key("kn", business_id, i) for i in node_ids])
        except redis.RedisError as e:
            raise PersistenceError("Failed to list knowledge nodes", error=str(e)) from e

        nodes = []
        for node_id, raw in zip(node_ids, raw_nodes):
            if raw is None:
                continue
            try:
                nodes.append(KnowledgeNode.model_validate_json(raw))
            except SchemaError as e:
                logger.warning("Skipping corrupt knowledge node", node_id=node_id, error=str(e))
        return nodes

    # --- assistants ------------------------------------------------------------

    async def get_assistant(self, assistant_id: str) -> Optional[AssistantProfile]:
        return await self._get_model(self._key("assistant", assistant_id), AssistantProfile)

    async def put_assistant(self, assistant: AssistantProfile) -> None:
        await self._set_model(self._key("assistant", assistant.id), assistant)
