"""
Tests for the business knowledge base.

Tests verify:
- Node creation embeds name and content and derives tags
- Updates archive the previous version and bump the version
- Ingestion upserts by entity type and name
- Provider failures store the node without a vector
"""

import pytest

from aida_libs.common.errors import ValidationError
from aida_libs.memory.knowledge import KnowledgeInput


@pytest.mark.asyncio
async def test_create_node(knowledge_base, embedding_provider, context_store):
    """Test a new node is embedded, tagged and stored."""

    node = await knowledge_base.create_node(
        "biz-1", "policy", "Refund policy", "Refunds are issued within 30 days of purchase with a receipt."
    )

    assert node.version == 1
    assert node.embedding == embedding_provider.vector_for(
        "Refund policy: Refunds are issued within 30 days of purchase with a receipt."
    )
    assert "refunds" in node.tags
    assert await context_store.get_knowledge_node("biz-1", node.id) == node


@pytest.mark.asyncio
async def test_update_node_versions(knowledge_base, context_store):
    """Test an update writes version 2 and archives version 1."""

    original = await knowledge_base.create_node("biz-1", "faq", "Opening hours", "Monday to Friday 9-17.")

    updated = await knowledge_base.update_node("biz-1", original.id, content="Monday to Saturday 9-18.")

    assert updated.id == original.id
    assert updated.version == 2
    assert updated.content == "Monday to Saturday 9-18."
    assert updated.embedding != original.embedding
    assert (await knowledge_base.get_node("biz-1", original.id)).version == 2

    history = await context_store.list_knowledge_versions("biz-1", original.id)
    assert [(v.version, v.content) for v in history] == [(1, "Monday to Friday 9-17.")]


@pytest.mark.asyncio
async def test_update_missing_node_rejected(knowledge_base):
    with pytest.raises(ValidationError):
        await knowledge_base.update_node("biz-1", "does-not-exist", content="x")


@pytest.mark.asyncio
async def test_ingest_upserts_by_type_and_name(knowledge_base):
    """Test ingestion creates, updates and skips unchanged items."""

    first = await knowledge_base.ingest("biz-1", [
        KnowledgeInput(entity_type="product", entity_name="Blender X", content="600W blender."),
        KnowledgeInput(entity_type="product", entity_name="Kettle", content="1.7L kettle."),
    ])
    second = await knowledge_base.ingest("biz-1", [
        KnowledgeInput(entity_type="Product", entity_name="blender x", content="800W blender."),
        KnowledgeInput(entity_type="product", entity_name="Kettle", content="1.7L kettle."),
        KnowledgeInput(entity_type="product", entity_name="Toaster", content="4-slot toaster."),
    ])

    assert len(first.created) == 2
    assert second.updated == [first.created[0]]
    assert second.unchanged == [first.created[1]]
    assert len(second.created) == 1

    nodes = {n.entity_name: n for n in await knowledge_base.list_nodes("biz-1")}
    assert nodes["Blender X"].version == 2
    assert nodes["Blender X"].content == "800W blender."
    assert set(nodes) == {"Blender X", "Kettle", "Toaster"}


@pytest.mark.asyncio
async def test_provider_failure_stores_node_without_vector(knowledge_base, embedding_provider):
    """Test a node is still stored when embedding fails."""

    embedding_provider.fail = True

    node = await knowledge_base.create_node("biz-1", "faq", "Parking", "Free parking behind the store.")

    assert node.embedding is None
    assert await knowledge_base.get_node("biz-1", node.id) is not None
