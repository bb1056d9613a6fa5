"""Tests for the in-process vector index."""

import pytest

from semantic_memory.adapters.memory_index import InMemoryVectorIndex, matches_filters
from semantic_memory.errors import AdapterError


def payload(owner, created_at=0.0, **metadata):
    return {"owner_id": owner, "content": "x", "metadata": metadata, "created_at": created_at}


@pytest.mark.asyncio
async def test_query_is_scoped_to_owner():
    index = InMemoryVectorIndex()
    await index.upsert("a1", [1.0, 0.0], payload("alice"))
    await index.upsert("b1", [1.0, 0.0], payload("bob"))

    hits = await index.query("alice", [1.0, 0.0], k=10)

    assert [h.id for h in hits] == ["a1"]


@pytest.mark.asyncio
async def test_cosine_orders_best_first():
    index = InMemoryVectorIndex()
    await index.upsert("far", [0.0, 1.0], payload("alice"))
    await index.upsert("near", [1.0, 0.1], payload("alice"))

    hits = await index.query("alice", [1.0, 0.0], k=2)

    assert [h.id for h in hits] == ["near", "far"]
    assert hits[0].score == pytest.approx(0.995, abs=1e-3)


@pytest.mark.asyncio
async def test_euclid_orders_smallest_distance_first():
    index = InMemoryVectorIndex(distance_metric="Euclid")
    await index.upsert("far", [5.0, 5.0], payload("alice"))
    await index.upsert("near", [1.0, 0.0], payload("alice"))

    hits = await index.query("alice", [1.0, 0.0], k=2)

    assert [h.id for h in hits] == ["near", "far"]
    assert hits[0].score == 0.0


@pytest.mark.asyncio
async def test_query_respects_k_and_filters():
    index = InMemoryVectorIndex()
    for i in range(5):
        await index.upsert(f"m{i}", [1.0, float(i)], payload("alice", topic="tea" if i % 2 else "coffee"))

    assert len(await index.query("alice", [1.0, 0.0], k=2)) == 2
    tea = await index.query("alice", [1.0, 0.0], k=10, filters={"topic": "tea"})
    assert sorted(h.id for h in tea) == ["m1", "m3"]
    assert await index.query("alice", [1.0, 0.0], k=0) == []


@pytest.mark.asyncio
async def test_dimension_mismatch_raises_adapter_error():
    index = InMemoryVectorIndex(dimensions=3)
    with pytest.raises(AdapterError, match="dimension mismatch"):
        await index.upsert("a", [1.0, 0.0], payload("alice"))


@pytest.mark.asyncio
async def test_upsert_requires_owner():
    index = InMemoryVectorIndex()
    with pytest.raises(AdapterError, match="owner_id"):
        await index.upsert("a", [1.0], {"content": "x"})


@pytest.mark.asyncio
async def test_get_returns_copy_and_delete_is_idempotent():
    index = InMemoryVectorIndex()
    await index.upsert("a", [1.0, 0.0], payload("alice", topic="tea"))

    stored = await index.get("a")
    stored["metadata"]["topic"] = "mutated"
    assert (await index.get("a"))["metadata"]["topic"] == "tea"

    assert await index.delete("a") is True
    assert await index.delete("a") is False
    assert await index.get("a") is None


@pytest.mark.asyncio
async def test_update_payload_keeps_vector():
    index = InMemoryVectorIndex()
    await index.upsert("a", [1.0, 0.0], payload("alice", topic="tea"))

    await index.update_payload("a", payload("alice", topic="coffee"))

    hits = await index.query("alice", [1.0, 0.0], k=1)
    assert hits[0].payload["metadata"] == {"topic": "coffee"}
    assert hits[0].score == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_update_payload_unknown_id_raises():
    with pytest.raises(AdapterError):
        await InMemoryVectorIndex().update_payload("missing", payload("alice"))


@pytest.mark.asyncio
async def test_scan_sorted_by_created_at_and_reset():
    index = InMemoryVectorIndex()
    await index.upsert("second", [1.0], payload("alice", created_at=2.0))
    await index.upsert("first", [1.0], payload("alice", created_at=1.0))
    await index.upsert("other", [1.0], payload("bob", created_at=0.5))

    assert [h.id for h in await index.scan("alice")] == ["first", "second"]
    assert [h.id for h in await index.scan("alice", limit=1)] == ["first"]

    await index.reset()
    assert len(index) == 0
    assert await index.scan("alice") == []


def test_matches_filters_requires_key_presence():
    assert matches_filters(payload("alice", topic=None), {"topic": None})
    assert not matches_filters(payload("alice"), {"topic": None})
    assert matches_filters(payload("alice"), None)


def test_unknown_metric_rejected():
    with pytest.raises(ValueError):
        InMemoryVectorIndex(distance_metric="manhattan")
