"""Tests for the SQLite history store."""

import pytest

from semantic_memory.models.history import HistoryRecord
from semantic_memory.storage.history_db import HistoryDB


@pytest.fixture
async def history_db(tmp_path):
    db = HistoryDB(str(tmp_path / "nested" / "history.db"))
    await db.initialize()
    yield db
    await db.close()


@pytest.mark.asyncio
async def test_initialize_creates_parent_directory(tmp_path):
    path = tmp_path / "a" / "b" / "history.db"
    await HistoryDB(str(path)).initialize()
    assert path.exists()


@pytest.mark.asyncio
async def test_records_roundtrip_in_order(history_db):
    await history_db.add_record(
        HistoryRecord(memory_id="m1", event="ADD", timestamp=100.0, owner_id="alice", new_content="Likes tea", version=1)
    )
    await history_db.add_record(
        HistoryRecord(
            memory_id="m1",
            event="UPDATE",
            timestamp=200.0,
            owner_id="alice",
            old_content="Likes tea",
            new_content="Likes coffee",
            version=2,
            metadata={"source": "chat"},
        )
    )
    await history_db.add_record(HistoryRecord(memory_id="m2", event="ADD", timestamp=150.0, new_content="Other"))

    records = await history_db.get_history("m1")

    assert [r.event for r in records] == ["ADD", "UPDATE"]
    assert records[0].metadata == {}
    assert records[1].old_content == "Likes tea"
    assert records[1].metadata == {"source": "chat"}
    assert records[1].version == 2


@pytest.mark.asyncio
async def test_same_timestamp_keeps_insertion_order(history_db):
    for event in ("ADD", "UPDATE", "DELETE"):
        await history_db.add_record(HistoryRecord(memory_id="m1", event=event, timestamp=42.0))

    assert [r.event for r in await history_db.get_history("m1")] == ["ADD", "UPDATE", "DELETE"]


@pytest.mark.asyncio
async def test_unknown_memory_has_no_history(history_db):
    assert await history_db.get_history("missing") == []


@pytest.mark.asyncio
async def test_reset(history_db):
    await history_db.add_record(HistoryRecord(memory_id="m1", event="ADD", timestamp=1.0))
    await history_db.reset()
    assert await history_db.get_history("m1") == []


@pytest.mark.asyncio
async def test_lazy_initialization(tmp_path):
    db = HistoryDB(str(tmp_path / "lazy.db"))
    await db.add_record(HistoryRecord(memory_id="m1", event="DELETE", timestamp=1.0))
    assert len(await db.get_history("m1")) == 1
