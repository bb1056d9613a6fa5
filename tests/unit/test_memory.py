"""End-to-end tests of the Memory facade with in-process adapters."""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, patch

import pytest

from semantic_memory import (
    ActionKind,
    AdapterError,
    ConcurrencyConflictError,
    ConfigurationError,
    HookRegistry,
    HookValidationError,
    InvalidRequestError,
    Memory,
    MemoryConfig,
    NotFoundError,
)
from semantic_memory.adapters.memory_index import InMemoryVectorIndex
from semantic_memory.adapters.qdrant_index import QdrantVectorIndex
from semantic_memory.models.actions import ClassificationHint


class TestConstruction:
    def test_rejects_non_mapping_config(self, extractor, embedder):
        with pytest.raises(ConfigurationError):
            Memory("qdrant://localhost", extractor=extractor, embedder=embedder)

    def test_rejects_unknown_keys(self, extractor, embedder):
        with pytest.raises(ConfigurationError):
            Memory({"graph_store": {}}, extractor=extractor, embedder=embedder)

    def test_builds_qdrant_index_without_connecting(self, extractor, embedder):
        memory = Memory(
            {"vector_store": {"provider": "qdrant", "url": "http://localhost:6333", "collection_name": "facts"}},
            extractor=extractor,
            embedder=embedder,
        )

        assert isinstance(memory.index, QdrantVectorIndex)
        assert memory.index.collection_name == "facts"
        assert memory.index.client is None

    def test_construction_contacts_no_adapter(self):
        memory = Memory({"custom_fact_extraction_prompt": "Extract facts from: {content}"})

        assert memory.config.custom_fact_extraction_prompt == "Extract facts from: {content}"
        assert memory.extractor.custom_fact_extraction_prompt == "Extract facts from: {content}"
        # Model load and HTTP client creation are deferred to first use
        assert memory.embedder._model is None
        assert memory.extractor._client is None

    def test_defaults_to_in_memory_index(self, extractor, embedder):
        memory = Memory(extractor=extractor, embedder=embedder)
        assert isinstance(memory.index, InMemoryVectorIndex)
        assert isinstance(memory.config, MemoryConfig)

    @pytest.mark.asyncio
    async def test_context_manager_closes_adapters(self, extractor, embedder, index):
        index.close = AsyncMock()
        async with Memory(extractor=extractor, embedder=embedder, index=index) as memory:
            await memory.add("Likes green tea", owner_id="alice")
        index.close.assert_awaited_once()


class TestAdd:
    @pytest.mark.asyncio
    async def test_add_then_search(self, memory):
        result = await memory.add("Lives in Lisbon. Works as a nurse", owner_id="alice")

        assert [e.action_taken for e in result] == [ActionKind.ADD, ActionKind.ADD]
        hits = await memory.search("Works as a nurse", owner_id="alice")
        assert hits[0].memory.content == "Works as a nurse"

    @pytest.mark.asyncio
    async def test_repeated_add_is_idempotent(self, memory):
        await memory.add("Likes green tea", owner_id="alice")
        second = await memory.add("Likes green tea", owner_id="alice")

        assert second[0].action_taken == ActionKind.NOOP
        assert len(await memory.get_all("alice")) == 1

    @pytest.mark.asyncio
    async def test_add_without_inference(self, memory, extractor):
        result = await memory.add("Raw note: call mum on Sunday", owner_id="alice", infer=False)

        assert result[0].item_snapshot.content == "Raw note: call mum on Sunday"
        assert extractor.extract_calls == []

    @pytest.mark.asyncio
    async def test_update_via_classifier(self, memory, extractor):
        added = await memory.add("Lives in Lisbon", owner_id="alice")
        extractor.rules[("Lives in Porto", "Lives in Lisbon")] = ClassificationHint(kind="UPDATE")

        result = await memory.add("Lives in Porto", owner_id="alice")

        assert result[0].action_taken == ActionKind.UPDATE
        assert result[0].item_id == added[0].item_id
        item = await memory.get(added[0].item_id)
        assert item.content == "Lives in Porto"
        assert item.version == 2

    @pytest.mark.asyncio
    async def test_concurrent_identical_adds_store_one_item(self, memory):
        results = await asyncio.gather(*(memory.add("I like tea", owner_id="alice") for _ in range(4)))

        actions = sorted(result[0].action_taken.value for result in results)
        assert actions == ["ADD", "NOOP", "NOOP", "NOOP"]
        assert [item.content for item in await memory.get_all("alice")] == ["I like tea"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"content": "", "owner_id": "alice"},
            {"content": "hello", "owner_id": ""},
            {"content": "hello", "owner_id": "alice", "metadata": ["not", "a", "mapping"]},
            {"content": "hello", "owner_id": "alice", "timeout": 0},
        ],
    )
    async def test_invalid_arguments(self, memory, kwargs):
        with pytest.raises(InvalidRequestError):
            await memory.add(**kwargs)

    @pytest.mark.asyncio
    async def test_result_is_logged(self, memory, caplog):
        with caplog.at_level(logging.INFO, logger="semantic_memory.memory"):
            await memory.add("Likes green tea", owner_id="alice")
        assert "add for owner alice: ADD:" in caplog.text


class TestOwnerIsolation:
    @pytest.mark.asyncio
    async def test_owners_never_see_each_other(self, memory):
        await memory.add("Likes green tea", owner_id="alice")
        await memory.add("Likes green tea", owner_id="bob")

        assert len(await memory.get_all("alice")) == 1
        assert len(await memory.get_all("bob")) == 1
        assert {r.memory.owner_id for r in await memory.search("green tea", owner_id="bob")} == {"bob"}

    @pytest.mark.asyncio
    async def test_delete_all_is_scoped(self, memory):
        await memory.add("Likes green tea. Plays chess", owner_id="alice")
        await memory.add("Likes green tea", owner_id="bob")

        assert await memory.delete_all("alice") == 2
        assert await memory.get_all("alice") == []
        assert len(await memory.get_all("bob")) == 1


class TestUpdateAndDelete:
    @pytest.mark.asyncio
    async def test_update_bumps_version(self, memory):
        added = await memory.add("Likes green tea", owner_id="alice")
        memory_id = added[0].item_id

        item = await memory.update(memory_id, "Likes oolong tea", metadata={"source": "correction"})

        assert item.version == 2
        assert item.content == "Likes oolong tea"
        assert item.metadata == {"source": "correction"}
        hits = await memory.search("Likes oolong tea", owner_id="alice", limit=1)
        assert hits[0].memory.id == memory_id

    @pytest.mark.asyncio
    async def test_update_with_stale_version_raises(self, memory):
        added = await memory.add("Likes green tea", owner_id="alice")
        memory_id = added[0].item_id
        await memory.update(memory_id, "Likes oolong tea")

        with pytest.raises(ConcurrencyConflictError):
            await memory.update(memory_id, "Likes jasmine tea", expected_version=1)

    @pytest.mark.asyncio
    async def test_update_without_version_retries_conflicts(self, memory):
        added = await memory.add("Likes green tea", owner_id="alice")
        memory_id = added[0].item_id
        real_update = memory.repository.update
        calls = []

        async def flaky_update(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise ConcurrencyConflictError(memory_id, 1, 2)
            return await real_update(*args, **kwargs)

        with patch.object(memory.repository, "update", side_effect=flaky_update) as update:
            item = await memory.update(memory_id, "Likes oolong tea")

        assert update.await_count == 2
        assert item.content == "Likes oolong tea"

    @pytest.mark.asyncio
    async def test_update_unknown_raises(self, memory):
        with pytest.raises(NotFoundError):
            await memory.update("missing", "anything")

    @pytest.mark.asyncio
    async def test_update_rejects_empty_content(self, memory):
        with pytest.raises(InvalidRequestError):
            await memory.update("missing", "  ")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("memory_id", ["", None, 42])
    async def test_malformed_ids_are_not_found(self, memory, memory_id):
        with pytest.raises(NotFoundError):
            await memory.update(memory_id, "new text")
        assert await memory.delete(memory_id) is False

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, memory):
        added = await memory.add("Likes green tea", owner_id="alice")
        memory_id = added[0].item_id

        assert await memory.delete(memory_id) is True
        assert await memory.delete(memory_id) is False
        assert await memory.delete("") is False
        assert await memory.get(memory_id) is None
        assert await memory.search("Likes green tea", owner_id="alice") == []

    @pytest.mark.asyncio
    async def test_history(self, memory):
        added = await memory.add("Likes green tea", owner_id="alice")
        memory_id = added[0].item_id
        await memory.update(memory_id, "Likes oolong tea")
        await memory.delete(memory_id)

        assert [h.event for h in await memory.history(memory_id)] == ["ADD", "UPDATE", "DELETE"]

    @pytest.mark.asyncio
    async def test_reset(self, memory):
        await memory.add("Likes green tea", owner_id="alice")
        await memory.reset()
        assert await memory.get_all("alice") == []


class TestSearchDefaults:
    @pytest.mark.asyncio
    async def test_default_limit_from_config(self, extractor, embedder, index):
        memory = Memory({"search": {"default_limit": 2}}, extractor=extractor, embedder=embedder, index=index)
        await memory.add("Likes tea. Likes coffee. Likes juice", owner_id="alice")

        assert len(await memory.search("Likes tea", owner_id="alice")) == 2

    @pytest.mark.asyncio
    async def test_non_positive_limit(self, memory):
        with pytest.raises(InvalidRequestError):
            await memory.search("tea", owner_id="alice", limit=0)


class TestHooks:
    @pytest.mark.asyncio
    async def test_pre_add_veto_stores_nothing(self, extractor, embedder, index):
        hooks = HookRegistry()

        async def reject(event):
            raise HookValidationError("blocked")

        hooks.add("pre_add", reject)
        memory = Memory(extractor=extractor, embedder=embedder, index=index, hooks=hooks)

        with pytest.raises(HookValidationError):
            await memory.add("Likes green tea", owner_id="alice")
        assert len(index) == 0
        assert extractor.extract_calls == []

    @pytest.mark.asyncio
    async def test_post_hooks_receive_results(self, extractor, embedder, index):
        seen = {}
        hooks = HookRegistry()

        def recorder(name):
            async def handler(event):
                seen[name] = event

            return handler

        for name in ("post_add", "post_update", "post_delete", "post_search"):
            hooks.add(name, recorder(name))
        memory = Memory(extractor=extractor, embedder=embedder, index=index, hooks=hooks)

        added = await memory.add("Likes green tea", owner_id="alice")
        memory_id = added[0].item_id
        await memory.search("tea", owner_id="alice")
        await memory.update(memory_id, "Likes oolong tea")
        await memory.delete(memory_id)

        assert seen["post_add"].item_ids == [memory_id]
        assert seen["post_search"].result_count == 1
        assert seen["post_update"].version == 2
        assert seen["post_delete"].deleted is True

    @pytest.mark.asyncio
    async def test_failing_post_hook_does_not_fail_operation(self, extractor, embedder, index):
        hooks = HookRegistry()

        async def explode(event):
            raise RuntimeError("audit sink down")

        hooks.add("post_add", explode)
        memory = Memory(extractor=extractor, embedder=embedder, index=index, hooks=hooks)

        result = await memory.add("Likes green tea", owner_id="alice")
        assert result[0].action_taken == ActionKind.ADD


class TestPersistentHistory:
    @pytest.mark.asyncio
    async def test_history_survives_restart(self, tmp_path, extractor, embedder, index):
        config = {"history_db_path": str(tmp_path / "history" / "memory.db")}

        first = Memory(config, extractor=extractor, embedder=embedder, index=index)
        added = await first.add("Likes green tea", owner_id="alice")
        memory_id = added[0].item_id
        await first.update(memory_id, "Likes oolong tea")
        await first.close()

        second = Memory(config, extractor=extractor, embedder=embedder, index=index)
        history = await second.history(memory_id)

        assert [h.event for h in history] == ["ADD", "UPDATE"]
        assert history[1].old_content == "Likes green tea"
        # The item itself is rebuilt from the index payload
        assert (await second.get(memory_id)).content == "Likes oolong tea"



class TestBackup:
    @pytest.mark.asyncio
    async def test_export_then_import_into_empty_store(self, tmp_path, extractor, embedder, memory):
        added = await memory.add("Lives in Lisbon. Works as a nurse", owner_id="alice", metadata={"topic": "bio"})
        await memory.add("Likes chess", owner_id="bob")
        await memory.update(added[0].item_id, "Lives in Porto")
        originals = await memory.get_all("alice")
        path = str(tmp_path / "backup" / "alice.jsonl")

        exported = await memory.export("alice", path)
        assert exported.exported == 2

        restored = Memory(extractor=extractor, embedder=embedder, index=InMemoryVectorIndex())
        result = await restored.import_(path)

        assert (result.total, result.imported, result.skipped, result.errors) == (2, 2, 0, [])
        assert await restored.get_all("alice") == originals
        assert await restored.get_all("bob") == []
        assert (await restored.get(added[0].item_id)).version == 2
        hits = await restored.search("Works as a nurse", owner_id="alice")
        assert hits[0].memory.id == added[1].item_id
        assert [h.event for h in await restored.history(added[0].item_id)] == ["ADD"]

    @pytest.mark.asyncio
    async def test_import_skips_live_and_deleted_ids(self, tmp_path, memory):
        added = await memory.add("Likes green tea", owner_id="alice")
        await memory.add("Plays chess", owner_id="alice")
        path = str(tmp_path / "alice.jsonl")
        await memory.export("alice", path)
        await memory.delete(added[0].item_id)

        result = await memory.import_(path)

        assert (result.imported, result.skipped) == (0, 2)
        assert await memory.get(added[0].item_id) is None
        assert len(await memory.get_all("alice")) == 1

    @pytest.mark.asyncio
    async def test_import_collects_bad_lines(self, tmp_path, memory):
        good = {"memory_id": "00000000-0000-4000-8000-0000000000aa", "content": "Likes tea", "owner_id": "alice"}
        path = tmp_path / "mixed.jsonl"
        lines = [json.dumps(good), "not json", "[1, 2]", json.dumps({"memory_id": "x", "owner_id": "alice"}), ""]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")

        result = await memory.import_(str(path))

        assert result.total == 4
        assert result.imported == 1
        assert len(result.errors) == 3
        assert not result.is_success
        item = await memory.get(good["memory_id"])
        assert item.content == "Likes tea"
        assert item.version == 1

    @pytest.mark.asyncio
    async def test_adapter_failure_is_reported_per_line(self, tmp_path, extractor, embedder, memory):
        await memory.add("Likes green tea", owner_id="alice")
        path = str(tmp_path / "alice.jsonl")
        await memory.export("alice", path)
        embedder.fail_with = AdapterError("embedder", "model unavailable")

        restored = Memory(extractor=extractor, embedder=embedder, index=InMemoryVectorIndex())
        result = await restored.import_(path)

        assert (result.imported, result.skipped) == (0, 0)
        assert len(result.errors) == 1
        assert "model unavailable" in result.errors[0]
        embedder.fail_with = None
        assert await restored.get_all("alice") == []

    @pytest.mark.asyncio
    async def test_import_missing_file(self, tmp_path, memory):
        with pytest.raises(FileNotFoundError):
            await memory.import_(str(tmp_path / "missing.jsonl"))

    @pytest.mark.asyncio
    async def test_export_requires_owner(self, tmp_path, memory):
        with pytest.raises(InvalidRequestError):
            await memory.export("", str(tmp_path / "out.jsonl"))
