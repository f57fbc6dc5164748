"""Tests for conversation storage and its read cache."""

import pytest

from convo_recall.storage import ConversationStorage
from convo_recall.vector_store import OWNER_DECISION, OWNER_MESSAGE, EmbeddingStore


def conversation(conv_id="conv-1", **overrides):
    record = {
        "id": conv_id,
        "project_path": "/work/project",
        "first_message_at": 1_000,
        "last_message_at": 2_000,
        "message_count": 1,
        "metadata": {},
    }
    record.update(overrides)
    return record


def message(msg_id, content, conv_id="conv-1", timestamp=1_000, message_type="user"):
    return {
        "id": msg_id,
        "conversation_id": conv_id,
        "message_type": message_type,
        "role": message_type,
        "content": content,
        "timestamp": timestamp,
    }


def file_edit(edit_id, file_path, snapshot, conv_id="conv-1"):
    return {
        "id": edit_id,
        "conversation_id": conv_id,
        "file_path": file_path,
        "message_id": "m1",
        "snapshot_timestamp": snapshot,
    }


def decision(dec_id, text, files, conv_id="conv-1", timestamp=1_000):
    return {
        "id": dec_id,
        "conversation_id": conv_id,
        "message_id": "m1",
        "decision_text": text,
        "related_files": files,
        "timestamp": timestamp,
    }


def commit(commit_hash, files, timestamp=1_000):
    return {
        "hash": commit_hash,
        "message": f"commit {commit_hash}",
        "timestamp": timestamp,
        "files_changed": files,
        "conversation_id": "conv-1",
    }


@pytest.fixture
async def storage(db_manager):
    storage = ConversationStorage(db_manager)
    storage.disable_cache()
    await storage.store_conversations([conversation()])
    return storage


class TestRecords:

    @pytest.mark.asyncio
    async def test_conversation_roundtrip(self, storage):
        record = await storage.get_conversation("conv-1")
        assert record["project_path"] == "/work/project"
        assert record["metadata"] == {}
        assert await storage.get_conversation("missing") is None

    @pytest.mark.asyncio
    async def test_store_is_upsert(self, storage):
        await storage.store_conversations([conversation(message_count=5)])
        assert (await storage.get_conversation("conv-1"))["message_count"] == 5
        assert (await storage.get_stats())["conversations"] == 1

    @pytest.mark.asyncio
    async def test_messages_in_time_order(self, storage):
        await storage.store_conversations([conversation("conv-2")])
        await storage.store_messages([
            message("m2", "second", timestamp=2_000),
            message("m1", "first", timestamp=1_000),
            message("m3", "other conversation", conv_id="conv-2"),
        ])

        assert [m["id"] for m in await storage.get_messages()] == ["m1", "m3", "m2"]
        assert [m["id"] for m in await storage.get_messages("conv-1")] == ["m1", "m2"]
        assert (await storage.get_message("m2"))["content"] == "second"

    @pytest.mark.asyncio
    async def test_file_edits_newest_first(self, storage):
        await storage.store_file_edits([
            file_edit("e1", "src/app.py", 100),
            file_edit("e2", "src/app.py", 300),
            file_edit("e3", "src/other.py", 200),
        ])
        assert [e["id"] for e in await storage.get_file_edits("src/app.py")] == ["e2", "e1"]

    @pytest.mark.asyncio
    async def test_decisions_for_file_match_exact_path(self, storage):
        await storage.store_decisions([
            decision("d1", "Use SQLite", ["src/db.py", "README.md"]),
            decision("d2", "Split module", ["src/db.py.bak"]),
            decision("d3", "Rename helper", ["src/db_py"]),
        ])

        found = await storage.get_decisions_for_file("src/db.py")
        assert [d["id"] for d in found] == ["d1"]
        assert (await storage.get_decision("d2"))["decision_text"] == "Split module"

    @pytest.mark.asyncio
    async def test_like_wildcards_in_path_are_literal(self, storage):
        await storage.store_decisions([
            decision("d1", "Percent path", ["data/100%_done.txt"]),
            decision("d2", "Other path", ["data/100xxdone.txt"]),
        ])
        found = await storage.get_decisions_for_file("data/100%_done.txt")
        assert [d["id"] for d in found] == ["d1"]

    @pytest.mark.asyncio
    async def test_commits_for_file_newest_first(self, storage):
        await storage.store_git_commits([
            commit("aaa", ["src/app.py"], timestamp=1),
            commit("bbb", ["src/app.py", "setup.py"], timestamp=2),
            commit("ccc", ["setup.py"], timestamp=3),
        ])
        assert [c["hash"] for c in await storage.get_commits_for_file("src/app.py")] == ["bbb", "aaa"]

    @pytest.mark.asyncio
    async def test_file_timeline(self, storage):
        await storage.store_file_edits([file_edit("e1", "src/app.py", 100)])
        await storage.store_decisions([decision("d1", "Use SQLite", ["src/app.py"])])
        await storage.store_git_commits([commit("aaa", ["src/app.py"])])

        timeline = await storage.get_file_timeline("src/app.py")

        assert timeline["file_path"] == "src/app.py"
        assert [e["id"] for e in timeline["edits"]] == ["e1"]
        assert [c["hash"] for c in timeline["commits"]] == ["aaa"]
        assert [d["id"] for d in timeline["decisions"]] == ["d1"]

    @pytest.mark.asyncio
    async def test_get_stats(self, storage):
        await storage.store_messages([message("m1", "hello")])
        await storage.store_decisions([decision("d1", "Use SQLite", [])])

        stats = await storage.get_stats()
        assert stats == {
            "conversations": 1,
            "messages": 1,
            "file_edits": 0,
            "decisions": 1,
            "git_commits": 0,
        }


class TestDeleteConversation:

    @pytest.mark.asyncio
    async def test_cascades_to_children(self, storage):
        await storage.store_messages([message("m1", "hello")])
        await storage.store_file_edits([file_edit("e1", "src/app.py", 100)])
        await storage.store_decisions([decision("d1", "Use SQLite", ["src/app.py"])])

        assert await storage.delete_conversation("conv-1") is True

        stats = await storage.get_stats()
        assert stats["conversations"] == 0
        assert stats["messages"] == 0
        assert stats["file_edits"] == 0
        assert stats["decisions"] == 0

    @pytest.mark.asyncio
    async def test_missing_conversation(self, storage):
        assert await storage.delete_conversation("nope") is False

    @pytest.mark.asyncio
    async def test_invalidates_cached_reads(self, storage):
        storage.enable_cache()
        await storage.store_messages([message("m1", "hello")])

        assert await storage.get_conversation("conv-1") is not None
        assert await storage.get_message("m1") is not None

        await storage.delete_conversation("conv-1")

        assert await storage.get_conversation("conv-1") is None
        assert await storage.get_message("m1") is None

    @pytest.mark.asyncio
    async def test_removes_embeddings(self, db_manager):
        store = EmbeddingStore(db_manager, index=None, model_name="test-model")
        storage = ConversationStorage(db_manager, embedding_store=store)
        await storage.store_conversations([conversation()])
        await storage.store_messages([message("m1", "hello")])
        await storage.store_decisions([decision("d1", "Use SQLite", [])])
        await store.store_embedding("m1", [1.0, 0.0], content="hello")
        await store.store_embedding("d1", [0.0, 1.0], content="Use SQLite", owner_type=OWNER_DECISION)

        await storage.delete_conversation("conv-1")

        assert await store.count(OWNER_MESSAGE) == 0
        assert await store.count(OWNER_DECISION) == 0


class TestCacheControl:

    @pytest.mark.asyncio
    async def test_stats_none_when_disabled(self, storage):
        assert storage.is_cache_enabled() is False
        assert storage.get_cache_stats() is None

    @pytest.mark.asyncio
    async def test_enable_starts_empty(self, storage):
        storage.enable_cache(max_size=50, ttl_ms=1_000)
        stats = storage.get_cache_stats()

        assert storage.is_cache_enabled() is True
        assert stats.size == 0
        assert stats.max_size == 50
        assert (stats.hits, stats.misses) == (0, 0)

    @pytest.mark.asyncio
    async def test_reenabling_resets(self, storage):
        storage.enable_cache()
        await storage.get_conversation("conv-1")
        await storage.get_conversation("conv-1")

        storage.enable_cache()
        stats = storage.get_cache_stats()
        assert (stats.size, stats.hits, stats.misses) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_clear_cache_resets_stats(self, storage):
        storage.enable_cache()
        await storage.get_conversation("conv-1")
        await storage.get_conversation("conv-1")

        storage.clear_cache()
        stats = storage.get_cache_stats()
        assert (stats.size, stats.hits, stats.misses, stats.evictions) == (0, 0, 0, 0)

    @pytest.mark.asyncio
    async def test_disable_keeps_reads_working(self, storage):
        storage.enable_cache()
        storage.disable_cache()
        assert (await storage.get_conversation("conv-1"))["id"] == "conv-1"


class TestCachedReads:

    @pytest.mark.asyncio
    async def test_repeat_read_hits(self, storage):
        storage.enable_cache()
        await storage.get_conversation("conv-1")
        await storage.get_conversation("conv-1")

        stats = storage.get_cache_stats()
        assert (stats.hits, stats.misses) == (1, 1)

    @pytest.mark.asyncio
    async def test_timeline_counts_sub_reads(self, storage):
        storage.enable_cache()

        await storage.get_file_timeline("src/app.py")
        stats = storage.get_cache_stats()
        assert (stats.hits, stats.misses) == (0, 4)

        await storage.get_file_timeline("src/app.py")
        stats = storage.get_cache_stats()
        assert (stats.hits, stats.misses) == (1, 4)

    @pytest.mark.asyncio
    async def test_repeated_mixed_reads(self, storage):
        storage.enable_cache()
        for _ in range(10):
            await storage.get_conversation("conv-1")
            await storage.get_file_timeline("src/app.py")

        stats = storage.get_cache_stats()
        assert stats.misses == 5
        assert stats.hits == 18
        assert stats.hit_rate == pytest.approx(18 / 23)

    @pytest.mark.asyncio
    async def test_small_cache_evicts(self, storage):
        storage.enable_cache(max_size=2)
        await storage.get_conversation("conv-1")
        await storage.get_file_timeline("src/app.py")
        await storage.get_file_edits("src/other.py")

        stats = storage.get_cache_stats()
        assert stats.evictions > 0
        assert stats.size <= 2


class TestNoStaleReads:

    @pytest.mark.asyncio
    async def test_conversation_update_visible(self, storage):
        storage.enable_cache()
        assert (await storage.get_conversation("conv-1"))["message_count"] == 1

        await storage.store_conversations([conversation(message_count=7)])

        assert (await storage.get_conversation("conv-1"))["message_count"] == 7

    @pytest.mark.asyncio
    async def test_message_update_visible(self, storage):
        storage.enable_cache()
        await storage.store_messages([message("m1", "old text")])
        assert (await storage.get_message("m1"))["content"] == "old text"

        await storage.store_messages([message("m1", "new text")])

        assert (await storage.get_message("m1"))["content"] == "new text"

    @pytest.mark.asyncio
    async def test_new_edit_refreshes_timeline(self, storage):
        storage.enable_cache()
        await storage.store_file_edits([file_edit("e1", "src/app.py", 100)])
        assert len((await storage.get_file_timeline("src/app.py"))["edits"]) == 1

        await storage.store_file_edits([file_edit("e2", "src/app.py", 200)])

        timeline = await storage.get_file_timeline("src/app.py")
        assert [e["id"] for e in timeline["edits"]] == ["e2", "e1"]
        assert [e["id"] for e in await storage.get_file_edits("src/app.py")] == ["e2", "e1"]

    @pytest.mark.asyncio
    async def test_new_decision_refreshes_file_reads(self, storage):
        storage.enable_cache()
        assert await storage.get_decisions_for_file("src/app.py") == []

        await storage.store_decisions([decision("d1", "Use SQLite", ["src/app.py"])])

        assert [d["id"] for d in await storage.get_decisions_for_file("src/app.py")] == ["d1"]
        assert len((await storage.get_file_timeline("src/app.py"))["decisions"]) == 1

    @pytest.mark.asyncio
    async def test_decision_moved_off_file(self, storage):
        storage.enable_cache()
        await storage.store_decisions([decision("d1", "Use SQLite", ["src/app.py"])])
        assert len(await storage.get_decisions_for_file("src/app.py")) == 1

        await storage.store_decisions([decision("d1", "Use SQLite", ["src/db.py"])])

        assert await storage.get_decisions_for_file("src/app.py") == []

    @pytest.mark.asyncio
    async def test_new_commit_refreshes_timeline(self, storage):
        storage.enable_cache()
        assert (await storage.get_file_timeline("src/app.py"))["commits"] == []

        await storage.store_git_commits([commit("aaa", ["src/app.py"])])

        assert [c["hash"] for c in (await storage.get_file_timeline("src/app.py"))["commits"]] == ["aaa"]

    @pytest.mark.asyncio
    async def test_unrelated_write_keeps_entries(self, storage):
        storage.enable_cache()
        await storage.get_file_timeline("src/app.py")

        await storage.store_file_edits([file_edit("e9", "src/other.py", 100)])
        await storage.get_file_timeline("src/app.py")

        assert storage.get_cache_stats().hits == 1
