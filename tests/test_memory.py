"""Tests for the primary storage write path and ranked search."""

import pytest
import tempfile
import shutil

from memdock.database import DatabaseManager
from memdock.fts import FullTextIndexManager
from memdock.memory import MemoryManager
from memdock.records import PendingWrite, parse_timestamp


class NoIndex(FullTextIndexManager):
    """An index that never comes up, as on a SQLite build without FTS5."""

    async def ensure_index(self) -> bool:
        return False


@pytest.fixture
def temp_storage():
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir)


class TestWritePath:

    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db)

        first = await manager.upsert("proj", "auth-setup", "Cookies", tags=["auth"], priority=40)
        assert first["created"] is True
        assert first["tags"] == ["auth"]

        second = await manager.upsert("proj", "auth-setup", "Bearer tokens")
        assert second["created"] is False
        assert second["content"] == "Bearer tokens"
        # Unspecified fields are kept
        assert second["priority"] == 40
        assert second["tags"] == ["auth"]
        assert second["created_at"] == first["created_at"]

        await db.close()

    @pytest.mark.asyncio
    async def test_updated_at_strictly_increases(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db)

        stamps = []
        for i in range(5):
            record = await manager.upsert("proj", "k", f"version {i}")
            stamps.append(parse_timestamp(record["updated_at"]))
        archived = await manager.archive("proj", "k")
        stamps.append(parse_timestamp(archived["updated_at"]))

        assert all(later > earlier for earlier, later in zip(stamps, stamps[1:]))

        await db.close()

    @pytest.mark.asyncio
    async def test_blank_key_rejected(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db)

        result = await manager.upsert("proj", "  ", "content")
        assert "error" in result

        await db.close()

    @pytest.mark.asyncio
    async def test_list_pages_and_hides_archived(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db)

        for i in range(5):
            await manager.upsert("proj", f"k{i}", f"note {i}")
        await manager.archive("proj", "k0")

        page1 = await manager.list_memories("proj", limit=2, offset=0)
        page2 = await manager.list_memories("proj", limit=2, offset=2)
        page3 = await manager.list_memories("proj", limit=2, offset=4)

        keys = [m["key"] for m in page1["memories"] + page2["memories"] + page3["memories"]]
        assert keys == ["k4", "k3", "k2", "k1"]
        assert page1["total"] == 4

        everything = await manager.list_memories("proj", limit=10, include_archived=True)
        assert len(everything["memories"]) == 5

        await db.close()

    @pytest.mark.asyncio
    async def test_archive_missing_key(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db)

        assert "error" in await manager.archive("proj", "nope")
        assert await manager.delete("proj", "nope") is False

        await db.close()


class TestApplyWrite:

    @pytest.mark.asyncio
    async def test_replaying_the_same_writes_is_harmless(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db)

        writes = [
            PendingWrite("POST", "/memories", {"key": "a", "content": "first", "priority": 10}),
            PendingWrite("PATCH", "/memories/a", {"content": "second"}),
            PendingWrite("POST", "/memories", {"key": "b", "content": "other"}),
            PendingWrite("DELETE", "/memories/b"),
        ]

        for _ in range(2):
            for write in writes:
                result = await manager.apply_write("proj", write)
                assert "error" not in result

        listing = await manager.list_memories("proj")
        assert [(m["key"], m["content"], m["priority"]) for m in listing["memories"]] == [
            ("a", "second", 10)
        ]

        await db.close()

    @pytest.mark.asyncio
    async def test_accepts_plain_dicts_and_encoded_keys(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db)

        await manager.apply_write("proj", {
            "method": "POST",
            "path": "/memories",
            "body": {"key": "agent/context/decisions/x", "content": "Use Postgres"},
        })
        result = await manager.apply_write("proj", {
            "method": "PATCH",
            "path": "/memories/agent%2Fcontext%2Fdecisions%2Fx",
            "body": {"priority": 72},
        })
        assert result["key"] == "agent/context/decisions/x"
        assert result["content"] == "Use Postgres"
        assert result["priority"] == 72

        await db.close()

    @pytest.mark.asyncio
    async def test_rejects_bad_writes(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db)

        assert "error" in await manager.apply_write("proj", PendingWrite("PATCH", "/memories/missing", {"content": "x"}))
        assert "error" in await manager.apply_write("proj", PendingWrite("POST", "/memories", {"key": "k", "content": 5}))
        assert "error" in await manager.apply_write("proj", PendingWrite("GET", "/memories/k"))

        await db.close()


class TestRankedSearch:

    @pytest.mark.asyncio
    async def test_search_reports_intent_and_weights(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db)

        await manager.upsert("proj", "auth-setup", "Authentication configuration lives in auth.ts", priority=50)
        await manager.upsert("proj", "db-config", "Database settings")

        result = await manager.search("proj", "auth.ts")
        assert result["intent"]["intent"] == "entity"
        assert result["weights"]["lexical_boost"] == 2.0
        assert result["lexical_source"] == "fts"
        assert [m["key"] for m in result["memories"]] == ["auth-setup"]
        assert result["memories"][0]["score"] > 0

        await db.close()

    @pytest.mark.asyncio
    async def test_falls_back_to_like_without_index(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db, fts=NoIndex(db))

        await manager.upsert("proj", "auth-setup", "Authentication configuration")
        await manager.upsert("proj", "db-config", "Database settings")
        await manager.upsert("proj", "old-auth", "Authentication via sessions")
        await manager.archive("proj", "old-auth")

        result = await manager.search("proj", "authentication")
        assert result["lexical_source"] == "like"
        assert [m["key"] for m in result["memories"]] == ["auth-setup"]

        await db.close()

    @pytest.mark.asyncio
    async def test_vector_candidates_join_the_pool(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db)

        await manager.upsert("proj", "lexical", "Queue workers retry failed jobs")
        await manager.upsert("proj", "semantic", "Background processing backs off on errors")

        result = await manager.search(
            "proj",
            "explain what happens when the queue workers retry",
            vector_scores={"semantic": 0.95, "lexical": 0.1},
        )
        keys = [m["key"] for m in result["memories"]]
        assert set(keys) == {"lexical", "semantic"}

        await db.close()

    @pytest.mark.asyncio
    async def test_priority_breaks_lexical_ties(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db, fts=NoIndex(db))

        await manager.upsert("proj", "low", "Retry policy for webhooks", priority=10)
        await manager.upsert("proj", "high", "Retry policy for payments", priority=90)

        result = await manager.search("proj", "retry", limit=5)
        assert [m["key"] for m in result["memories"]][0] == "high"

        await db.close()

    @pytest.mark.asyncio
    async def test_like_fallback_treats_underscore_literally(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db, fts=NoIndex(db))

        await manager.upsert("proj", "literal", "Look up rows by job_id first")
        await manager.upsert("proj", "lookalike", "Look up rows by jobxid first")

        result = await manager.search("proj", "job_id")
        assert result["lexical_source"] == "like"
        assert [m["key"] for m in result["memories"]] == ["literal"]

        await db.close()

    @pytest.mark.asyncio
    async def test_vector_pool_is_fused_and_capped(self, temp_storage):
        db = DatabaseManager(temp_storage)
        await db.init_db()
        manager = MemoryManager(db)

        for key in ("v1", "v2", "v3"):
            await manager.upsert("proj", key, f"Note {key} about nothing in particular")
        # High priority, but ranked last by similarity so it falls outside the pool
        await manager.upsert("proj", "pinned", "Another note about nothing", priority=100)

        result = await manager.search(
            "proj",
            "zebra",
            limit=1,
            vector_scores={"v1": 0.5, "v2": 0.4, "v3": 0.3, "pinned": 0.01},
        )
        assert [m["key"] for m in result["memories"]] == ["v1"]

        await db.close()
