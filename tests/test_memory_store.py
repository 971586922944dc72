from __future__ import annotations

import pytest
from rulebook_core.errors import StorageUnavailableError
from rulebook_memory.store import MemoryStore
from rulebook_memory.types import MemoryRecord, MemorySession, MemoryType, SessionStatus


def _record(n: int, **kwargs) -> MemoryRecord:
    defaults = {
        "id": f"r{n}",
        "title": f"Record {n}",
        "content": f"content number {n}",
        "project": "alpha",
        "created_at": 1000.0 + n,
        "updated_at": 1000.0 + n,
        "accessed_at": 1000.0 + n,
    }
    defaults.update(kwargs)
    return MemoryRecord(**defaults)


class TestMemoryStoreRecords:
    async def test_create_writes_snapshot(self, tmp_path):
        path = tmp_path / "a" / "b" / "memory.db"
        store = await MemoryStore.create(path)
        try:
            assert path.exists()
        finally:
            await store.close()

    async def test_save_and_get(self, memory_store):
        record = _record(1, tags=("db", "perf"), type=MemoryType.DECISION)
        await memory_store.save_record(record)

        loaded = await memory_store.get_record("r1")
        assert loaded == record
        assert await memory_store.get_record("missing") is None

    async def test_upsert_keeps_created_at(self, memory_store):
        await memory_store.save_record(_record(1))
        await memory_store.save_record(
            _record(1, content="rewritten", created_at=5000.0, updated_at=5000.0)
        )

        loaded = await memory_store.get_record("r1")
        assert loaded.content == "rewritten"
        assert loaded.created_at == 1001.0
        assert loaded.updated_at == 5000.0
        assert await memory_store.count_records() == 1

    async def test_update_record(self, memory_store):
        await memory_store.save_record(_record(1))
        changed = _record(1, title="New", content="new body", updated_at=2000.0)

        assert await memory_store.update_record(changed) is True
        assert (await memory_store.get_record("r1")).title == "New"
        assert await memory_store.update_record(_record(9)) is False

    async def test_get_records_preserves_order(self, memory_store):
        for n in range(3):
            await memory_store.save_record(_record(n))

        records = await memory_store.get_records(["r2", "missing", "r0", "r2"])
        assert [r.id for r in records] == ["r2", "r0"]

    async def test_get_summaries(self, memory_store):
        await memory_store.save_record(_record(1, type=MemoryType.BUGFIX))
        summaries = await memory_store.get_summaries(["r1", "nope"])
        assert set(summaries) == {"r1"}
        assert summaries["r1"].type is MemoryType.BUGFIX
        assert summaries["r1"].title == "Record 1"

    async def test_touch(self, memory_store):
        await memory_store.save_record(_record(1))
        await memory_store.touch(["r1"], when=9999.0)
        assert (await memory_store.get_record("r1")).accessed_at == 9999.0

    async def test_delete(self, memory_store):
        await memory_store.save_record(_record(1))
        assert await memory_store.delete_record("r1") is True
        assert await memory_store.delete_record("r1") is False
        assert await memory_store.count_records() == 0

    async def test_list_recent(self, memory_store):
        for n in range(5):
            await memory_store.save_record(_record(n))
        await memory_store.save_record(_record(9, project="beta"))
        await memory_store.save_record(_record(8, type=MemoryType.DECISION))

        recent = await memory_store.list_recent(limit=3, project="alpha")
        assert [r.id for r in recent] == ["r8", "r4", "r3"]
        page = await memory_store.list_recent(limit=2, offset=3, project="alpha")
        assert [r.id for r in page] == ["r2", "r1"]
        decisions = await memory_store.list_recent(type=MemoryType.DECISION)
        assert [r.id for r in decisions] == ["r8"]

    async def test_iter_records_oldest_first(self, memory_store):
        for n in (3, 1, 2):
            await memory_store.save_record(_record(n))
        assert [r.id async for r in memory_store.iter_records()] == ["r1", "r2", "r3"]
        assert await memory_store.record_ids() == {"r1", "r2", "r3"}

    async def test_created_bounds(self, memory_store):
        assert await memory_store.oldest_created_at() is None
        for n in range(3):
            await memory_store.save_record(_record(n))
        assert await memory_store.oldest_created_at() == 1000.0
        assert await memory_store.newest_created_at() == 1002.0
        assert await memory_store.count_records(project="alpha") == 3
        assert await memory_store.count_records(project="beta") == 0


class TestMemoryStoreTimeline:
    async def test_neighbours(self, memory_store):
        for n in range(6):
            await memory_store.save_record(_record(n))
        await memory_store.save_record(_record(7, project="beta", created_at=1002.5))

        earlier, anchor, later = await memory_store.timeline_around("r3", 2, 1)
        assert [s.id for s in earlier] == ["r1", "r2"]
        assert anchor.id == "r3"
        assert [s.id for s in later] == ["r4"]

    async def test_equal_timestamps_use_insertion_order(self, memory_store):
        for n in range(4):
            await memory_store.save_record(_record(n, created_at=500.0))

        earlier, _, later = await memory_store.timeline_around("r1", 5, 5)
        assert [s.id for s in earlier] == ["r0"]
        assert [s.id for s in later] == ["r2", "r3"]

    async def test_unknown_anchor(self, memory_store):
        assert await memory_store.timeline_around("missing", 2, 2) is None


class TestMemoryStoreSessions:
    async def test_session_lifecycle(self, memory_store):
        session = MemorySession(project="alpha", started_at=10.0)
        await memory_store.create_session(session)
        assert (await memory_store.get_session(session.id)).is_active

        ended = await memory_store.end_session(session.id, "done", ended_at=20.0)
        assert ended.status is SessionStatus.COMPLETED
        assert ended.summary == "done"
        assert ended.ended_at == 20.0

        again = await memory_store.end_session(session.id, "other", ended_at=30.0)
        assert again == ended
        assert await memory_store.end_session("missing") is None

    async def test_tool_calls_only_on_active(self, memory_store):
        session = MemorySession(project="alpha")
        await memory_store.create_session(session)
        assert await memory_store.increment_tool_calls(session.id) is True
        assert await memory_store.increment_tool_calls(session.id) is True
        assert (await memory_store.get_session(session.id)).tool_calls == 2

        await memory_store.end_session(session.id)
        assert await memory_store.increment_tool_calls(session.id) is False

    async def test_active_sessions(self, memory_store):
        old = MemorySession(project="alpha", started_at=1.0)
        new = MemorySession(project="alpha", started_at=2.0)
        other = MemorySession(project="beta", started_at=3.0)
        for s in (old, new, other):
            await memory_store.create_session(s)

        assert [s.id for s in await memory_store.active_sessions("alpha")] == [new.id, old.id]
        assert len(await memory_store.active_sessions()) == 3
        assert await memory_store.count_sessions() == 3


class TestMemoryStoreEvictionCandidates:
    async def test_least_recently_accessed_first(self, memory_store):
        await memory_store.save_record(_record(1, accessed_at=50.0))
        await memory_store.save_record(_record(2, accessed_at=10.0))
        await memory_store.save_record(_record(3, accessed_at=30.0))
        assert await memory_store.eviction_candidates(2) == ["r2", "r3"]

    async def test_protected_records(self, memory_store):
        active = MemorySession(project="alpha")
        done = MemorySession(project="alpha")
        await memory_store.create_session(active)
        await memory_store.create_session(done)
        await memory_store.end_session(done.id)

        await memory_store.save_record(_record(1, type=MemoryType.DECISION))
        await memory_store.save_record(_record(2, session_id=active.id))
        await memory_store.save_record(_record(3, session_id=done.id))
        await memory_store.save_record(_record(4))

        assert await memory_store.eviction_candidates(10) == ["r3", "r4"]


class TestMemoryStorePersistence:
    async def test_flush_threshold(self, tmp_path):
        path = tmp_path / "memory.db"
        store = await MemoryStore.create(path, flush_threshold=3)
        try:
            await store.save_record(_record(1))
            await store.save_record(_record(2))
            assert store.pending_writes == 2
            await store.save_record(_record(3))
            assert store.pending_writes == 0

            async with await MemoryStore.create(path) as reader:
                assert await reader.count_records() == 3
        finally:
            await store.close()

    async def test_unflushed_writes_are_not_on_disk(self, tmp_path):
        path = tmp_path / "memory.db"
        store = await MemoryStore.create(path, flush_threshold=100)
        try:
            await store.save_record(_record(1))
            async with await MemoryStore.create(path) as reader:
                assert await reader.count_records() == 0
        finally:
            await store.close()

    async def test_close_flushes(self, tmp_path):
        path = tmp_path / "memory.db"
        async with await MemoryStore.create(path) as store:
            await store.save_record(_record(1))
            await store.create_session(MemorySession(project="alpha"))

        async with await MemoryStore.create(path) as reopened:
            assert (await reopened.get_record("r1")).content == "content number 1"
            assert await reopened.count_sessions() == 1

    async def test_close_is_idempotent(self, tmp_path):
        store = await MemoryStore.create(tmp_path / "memory.db")
        await store.close()
        await store.close()

    async def test_corrupt_snapshot(self, tmp_path):
        path = tmp_path / "memory.db"
        path.write_bytes(b"definitely not sqlite " * 100)
        with pytest.raises(StorageUnavailableError):
            await MemoryStore.create(path)

    async def test_size_and_compact(self, memory_store):
        empty = await memory_store.size_bytes()
        assert empty > 0
        for n in range(200):
            await memory_store.save_record(_record(n, content="x" * 500))
        full = await memory_store.size_bytes()
        assert full > empty

        for n in range(200):
            await memory_store.delete_record(f"r{n}")
        await memory_store.compact()
        assert await memory_store.size_bytes() < full
