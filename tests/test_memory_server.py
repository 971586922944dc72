"""Tests for the rulebook_memory_* MCP tools."""
from __future__ import annotations

import json

import pytest
import pytest_asyncio
from rulebook_core.config import MemoryConfig
from rulebook_core.errors import StorageUnavailableError
from rulebook_memory import MemoryManager
from rulebook_tools import memory_server as server


def _callable(tool):
    """The coroutine function behind a registered tool."""
    return getattr(tool, "fn", tool)


memory_cleanup = _callable(server.memory_cleanup)
memory_delete = _callable(server.memory_delete)
memory_get = _callable(server.memory_get)
memory_save = _callable(server.memory_save)
memory_search = _callable(server.memory_search)
memory_session_end = _callable(server.memory_session_end)
memory_session_start = _callable(server.memory_session_start)
memory_stats = _callable(server.memory_stats)
memory_timeline = _callable(server.memory_timeline)


@pytest_asyncio.fixture
async def tools(project_root, memory_config):
    server.set_manager(MemoryManager(project_root, memory_config, project="tools"))
    yield server.get_manager()
    await server.close_manager()


@pytest_asyncio.fixture
async def capturing_tools(project_root):
    config = MemoryConfig(enabled=True, auto_capture=True, hnsw_seed=3)
    server.set_manager(MemoryManager(project_root, config, project="tools"))
    yield server.get_manager()
    await server.close_manager()


class TestMemoryTools:
    async def test_save_search_get(self, tools):
        saved = json.loads(await memory_save(
            content="database connection pooling patterns", tags=["db"]
        ))
        assert saved["success"] is True
        assert saved["type"] == "observation"
        json.loads(await memory_save(content="unrelated topic about cooking"))

        found = json.loads(await memory_search("connection pooling"))
        assert found["success"] is True
        assert found["mode"] == "hybrid"
        assert found["results"][0]["id"] == saved["id"]
        assert "content" not in found["results"][0]

        got = json.loads(await memory_get([saved["id"], "missing"]))
        assert [m["id"] for m in got["memories"]] == [saved["id"]]
        assert got["memories"][0]["content"] == "database connection pooling patterns"
        assert got["memories"][0]["tags"] == ["db"]

    async def test_validation_failures_are_reported(self, tools):
        assert json.loads(await memory_save(content="  "))["success"] is False
        bad_mode = json.loads(await memory_search("x", mode="fuzzy"))
        assert bad_mode["success"] is False
        assert "mode" in bad_mode["error"]
        assert json.loads(await memory_search("x", limit=0))["success"] is False

    async def test_timeline(self, tools):
        ids = [
            json.loads(await memory_save(content=f"timeline step {i}"))["id"]
            for i in range(5)
        ]
        result = json.loads(await memory_timeline(ids[2], window=2))
        assert [e["id"] for e in result["entries"]] == ids[1:4]
        assert [e["position"] for e in result["entries"]] == ["before", "anchor", "after"]

    async def test_delete(self, tools):
        saved = json.loads(await memory_save(content="to be deleted soon"))
        assert json.loads(await memory_delete(saved["id"]))["success"] is True
        again = json.loads(await memory_delete(saved["id"]))
        assert again["success"] is False
        assert "not found" in again["error"]

    async def test_stats_and_cleanup(self, tools):
        await memory_save(content="statistics matter")
        stats = json.loads(await memory_stats())
        assert stats["record_count"] == 1
        assert stats["index_health"] == "good"

        cleanup = json.loads(await memory_cleanup())
        assert cleanup == {
            "success": True, "evicted_count": 0, "freed_bytes": 0, "target_reached": True,
        }

    async def test_sessions(self, tools):
        started = json.loads(await memory_session_start())
        assert started["status"] == "active"
        assert started["project"] == "tools"

        saved = json.loads(await memory_save(
            content="work done in a session", session_id=started["id"]
        ))
        assert saved["success"] is True

        ended = json.loads(await memory_session_end(started["id"], summary="shipped"))
        assert ended["status"] == "completed"
        assert ended["summary"] == "shipped"
        assert json.loads(await memory_session_end("missing"))["success"] is False

    async def test_disabled(self, project_root):
        server.set_manager(MemoryManager(project_root, MemoryConfig()))
        try:
            result = json.loads(await memory_stats())
            assert result["success"] is False
            assert "not enabled" in result["error"]
        finally:
            await server.close_manager()


class TestAutoCapture:
    async def test_mutating_tools_are_captured(self, capturing_tools):
        session = json.loads(await memory_session_start())
        saved = json.loads(await memory_save(content="short lived memory"))
        await memory_delete(saved["id"])
        await server._dispatcher.drain()

        stats = json.loads(await memory_stats())
        # session start and delete captured; the save itself is skipped
        assert stats["record_count"] == 2
        listed = await capturing_tools.list_memories()
        titles = sorted(s.title for s in listed)
        assert titles[0].startswith("rulebook_memory_delete")
        assert titles[1].startswith("rulebook_memory_session_start")

        ended = json.loads(await memory_session_end(session["id"]))
        assert ended["tool_calls"] >= 1

    async def test_capture_failure_does_not_fail_the_tool(
        self, capturing_tools, monkeypatch, caplog
    ):
        saved = json.loads(await memory_save(content="kept despite capture trouble"))

        async def unavailable(project=None):
            raise StorageUnavailableError("session table unreadable")

        monkeypatch.setattr(capturing_tools, "active_session", unavailable)
        deleted = json.loads(await memory_delete(saved["id"]))
        assert deleted == {"success": True, "id": saved["id"]}
        assert "Auto-capture of memory_delete failed" in caplog.text

    async def test_read_tools_are_not_captured(self, capturing_tools):
        await memory_search("anything")
        await memory_stats()
        assert server._dispatcher is None or server._dispatcher.pending == 0
        assert (await capturing_tools.stats()).record_count == 0


@pytest.fixture(autouse=True)
def reset_server():
    yield
    server.set_manager(None)
