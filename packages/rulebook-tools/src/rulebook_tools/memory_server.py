"""MCP tool server exposing Rulebook project memory.

Tools are named ``rulebook_memory_*`` and return JSON strings. Failures
that come from bad input or an unavailable store are reported as
``{"success": false, "error": ...}`` rather than raised, so the calling
agent can read and react to them.

The project root is taken from ``RULEBOOK_PROJECT_ROOT`` (default: the
working directory) the first time a tool runs.
"""
from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from fastmcp import FastMCP
from rulebook_core.errors import CapacityExceededError, MemorySubsystemError
from rulebook_core.logging import get_logger
from rulebook_memory import CaptureDispatcher, MemoryManager

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger("tools.memory")

_manager: MemoryManager | None = None
_dispatcher: CaptureDispatcher | None = None


def get_manager() -> MemoryManager:
    global _manager
    if _manager is None:
        root = os.environ.get("RULEBOOK_PROJECT_ROOT") or Path.cwd()
        _manager = MemoryManager.from_config(root)
    return _manager


def set_manager(manager: MemoryManager | None) -> None:
    """Replace the manager tools operate on (``None`` resets to lazy)."""
    global _manager, _dispatcher
    _manager = manager
    _dispatcher = None


async def close_manager() -> None:
    global _manager, _dispatcher
    if _dispatcher is not None:
        await _dispatcher.drain()
    if _manager is not None:
        await _manager.close()
    _manager = None
    _dispatcher = None


@asynccontextmanager
async def _lifespan(_server: FastMCP) -> AsyncIterator[None]:
    try:
        yield
    finally:
        await close_manager()


memory_server = FastMCP("rulebook-memory", lifespan=_lifespan)


async def _auto_capture(tool: str, args: dict[str, Any], result: str) -> None:
    global _dispatcher
    manager = get_manager()
    if not (manager.enabled and manager.config.auto_capture):
        return
    if _dispatcher is None:
        _dispatcher = manager.capture_dispatcher()
    session = await manager.active_session()
    _dispatcher.session_id = session.id if session else None
    _dispatcher.dispatch_tool_call(tool, args, result)


async def _respond(tool: str, args: dict[str, Any], payload: dict[str, Any]) -> str:
    result = json.dumps({"success": True, **payload})
    try:
        await _auto_capture(f"rulebook_{tool}", args, result)
    except MemorySubsystemError:
        logger.exception("Auto-capture of %s failed", tool)
    return result


def _failure(exc: Exception) -> str:
    logger.warning("Memory tool failed: %s", exc)
    return json.dumps({"success": False, "error": str(exc)})


# ── Tools ────────────────────────────────────────────────────────


@memory_server.tool(name="rulebook_memory_save")
async def memory_save(
    content: str,
    title: str = "",
    type: str | None = None,
    tags: list[str] | None = None,
    project: str | None = None,
    session_id: str | None = None,
) -> str:
    """Save a memory for this project.

    Wrap secrets in <private>...</private>; that text is never stored.

    Args:
        content: What to remember.
        title: Short label (derived from the content when empty).
        type: bugfix, feature, refactor, decision, discovery, change or
            observation (inferred from the content when omitted).
        tags: Free-text labels.
        project: Project name (defaults to the configured project).
        session_id: Active session to attach the memory to.
    """
    try:
        record = await get_manager().save_memory(
            title=title, content=content, project=project, type=type,
            tags=tags or (), session_id=session_id,
        )
    except MemorySubsystemError as exc:
        return _failure(exc)
    return await _respond("memory_save", {"title": title, "type": type}, {
        "id": record.id, "type": record.type.value, "title": record.title,
    })


@memory_server.tool(name="rulebook_memory_search")
async def memory_search(
    query: str,
    mode: str = "hybrid",
    limit: int = 20,
    type: str | None = None,
    project: str | None = None,
    since: float | None = None,
    until: float | None = None,
) -> str:
    """Search memories; returns compact hits without content.

    Use rulebook_memory_get for the full content of the ids you need and
    rulebook_memory_timeline for surrounding context.

    Args:
        query: Keywords or a phrase; ``term*`` matches a prefix.
        mode: lexical (exact terms), vector (similar wording) or hybrid.
        limit: Maximum results.
        type: Only memories of this type.
        project: Only memories of this project.
        since: Only memories created at or after this Unix time.
        until: Only memories created at or before this Unix time.
    """
    try:
        response = await get_manager().search_memories(
            query, mode=mode, limit=limit, type=type, project=project,
            since=since, until=until,
        )
    except MemorySubsystemError as exc:
        return _failure(exc)
    return await _respond("memory_search", {"query": query}, response.to_dict())


@memory_server.tool(name="rulebook_memory_timeline")
async def memory_timeline(anchor_id: str, window: int = 5) -> str:
    """Memories created just before and after another memory.

    Args:
        anchor_id: Memory to center on.
        window: Number of neighbours, split across both sides.
    """
    try:
        entries = await get_manager().get_timeline(anchor_id, window)
    except MemorySubsystemError as exc:
        return _failure(exc)
    return await _respond("memory_timeline", {"anchor_id": anchor_id}, {
        "entries": [e.to_dict() for e in entries],
    })


@memory_server.tool(name="rulebook_memory_get")
async def memory_get(ids: list[str]) -> str:
    """Full content of specific memories.

    Args:
        ids: Memory ids from a search or timeline result.
    """
    try:
        records = await get_manager().get_memory(ids)
    except MemorySubsystemError as exc:
        return _failure(exc)
    return await _respond("memory_get", {"ids": ids}, {
        "memories": [r.to_dict() for r in records],
    })


@memory_server.tool(name="rulebook_memory_delete")
async def memory_delete(id: str) -> str:
    """Delete a memory.

    Args:
        id: Memory id.
    """
    try:
        deleted = await get_manager().delete_memory(id)
    except MemorySubsystemError as exc:
        return _failure(exc)
    if not deleted:
        return json.dumps({"success": False, "error": f"memory {id!r} not found"})
    return await _respond("memory_delete", {"id": id}, {"id": id})


@memory_server.tool(name="rulebook_memory_stats")
async def memory_stats() -> str:
    """Storage usage, record counts and index health."""
    try:
        stats = await get_manager().stats()
    except MemorySubsystemError as exc:
        return _failure(exc)
    return await _respond("memory_stats", {}, stats.to_dict())


@memory_server.tool(name="rulebook_memory_cleanup")
async def memory_cleanup(force: bool = False) -> str:
    """Evict least recently used memories to stay under the size limit.

    Decisions and memories of active sessions are never evicted.

    Args:
        force: Evict a batch even when under the limit.
    """
    try:
        result = await get_manager().cleanup(force=force)
    except CapacityExceededError as exc:
        return json.dumps({
            "success": False, "error": str(exc), **exc.result.to_dict(),
        })
    except MemorySubsystemError as exc:
        return _failure(exc)
    return await _respond("memory_cleanup", {"force": force}, result.to_dict())


@memory_server.tool(name="rulebook_memory_session_start")
async def memory_session_start(project: str | None = None) -> str:
    """Start a session that new memories can be attached to.

    Args:
        project: Project name (defaults to the configured project).
    """
    try:
        session = await get_manager().start_session(project)
    except MemorySubsystemError as exc:
        return _failure(exc)
    return await _respond(
        "memory_session_start", {"project": project}, session.to_dict()
    )


@memory_server.tool(name="rulebook_memory_session_end")
async def memory_session_end(session_id: str, summary: str | None = None) -> str:
    """End a session.

    Args:
        session_id: Session to end.
        summary: What was accomplished.
    """
    try:
        session = await get_manager().end_session(session_id, summary)
    except MemorySubsystemError as exc:
        return _failure(exc)
    if session is None:
        return json.dumps({
            "success": False, "error": f"session {session_id!r} not found",
        })
    return await _respond(
        "memory_session_end", {"session_id": session_id}, session.to_dict()
    )

