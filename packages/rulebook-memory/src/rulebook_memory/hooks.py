"""Automatic capture: classify, title and save agent activity.

Nothing here raises into the caller's path. Capture is best-effort:
a failed save is logged and dropped so the agent interaction that
produced it is never interrupted.
"""
from __future__ import annotations

import asyncio
import json
import re
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from rulebook_core.logging import get_logger

from rulebook_memory.types import MemoryType

if TYPE_CHECKING:
    from collections.abc import Coroutine

    from rulebook_memory.manager import MemoryManager
    from rulebook_memory.types import MemoryRecord

logger = get_logger("memory.hooks")

_PRIVATE_SPAN = re.compile(r"<private>.*?</private>", re.IGNORECASE | re.DOTALL)
_PRIVATE_TAIL = re.compile(r"<private>.*\Z", re.IGNORECASE | re.DOTALL)

# First matching rule wins.
CLASSIFICATION_RULES: list[tuple[re.Pattern[str], MemoryType]] = [
    (re.compile(r"\b(fix|bug|error|crash|failure|broken|patch)\b", re.I),
     MemoryType.BUGFIX),
    (re.compile(r"\b(add|new|feature|create|implement|introduce)\b", re.I),
     MemoryType.FEATURE),
    (re.compile(r"\b(refactor|restructure|reorganize|cleanup|simplify)\b", re.I),
     MemoryType.REFACTOR),
    (re.compile(r"\b(decide|chose|decision|pick|select|prefer)\b", re.I),
     MemoryType.DECISION),
    (re.compile(r"\b(found|discover|learn|realize|notice|insight)\b", re.I),
     MemoryType.DISCOVERY),
    (re.compile(r"\b(change|update|modify|adjust|tweak|alter)\b", re.I),
     MemoryType.CHANGE),
]

_CHUNK_SPLIT = re.compile(r"\n---\n|\n\n\n+|\n#{1,3}\s")
_TITLE_NOISE = re.compile(r"^[#*\->\s]+")
MIN_CHUNK_LENGTH = 50

SKIP_CAPTURE_TOOLS = frozenset({
    "rulebook_memory_search",
    "rulebook_memory_timeline",
    "rulebook_memory_get",
    # Saving would capture its own save.
    "rulebook_memory_save",
    "rulebook_memory_stats",
    "rulebook_memory_cleanup",
    "rulebook_task_list",
    "rulebook_task_show",
    "rulebook_task_validate",
    "rulebook_skill_list",
    "rulebook_skill_show",
    "rulebook_skill_search",
    "rulebook_skill_validate",
})

DEDUP_BUFFER_SIZE = 50
RESULT_PREVIEW_CHARS = 500


def strip_private(text: str) -> str:
    """Remove every ``<private>…</private>`` span from *text*.

    An opening marker without a closing one hides the rest of the text.
    """
    return _PRIVATE_TAIL.sub("", _PRIVATE_SPAN.sub("", text))


def classify_memory(content: str) -> MemoryType:
    for pattern, memory_type in CLASSIFICATION_RULES:
        if pattern.search(content):
            return memory_type
    return MemoryType.OBSERVATION


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def extract_title(content: str, max_length: int = 80) -> str:
    """First non-blank line without markdown markers, truncated."""
    first = next((line for line in content.splitlines() if line.strip()), "Untitled")
    cleaned = _TITLE_NOISE.sub("", first).replace("`", "").strip()
    return _truncate(cleaned or "Untitled", max_length)


def split_into_chunks(output: str) -> list[str]:
    """Split agent output on ``---`` rules, blank-line runs and headings."""
    chunks = [
        chunk.strip() for chunk in _CHUNK_SPLIT.split(output)
        if len(chunk.strip()) > MIN_CHUNK_LENGTH
    ]
    if not chunks and len(output.strip()) > MIN_CHUNK_LENGTH:
        return [output.strip()]
    return chunks


@dataclass(frozen=True, slots=True)
class CapturedMemory:
    """A memory proposed by a capture hook, not yet saved."""

    type: MemoryType
    title: str
    content: str
    tags: tuple[str, ...] = ()


def capture_from_agent_output(
    output: str, agent: str = "claude"
) -> list[CapturedMemory]:
    """Turn an agent's free-form output into candidate memories.

    Args:
        output: Raw text the agent produced.
        agent: Agent name recorded as a tag (``claude``, ``cursor``,
            ``gemini``, ...).
    """
    return [
        CapturedMemory(
            type=classify_memory(chunk),
            title=extract_title(chunk),
            content=chunk,
            tags=(agent,),
        )
        for chunk in split_into_chunks(output)
    ]


class ToolCallCapture:
    """Builds memories from MCP tool calls worth remembering.

    Read-only and memory tools are skipped, as are results reporting
    ``"success": false``. The last :data:`DEDUP_BUFFER_SIZE` titles are
    remembered so repeated calls are captured once.
    """

    def __init__(self, buffer_size: int = DEDUP_BUFFER_SIZE) -> None:
        self._recent: deque[str] = deque(maxlen=buffer_size)

    def _is_duplicate(self, title: str) -> bool:
        normalized = title.strip().lower()
        if normalized in self._recent:
            return True
        self._recent.append(normalized)
        return False

    @staticmethod
    def _title(tool_name: str, args: dict[str, Any]) -> str:
        task = args.get("taskId") or args.get("task_id") or "unknown"
        skill = args.get("skillId") or args.get("skill_id") or "unknown"
        match tool_name:
            case "rulebook_task_create":
                return f"Created task: {task}"
            case "rulebook_task_update":
                return f"Updated task {task} to {args.get('status', 'unknown')}"
            case "rulebook_task_archive":
                return f"Archived task: {task}"
            case "rulebook_task_delete":
                return f"Deleted task: {task}"
            case "rulebook_skill_enable":
                return f"Enabled skill: {skill}"
            case "rulebook_skill_disable":
                return f"Disabled skill: {skill}"
            case _:
                return f"{tool_name}: {extract_title(json.dumps(args), 60)}"

    def capture(
        self, tool_name: str, args: dict[str, Any], result: str
    ) -> CapturedMemory | None:
        if tool_name in SKIP_CAPTURE_TOOLS:
            return None
        try:
            parsed = json.loads(result)
        except (json.JSONDecodeError, TypeError):
            parsed = None
        if isinstance(parsed, dict) and parsed.get("success") is False:
            return None

        arg_summary = ", ".join(
            f"{key}: {value if isinstance(value, str) else json.dumps(value)}"
            for key, value in args.items()
            if value is not None
        )
        title = self._title(tool_name, args)
        if self._is_duplicate(title):
            return None

        return CapturedMemory(
            type=classify_memory(f"{tool_name} {arg_summary}"),
            title=title,
            content=(
                f"Tool: {tool_name}\nArgs: {arg_summary}\n"
                f"Result: {_truncate(result, RESULT_PREVIEW_CHARS)}"
            ),
            tags=(tool_name.removeprefix("rulebook_"),),
        )


class CaptureDispatcher:
    """Fire-and-forget saving of captured memories.

    ``dispatch`` schedules the save on the running loop and returns
    immediately; failures are logged, never raised. ``drain`` waits for
    everything still pending (call it before shutting the manager down).

    ``session_id`` may be reassigned between dispatches; each save uses
    the session that was current when it was dispatched.
    """

    def __init__(
        self,
        manager: MemoryManager,
        project: str,
        session_id: str | None = None,
    ) -> None:
        self._manager = manager
        self._project = project
        self.session_id = session_id
        self._tasks: set[asyncio.Task[Any]] = set()
        self._tool_calls = ToolCallCapture()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _save(
        self, captured: CapturedMemory, session_id: str | None
    ) -> MemoryRecord | None:
        try:
            return await self._manager.save_memory(
                title=captured.title,
                content=captured.content,
                project=self._project,
                type=captured.type,
                tags=captured.tags,
                session_id=session_id,
            )
        except Exception:
            logger.exception("Auto-capture save failed: %s", captured.title)
            return None

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def dispatch(self, captured: CapturedMemory) -> None:
        self._spawn(self._save(captured, self.session_id))

    def dispatch_output(self, output: str, agent: str = "claude") -> int:
        captured = capture_from_agent_output(output, agent)
        for item in captured:
            self.dispatch(item)
        return len(captured)

    def dispatch_tool_call(
        self, tool_name: str, args: dict[str, Any], result: str
    ) -> bool:
        captured = self._tool_calls.capture(tool_name, args, result)
        if captured is None:
            return False
        self.dispatch(captured)
        if self.session_id is not None:
            self._spawn(self._count_tool_call(self.session_id))
        return True

    async def _count_tool_call(self, session_id: str) -> None:
        try:
            await self._manager.record_tool_call(session_id)
        except Exception:
            logger.exception("Failed to count tool call for %s", session_id)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
