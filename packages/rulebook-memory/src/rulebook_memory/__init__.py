"""Rulebook Memory: per-project persistent memory with hybrid search."""
from __future__ import annotations

from rulebook_memory.cache import MemoryEvictor
from rulebook_memory.hnsw import HNSWIndex
from rulebook_memory.hooks import (
    CaptureDispatcher,
    CapturedMemory,
    ToolCallCapture,
    capture_from_agent_output,
    classify_memory,
    extract_title,
    strip_private,
)
from rulebook_memory.lexical import LexicalIndex
from rulebook_memory.manager import MemoryManager
from rulebook_memory.search import HybridSearch, reciprocal_rank_fusion
from rulebook_memory.store import MemoryStore
from rulebook_memory.types import (
    EvictionResult,
    IndexHealth,
    MatchType,
    MemoryRecord,
    MemorySession,
    MemoryStats,
    MemoryType,
    RecordSummary,
    SearchFilters,
    SearchMode,
    SearchResponse,
    SearchResult,
    SessionStatus,
    TimelineEntry,
)
from rulebook_memory.vectorizer import Vectorizer, fnv1a, tokenize

__all__ = [
    # Capture
    "CaptureDispatcher",
    "CapturedMemory",
    # Types
    "EvictionResult",
    # Components
    "HNSWIndex",
    "HybridSearch",
    "IndexHealth",
    "LexicalIndex",
    "MatchType",
    "MemoryEvictor",
    "MemoryManager",
    "MemoryRecord",
    "MemorySession",
    "MemoryStats",
    "MemoryStore",
    "MemoryType",
    "RecordSummary",
    "SearchFilters",
    "SearchMode",
    "SearchResponse",
    "SearchResult",
    "SessionStatus",
    "TimelineEntry",
    "ToolCallCapture",
    "Vectorizer",
    "capture_from_agent_output",
    "classify_memory",
    "extract_title",
    "fnv1a",
    "reciprocal_rank_fusion",
    "strip_private",
    "tokenize",
]
