"""MemoryManager: the single entry point to a project's memory.

Wires the record store, both indexes, hybrid search and the evictor
together, and owns their lifecycle. Nothing is opened until the first
operation; ``close()`` (or leaving ``async with``) flushes the database
snapshot and the vector blob.

Usage::

    async with MemoryManager.from_config(project_root) as memory:
        record = await memory.save_memory("Pool size", "Use 20 connections")
        hits = await memory.search_memories("connection pool")
"""
from __future__ import annotations

import asyncio
import csv
import dataclasses
import functools
import io
import json
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

from rulebook_core.config import MemoryConfig, RulebookConfig
from rulebook_core.errors import (
    CapacityExceededError,
    IndexCorruptedError,
    MemoryDisabledError,
    MemoryValidationError,
    StorageUnavailableError,
)
from rulebook_core.logging import get_logger

from rulebook_memory.cache import MemoryEvictor
from rulebook_memory.hnsw import HNSWIndex
from rulebook_memory.hooks import (
    CaptureDispatcher,
    classify_memory,
    extract_title,
    strip_private,
)
from rulebook_memory.lexical import LexicalIndex
from rulebook_memory.search import HybridSearch
from rulebook_memory.store import MemoryStore
from rulebook_memory.types import (
    EvictionResult,
    IndexHealth,
    MemoryRecord,
    MemorySession,
    MemoryStats,
    MemoryType,
    RecordSummary,
    SearchFilters,
    SearchResponse,
    TimelineEntry,
)
from rulebook_memory.vectorizer import Vectorizer

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

logger = get_logger("memory.manager")

EXPORT_COLUMNS = (
    "id", "type", "title", "content", "project", "tags", "session_id",
    "created_at", "updated_at", "accessed_at",
)


class MemoryManager:
    """Per-project persistent memory.

    Mutating operations are serialized by one :class:`asyncio.Lock`;
    reads run without it. Use a single manager per store: several
    processes writing the same ``memory.db`` overwrite each other's
    snapshots.

    Args:
        project_root: Directory the configured paths are relative to.
        config: The ``[memory]`` settings.
        project: Default project for records and sessions; the
            directory name of *project_root* when omitted.
    """

    def __init__(
        self,
        project_root: Path | str,
        config: MemoryConfig | None = None,
        project: str | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        self.config = config or MemoryConfig()
        self.project = project or self.project_root.resolve().name
        self.db_path = self.config.resolve_db_path(self.project_root)
        self.index_path = self.config.resolve_index_path(self.project_root)

        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._store: MemoryStore | None = None
        self._lexical = LexicalIndex(stop_words=self.config.stop_words or None)
        self._vectorizer = Vectorizer(
            self.config.vector_dimensions, self.config.stop_words or None
        )
        self._vectors = self._new_vector_index()
        self._search: HybridSearch | None = None
        self._evictor: MemoryEvictor | None = None
        self._vector_writes = 0
        self._index_detail = "not loaded"

    @classmethod
    def from_config(cls, project_root: Path | str | None = None) -> MemoryManager:
        """Build a manager from the layered Rulebook configuration."""
        root = Path.cwd() if project_root is None else Path(project_root)
        config = RulebookConfig.load(root)
        return cls(root, config.memory, project=config.project_name)

    async def __aenter__(self) -> MemoryManager:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    # ── Lifecycle ───────────────────────────────────────────────────

    def _new_vector_index(self) -> HNSWIndex:
        return HNSWIndex(
            self.config.vector_dimensions,
            m=self.config.hnsw_m,
            ef_construction=self.config.hnsw_ef_construction,
            ef_search=self.config.hnsw_ef_search,
            seed=self.config.hnsw_seed,
        )

    async def _ready(self) -> MemoryStore:
        if not self.config.enabled:
            raise MemoryDisabledError()
        if self._store is None:
            async with self._init_lock:
                if self._store is None:
                    await self._initialize()
        assert self._store is not None
        return self._store

    async def _initialize(self) -> None:
        store = await MemoryStore.create(
            self.db_path, flush_threshold=self.config.flush_threshold
        )
        self._lexical.clear()
        try:
            records = [record async for record in store.iter_records()]
            for record in records:
                self._index_lexical(record)
            self._index_detail = self._load_vectors(records)
        except BaseException:
            await store.close()
            raise

        self._search = HybridSearch(
            store, self._lexical, self._vectors, self._vectorizer,
            rrf_k=self.config.rrf_k, ef_search=self.config.hnsw_ef_search,
        )
        self._evictor = MemoryEvictor(
            store, self._vectors, self._lexical,
            max_size_bytes=self.config.max_size_bytes,
            headroom_percent=self.config.eviction_headroom_percent,
            batch_size=self.config.eviction_batch_size,
        )
        self._store = store
        logger.debug(
            "Memory opened at %s (%d records, %s)",
            self.db_path, len(records), self._index_detail,
        )

    def _load_vectors(self, records: list[MemoryRecord]) -> str:
        """Load the vector blob and reconcile it with the store.

        Returns a note for :meth:`stats` describing what was done.
        """
        if not self.index_path.exists():
            self._embed_all(records)
            if records:
                logger.warning(
                    "Vector index %s missing, rebuilt from %d records",
                    self.index_path, len(records),
                )
                self._save_vectors()
                return "vector index missing, rebuilt from record store"
            return "ok"

        try:
            loaded = HNSWIndex.load(
                self.index_path,
                ef_search=self.config.hnsw_ef_search,
                seed=self.config.hnsw_seed,
            )
            if loaded.dimensions != self.config.vector_dimensions:
                raise IndexCorruptedError(
                    f"vector index has {loaded.dimensions} dimensions,"
                    f" configured {self.config.vector_dimensions}"
                )
        except IndexCorruptedError as exc:
            logger.warning("Rebuilding vector index: %s", exc)
            self._embed_all(records)
            self._save_vectors()
            return f"vector index corrupt ({exc}), rebuilt from record store"

        self._vectors = loaded

        known = {record.id for record in records}
        orphans = [label for label in self._vectors.labels() if label not in known]
        for label in orphans:
            self._vectors.remove(label)
        missing = [record for record in records if record.id not in self._vectors]
        for record in missing:
            self._index_vector(record)
        if not orphans and not missing:
            return "ok"
        self._save_vectors()
        logger.warning(
            "Reconciled vector index: removed %d orphans, embedded %d records",
            len(orphans), len(missing),
        )
        return (
            f"reconciled: removed {len(orphans)} orphan vectors,"
            f" embedded {len(missing)} missing records"
        )

    def _save_vectors(self) -> None:
        self._vectors.save(self.index_path)
        self._vector_writes = 0

    async def flush(self) -> None:
        """Write the database snapshot and vector blob now."""
        store = await self._ready()
        async with self._lock:
            await store.flush()
            self._save_vectors()

    async def close(self) -> None:
        """Flush everything and release the database.

        Safe to call repeatedly and on a manager that never opened.
        """
        if self._store is None:
            return
        async with self._lock:
            store, self._store = self._store, None
            try:
                self._save_vectors()
            finally:
                await store.close()

    # ── Indexing ────────────────────────────────────────────────────

    def _index_lexical(self, record: MemoryRecord) -> None:
        self._lexical.index(
            record.id,
            record.searchable_text,
            project=record.project,
            type=record.type,
            created_at=record.created_at,
        )

    def _index_vector(self, record: MemoryRecord) -> None:
        idf = functools.partial(self._lexical.idf, project=record.project)
        vector = self._vectorizer.vectorize(record.embedding_text, idf=idf)
        self._retry_once(
            lambda: self._vectors.insert(record.id, vector), "vector insert", record.id
        )

    def _embed_all(self, records: list[MemoryRecord]) -> None:
        self._vectors.clear()
        for record in records:
            self._index_vector(record)

    @staticmethod
    def _retry_once(action: Callable[[], object], what: str, record_id: str) -> None:
        for attempt in range(2):
            try:
                action()
                return
            except (ValueError, IndexError, KeyError) as exc:
                if attempt:
                    logger.warning(
                        "%s failed for %s, left for reconciliation: %s",
                        what, record_id, exc,
                    )

    async def _commit_indexes(self, record: MemoryRecord) -> None:
        """Index a record already committed to the store."""
        self._lexical.remove(record.id)
        self._index_vector(record)
        self._index_lexical(record)
        await self._count_vector_writes(1)

    async def _count_vector_writes(self, count: int) -> None:
        self._vector_writes += count
        if self._vector_writes >= self.config.index_flush_threshold:
            try:
                self._save_vectors()
            except StorageUnavailableError:
                logger.warning("Deferred vector index flush", exc_info=True)

    async def _auto_evict(self) -> None:
        assert self._evictor is not None
        result = await self._evictor.evict()
        if result.evicted_count:
            await self._count_vector_writes(result.evicted_count)
        if not result.target_reached:
            logger.warning(
                "Memory store over its %d byte limit and nothing left to evict",
                self.config.max_size_bytes,
            )

    # ── Validation ──────────────────────────────────────────────────

    async def _check_session(self, store: MemoryStore, session_id: str | None) -> None:
        if session_id is None:
            return
        session = await store.get_session(session_id)
        if session is None:
            raise MemoryValidationError("session_id", f"unknown session {session_id!r}")
        if not session.is_active:
            raise MemoryValidationError(
                "session_id", f"session {session_id!r} is already completed"
            )

    def _check_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.config.default_limit
        if limit < 1:
            raise MemoryValidationError("limit", f"must be >= 1, got {limit}")
        max_limit = self.config.max_limit
        if max_limit is not None and limit > max_limit:
            raise MemoryValidationError(
                "limit", f"must be <= {max_limit}, got {limit}"
            )
        return limit

    @staticmethod
    def _clean_tags(tags: Iterable[str]) -> tuple[str, ...]:
        cleaned = (strip_private(tag).strip() for tag in tags)
        return tuple(dict.fromkeys(tag for tag in cleaned if tag))

    # ── Records ─────────────────────────────────────────────────────

    async def save_memory(
        self,
        title: str,
        content: str,
        project: str | None = None,
        type: MemoryType | str | None = None,
        tags: Iterable[str] = (),
        session_id: str | None = None,
        id: str | None = None,
    ) -> MemoryRecord:
        """Persist a memory and index it for search.

        Private spans are removed from title, content and tags before
        anything is stored. When *type* is omitted it is inferred from the
        content. Saving again with the same *id* updates the record in
        place and keeps its ``created_at``.

        Raises:
            MemoryDisabledError: Memory is off in the configuration.
            MemoryValidationError: Empty content, unknown type, or an
                unknown or completed session.
        """
        store = await self._ready()
        content = strip_private(content)
        if not content.strip():
            raise MemoryValidationError("content", "must not be empty")
        title = strip_private(title).strip() or extract_title(content)
        memory_type = MemoryType.parse(type) if type else classify_memory(content)
        project = project or self.project

        async with self._lock:
            await self._check_session(store, session_id)
            now = time.time()
            existing = await store.get_record(id) if id else None
            record = MemoryRecord(
                title=title,
                content=content,
                project=project,
                type=memory_type,
                tags=self._clean_tags(tags),
                session_id=session_id,
                created_at=existing.created_at if existing else now,
                updated_at=now,
                accessed_at=now,
                id=id or uuid.uuid4().hex,
            )
            await store.save_record(record)
            await self._commit_indexes(record)
            await self._auto_evict()
        return record

    async def update_memory(
        self,
        id: str,
        *,
        title: str | None = None,
        content: str | None = None,
        type: MemoryType | str | None = None,
        tags: Iterable[str] | None = None,
    ) -> MemoryRecord | None:
        """Change fields of an existing memory; ``None`` if it does not exist."""
        store = await self._ready()
        async with self._lock:
            existing = await store.get_record(id)
            if existing is None:
                return None
            changes: dict[str, object] = {"updated_at": time.time()}
            if content is not None:
                content = strip_private(content)
                if not content.strip():
                    raise MemoryValidationError("content", "must not be empty")
                changes["content"] = content
            if title is not None:
                changes["title"] = (
                    strip_private(title).strip()
                    or extract_title(content or existing.content)
                )
            if type is not None:
                changes["type"] = MemoryType.parse(type)
            if tags is not None:
                changes["tags"] = self._clean_tags(tags)
            record = dataclasses.replace(existing, **changes)
            await store.update_record(record)
            await self._commit_indexes(record)
            await self._auto_evict()
        return record

    async def get_memory(self, ids: str | Iterable[str]) -> list[MemoryRecord]:
        """Full records for exactly the requested ids.

        Unknown ids are omitted. Every returned record counts as accessed.
        """
        store = await self._ready()
        wanted = [ids] if isinstance(ids, str) else list(ids)
        async with self._lock:
            records = await store.get_records(wanted)
            if not records:
                return []
            now = time.time()
            await store.touch([r.id for r in records], now)
        return [dataclasses.replace(r, accessed_at=now) for r in records]

    async def delete_memory(self, id: str) -> bool:
        store = await self._ready()
        async with self._lock:
            deleted = await store.delete_record(id)
            self._retry_once(lambda: self._vectors.remove(id), "vector remove", id)
            self._lexical.remove(id)
            if deleted:
                await self._count_vector_writes(1)
        return deleted

    async def list_memories(
        self,
        limit: int | None = None,
        offset: int = 0,
        project: str | None = None,
        type: MemoryType | str | None = None,
    ) -> list[RecordSummary]:
        """Most recent memories first, without content."""
        store = await self._ready()
        records = await store.list_recent(
            limit=self._check_limit(limit),
            offset=max(offset, 0),
            project=project,
            type=MemoryType.parse(type) if type else None,
        )
        return [
            RecordSummary(
                id=r.id, title=r.title, type=r.type,
                project=r.project, created_at=r.created_at,
            )
            for r in records
        ]

    # ── Search ──────────────────────────────────────────────────────

    async def search_memories(
        self,
        query: str,
        mode: str | None = None,
        limit: int | None = None,
        type: MemoryType | str | None = None,
        project: str | None = None,
        since: float | None = None,
        until: float | None = None,
    ) -> SearchResponse:
        await self._ready()
        assert self._search is not None
        filters = SearchFilters(
            type=MemoryType.parse(type) if type else None,
            project=project,
            since=since,
            until=until,
        )
        return await self._search.search(
            query, mode=mode, limit=self._check_limit(limit), filters=filters
        )

    async def get_timeline(
        self, anchor_id: str, window: int = 5
    ) -> list[TimelineEntry]:
        await self._ready()
        assert self._search is not None
        return await self._search.timeline(anchor_id, window)

    # ── Sessions ────────────────────────────────────────────────────

    async def start_session(self, project: str | None = None) -> MemorySession:
        store = await self._ready()
        session = MemorySession(project=project or self.project)
        async with self._lock:
            await store.create_session(session)
        return session

    async def end_session(
        self, session_id: str, summary: str | None = None
    ) -> MemorySession | None:
        """Complete a session; ``None`` if unknown, unchanged if already ended."""
        store = await self._ready()
        if summary is not None:
            summary = strip_private(summary).strip() or None
        async with self._lock:
            return await store.end_session(session_id, summary)

    async def record_tool_call(self, session_id: str) -> bool:
        store = await self._ready()
        async with self._lock:
            return await store.increment_tool_calls(session_id)

    async def active_session(self, project: str | None = None) -> MemorySession | None:
        store = await self._ready()
        sessions = await store.active_sessions(project or self.project)
        return sessions[0] if sessions else None

    def capture_dispatcher(self, session_id: str | None = None) -> CaptureDispatcher:
        return CaptureDispatcher(self, self.project, session_id)

    # ── Maintenance ─────────────────────────────────────────────────

    async def cleanup(self, force: bool = False) -> EvictionResult:
        """Run eviction now.

        Raises:
            CapacityExceededError: Still over the limit with nothing
                evictable; the partial result is on ``exc.result``.
        """
        store = await self._ready()
        assert self._evictor is not None
        async with self._lock:
            result = await self._evictor.evict(force=force)
            if result.evicted_count:
                await store.flush()
                self._save_vectors()
        if not result.target_reached:
            raise CapacityExceededError(
                f"Memory store exceeds {self.config.max_size_bytes} bytes"
                " and no evictable records remain",
                result,
            )
        return result

    async def rebuild_index(self) -> int:
        """Rebuild both indexes from the record store; returns record count."""
        store = await self._ready()
        async with self._lock:
            records = [record async for record in store.iter_records()]
            self._lexical.clear()
            for record in records:
                self._index_lexical(record)
            self._embed_all(records)
            self._save_vectors()
            self._index_detail = "rebuilt from record store"
        logger.info("Rebuilt memory indexes from %d records", len(records))
        return len(records)

    async def stats(self) -> MemoryStats:
        store = await self._ready()
        record_count = await store.count_records()
        vector_count = len(self._vectors)
        drift = max(
            abs(vector_count - record_count), abs(len(self._lexical) - record_count)
        )
        if drift == 0:
            health = IndexHealth.GOOD
        elif drift < record_count * 0.1:
            health = IndexHealth.DEGRADED
        else:
            health = IndexHealth.NEEDS_REBUILD
        return MemoryStats(
            record_count=record_count,
            session_count=await store.count_sessions(),
            db_size_bytes=await store.size_bytes(),
            index_size_bytes=self._vectors.nbytes,
            max_size_bytes=self.config.max_size_bytes,
            index_health=health,
            index_detail=self._index_detail,
            oldest_record=await store.oldest_created_at(),
            newest_record=await store.newest_created_at(),
        )

    async def export_all(self, format: str = "json") -> str:
        """Dump every record with full content as ``json`` or ``csv``.

        Exporting is a backup, not a read: ``accessed_at`` is unchanged.
        """
        store = await self._ready()
        fmt = format.strip().lower()
        if fmt not in ("json", "csv"):
            raise MemoryValidationError(
                "format", f"unknown export format {format!r} (valid: json, csv)"
            )
        records = [record.to_dict() async for record in store.iter_records()]
        if fmt == "json":
            return json.dumps(records, indent=2)

        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=EXPORT_COLUMNS, lineterminator="\n")
        writer.writeheader()
        for row in records:
            writer.writerow({**row, "tags": ";".join(row["tags"])})
        return buf.getvalue()
