"""Size-bounded storage with least-recently-accessed eviction.

Size is the live SQLite page footprint plus the serialized vector index.
When it exceeds ``max_size_bytes`` records are evicted oldest-access-first
until usage falls to ``max * (1 - headroom)``. Decisions and records of
active sessions are never evicted; sessions themselves are never touched.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from rulebook_core.logging import get_logger

from rulebook_memory.types import EvictionResult

if TYPE_CHECKING:
    from rulebook_memory.hnsw import HNSWIndex
    from rulebook_memory.lexical import LexicalIndex
    from rulebook_memory.store import MemoryStore

logger = get_logger("memory.cache")

DEFAULT_MAX_SIZE = 524_288_000  # 500 MiB
EVICTION_BATCH_SIZE = 100
DEFAULT_HEADROOM_PERCENT = 15.0


class MemoryEvictor:
    """Keeps a memory store under its configured size limit."""

    def __init__(
        self,
        store: MemoryStore,
        vectors: HNSWIndex,
        lexical: LexicalIndex,
        max_size_bytes: int = DEFAULT_MAX_SIZE,
        headroom_percent: float = DEFAULT_HEADROOM_PERCENT,
        batch_size: int = EVICTION_BATCH_SIZE,
    ) -> None:
        self._store = store
        self._vectors = vectors
        self._lexical = lexical
        self.max_size_bytes = max_size_bytes
        self.headroom_percent = headroom_percent
        self.batch_size = batch_size

    async def current_size(self) -> int:
        return await self._store.size_bytes() + self._vectors.nbytes

    async def usage_percent(self) -> float:
        return await self.current_size() / self.max_size_bytes * 100

    async def is_over_limit(self) -> bool:
        return await self.current_size() > self.max_size_bytes

    def target_size(self) -> int:
        return int(self.max_size_bytes * (1 - self.headroom_percent / 100))

    async def _evict_one(self, record_id: str) -> None:
        # Store first: an index entry without a record is harmless and
        # gets reconciled at search time, the reverse is not.
        await self._store.delete_record(record_id)
        for attempt in range(2):
            try:
                self._vectors.remove(record_id)
                break
            except (KeyError, IndexError, ValueError) as exc:
                if attempt:
                    logger.warning(
                        "Vector entry %s left orphaned: %s", record_id, exc
                    )
        self._lexical.remove(record_id)

    async def _evict_batch(
        self, batch: list[str], target: int | None, evicted: list[str]
    ) -> None:
        """Evict *batch* in order, stopping early once *target* is reached.

        Deleted rows only free whole pages after compaction, so the
        database share is estimated from row footprints while the batch
        runs and measured again after the closing ``VACUUM``.
        """
        footprints = await self._store.record_footprints(batch)
        db_size = await self._store.size_bytes()
        for record_id in batch:
            await self._evict_one(record_id)
            evicted.append(record_id)
            db_size -= footprints.get(record_id, 0)
            if target is not None and db_size + self._vectors.nbytes <= target:
                break
        await self._store.compact()

    async def _evict_until(self, target: int, evicted: list[str]) -> None:
        """Evict in batches until size <= *target* or candidates run out."""
        while await self.current_size() > target:
            batch = await self._store.eviction_candidates(self.batch_size)
            if not batch:
                return
            await self._evict_batch(batch, target, evicted)

    async def evict(self, force: bool = False) -> EvictionResult:
        """Evict least recently accessed records.

        Without *force* this is a no-op unless the store is over its
        limit. With *force* one batch is evicted unconditionally before
        continuing toward the target.

        Returns:
            An :class:`EvictionResult`; ``target_reached`` is False only
            when candidates ran out while the store is still over its
            limit.
        """
        before = await self.current_size()
        if not force and before <= self.max_size_bytes:
            return EvictionResult()

        evicted: list[str] = []
        if force:
            batch = await self._store.eviction_candidates(self.batch_size)
            if batch:
                await self._evict_batch(batch, None, evicted)
        await self._evict_until(self.target_size(), evicted)

        after = await self.current_size()
        result = EvictionResult(
            evicted_count=len(evicted),
            freed_bytes=max(0, before - after),
            target_reached=after <= self.max_size_bytes,
            evicted_ids=tuple(evicted),
        )
        logger.info(
            "Evicted %d memories, freed %d bytes (%.1f%% of limit in use)",
            result.evicted_count,
            result.freed_bytes,
            after / self.max_size_bytes * 100,
        )
        return result
