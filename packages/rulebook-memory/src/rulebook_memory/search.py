"""Hybrid retrieval: BM25, HNSW, or both fused with Reciprocal Rank Fusion.

RRF scores a document by its ordinal position in each ranked list::

    score(doc) = sum(1 / (k + rank_i))

with 1-based ``rank_i`` and ``k = 60`` by default. Raw BM25 scores and
cosine similarities live on incomparable scales, so only ranks are fused.
"""
from __future__ import annotations

import functools
from typing import TYPE_CHECKING

from rulebook_core.errors import MemoryValidationError
from rulebook_core.logging import get_logger

from rulebook_memory.types import (
    MatchType,
    SearchFilters,
    SearchMode,
    SearchResponse,
    SearchResult,
    TimelineEntry,
)

if TYPE_CHECKING:
    from rulebook_memory.hnsw import HNSWIndex
    from rulebook_memory.lexical import LexicalIndex
    from rulebook_memory.store import MemoryStore
    from rulebook_memory.types import RecordSummary
    from rulebook_memory.vectorizer import Vectorizer

logger = get_logger("memory.search")

RRF_K = 60


def reciprocal_rank_fusion(
    *ranked_lists: list[tuple[str, float]],
    k: int = RRF_K,
    top_k: int | None = None,
) -> list[tuple[str, float]]:
    """Fuse ranked ``(doc_id, score)`` lists by rank.

    Each input must already be sorted best-first; its scores are ignored.
    Ties in the fused score are broken by doc id so output is stable.
    """
    scores: dict[str, float] = {}
    for ranked in ranked_lists:
        for rank, (doc_id, _score) in enumerate(ranked, start=1):
            scores[doc_id] = scores.get(doc_id, 0.0) + 1.0 / (k + rank)

    fused = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
    if top_k is not None:
        fused = fused[:top_k]
    return fused


class HybridSearch:
    """Query both indexes and hydrate compact results from the store.

    Candidates whose record no longer exists in the store are dropped
    from results and removed from both indexes.
    """

    def __init__(
        self,
        store: MemoryStore,
        lexical: LexicalIndex,
        vectors: HNSWIndex,
        vectorizer: Vectorizer,
        rrf_k: int = RRF_K,
        ef_search: int = 50,
    ) -> None:
        self._store = store
        self._lexical = lexical
        self._vectors = vectors
        self._vectorizer = vectorizer
        self._rrf_k = rrf_k
        self._ef_search = ef_search

    # ── Candidate generation ────────────────────────────────────────

    async def _resolve(self, ids: list[str]) -> dict[str, RecordSummary]:
        summaries = await self._store.get_summaries(ids)
        orphans = [i for i in ids if i not in summaries]
        if orphans:
            self._reconcile(orphans)
        return summaries

    def _reconcile(self, orphans: list[str]) -> None:
        for record_id in orphans:
            self._vectors.remove(record_id)
            self._lexical.remove(record_id)
        logger.warning(
            "Dropped %d index entries with no backing record", len(orphans)
        )

    async def _lexical_candidates(
        self, query: str, filters: SearchFilters, limit: int | None
    ) -> tuple[list[tuple[str, float]], dict[str, RecordSummary]]:
        ranked = self._lexical.search(query, filters, limit)
        summaries = await self._resolve([i for i, _ in ranked])
        return [(i, s) for i, s in ranked if i in summaries], summaries

    async def _vector_candidates(
        self, query: str, filters: SearchFilters, wanted: int
    ) -> tuple[list[tuple[str, float]], dict[str, RecordSummary]]:
        """Nearest neighbours passing *filters*, as ``(id, similarity)``.

        The HNSW fetch size doubles until *wanted* filtered candidates
        with positive similarity are found or the index is exhausted.
        """
        size = len(self._vectors)
        if size == 0:
            return [], {}
        idf = functools.partial(self._lexical.idf, project=filters.project)
        query_vec = self._vectorizer.vectorize(query, idf=idf)
        if not query_vec.any():
            return [], {}

        fetch = wanted
        while True:
            hits = self._vectors.search(
                query_vec, k=fetch, ef=max(self._ef_search, fetch)
            )
            summaries = await self._resolve([label for label, _ in hits])
            matched: list[tuple[str, float]] = []
            for label, distance in hits:
                similarity = 1.0 - distance
                summary = summaries.get(label)
                if summary is None or similarity <= 0:
                    continue
                if filters.matches(
                    type=summary.type,
                    project=summary.project,
                    created_at=summary.created_at,
                ):
                    matched.append((label, similarity))
            # Hits are nearest first; once one is non-positive the rest are too.
            exhausted = fetch >= size or (bool(hits) and 1.0 - hits[-1][1] <= 0)
            if len(matched) >= wanted or exhausted:
                return matched[:wanted], summaries
            fetch = min(fetch * 2, size)

    # ── Public API ──────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        mode: SearchMode | str | None = SearchMode.HYBRID,
        limit: int = 20,
        filters: SearchFilters | None = None,
    ) -> SearchResponse:
        """Rank records for *query*.

        Args:
            query: Free text; ``term*`` is a prefix term in lexical mode.
            mode: ``lexical`` (alias ``bm25``), ``vector`` or ``hybrid``.
            limit: Maximum results returned.
            filters: Applied before ranking, identically in every mode.

        Raises:
            MemoryValidationError: For an unknown mode or ``limit < 1``.
        """
        mode = SearchMode.parse(mode)
        if limit < 1:
            raise MemoryValidationError("limit", f"must be >= 1, got {limit}")
        filters = filters or SearchFilters()
        pool = limit * 2

        if mode is SearchMode.LEXICAL:
            ranked, summaries = await self._lexical_candidates(query, filters, None)
            match = MatchType.LEXICAL
            results = [
                self._result(summaries[i], score, match) for i, score in ranked
            ]
            return SearchResponse(results[:limit], len(results), mode)

        if mode is SearchMode.VECTOR:
            ranked, summaries = await self._vector_candidates(query, filters, pool)
            match = MatchType.VECTOR
            results = [
                self._result(summaries[i], score, match) for i, score in ranked
            ]
            return SearchResponse(results[:limit], len(results), mode)

        lexical, lex_summaries = await self._lexical_candidates(query, filters, pool)
        vector, vec_summaries = await self._vector_candidates(query, filters, pool)
        summaries = {**lex_summaries, **vec_summaries}
        lexical_ids = {i for i, _ in lexical}
        vector_ids = {i for i, _ in vector}
        fused = reciprocal_rank_fusion(lexical, vector, k=self._rrf_k)

        results = []
        for record_id, score in fused:
            if record_id in lexical_ids and record_id in vector_ids:
                match = MatchType.BOTH
            elif record_id in lexical_ids:
                match = MatchType.LEXICAL
            else:
                match = MatchType.VECTOR
            results.append(self._result(summaries[record_id], score, match))
        return SearchResponse(results[:limit], len(results), mode)

    @staticmethod
    def _result(
        summary: RecordSummary, score: float, match: MatchType
    ) -> SearchResult:
        return SearchResult(
            id=summary.id,
            title=summary.title,
            type=summary.type,
            score=score,
            match_type=match,
            created_at=summary.created_at,
        )

    async def timeline(
        self, anchor_id: str, window: int = 5
    ) -> list[TimelineEntry]:
        """Records created just before and after *anchor_id*.

        *window* neighbours are split across both sides (``window // 2``
        before, the rest after), so ``window=2`` yields one record on each
        side of the anchor. Entries are chronological; ``[]`` if the
        anchor does not exist.
        """
        if window < 0:
            raise MemoryValidationError("window", f"must be >= 0, got {window}")
        half = window // 2
        found = await self._store.timeline_around(anchor_id, half, window - half)
        if found is None:
            return []
        before, anchor, after = found

        def entry(summary: RecordSummary, position: str, offset: int) -> TimelineEntry:
            return TimelineEntry(
                id=summary.id,
                title=summary.title,
                type=summary.type,
                created_at=summary.created_at,
                position=position,
                offset=offset,
            )

        return [
            *(entry(s, "before", i - len(before)) for i, s in enumerate(before)),
            entry(anchor, "anchor", 0),
            *(entry(s, "after", i) for i, s in enumerate(after, start=1)),
        ]
