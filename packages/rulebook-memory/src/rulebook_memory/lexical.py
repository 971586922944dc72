"""In-process BM25 inverted index over memory records.

Postings and vocabulary statistics are kept per project so that a
project's IDF values never depend on another project's records. The
index is derived state: it is rebuilt from the record store on startup
and never persisted on its own.
"""
from __future__ import annotations

import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from rulebook_memory.vectorizer import tokenize

if TYPE_CHECKING:
    from collections.abc import Iterable

    from rulebook_memory.types import MemoryType, SearchFilters

BM25_K1 = 1.2
BM25_B = 0.75


@dataclass(slots=True)
class _Document:
    project: str
    type: MemoryType
    created_at: float
    length: int
    term_freqs: Counter[str]


@dataclass(slots=True)
class _ProjectStats:
    doc_freq: Counter[str] = field(default_factory=Counter)
    postings: dict[str, set[str]] = field(
        default_factory=lambda: defaultdict(set)
    )
    doc_count: int = 0
    total_length: int = 0

    @property
    def avg_length(self) -> float:
        return self.total_length / self.doc_count if self.doc_count else 0.0


class LexicalIndex:
    """Exact/prefix keyword retrieval ranked with BM25.

    Scoring for a query term ``t`` in document ``d``::

        idf(t) * tf * (k1 + 1) / (tf + k1 * (1 - b + b * |d| / avgdl))

    with ``idf(t) = ln(1 + (N - df + 0.5) / (df + 0.5))``, ``k1 = 1.2``
    and ``b = 0.75``. A query term ending in ``*`` matches every indexed
    term with that prefix.

    Example::

        index = LexicalIndex()
        index.index("r1", "connection pooling", project="p",
                    type=MemoryType.DISCOVERY, created_at=time.time())
        index.search("pooling")  # [("r1", 0.28...)]
    """

    def __init__(
        self,
        stop_words: Iterable[str] | None = None,
        k1: float = BM25_K1,
        b: float = BM25_B,
    ) -> None:
        self._stop_words = frozenset(stop_words) if stop_words else None
        self._k1 = k1
        self._b = b
        self._docs: dict[str, _Document] = {}
        self._projects: dict[str, _ProjectStats] = defaultdict(_ProjectStats)

    def __len__(self) -> int:
        return len(self._docs)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._docs

    def _tokenize(self, text: str) -> list[str]:
        return tokenize(text, self._stop_words)

    # ── Mutation ────────────────────────────────────────────────────

    def index(
        self,
        record_id: str,
        text: str,
        *,
        project: str,
        type: MemoryType,
        created_at: float,
    ) -> None:
        """Add or replace the document for *record_id*.

        Postings and statistics change together, so a document is never
        retrievable without being counted, or counted without being
        retrievable.
        """
        if record_id in self._docs:
            self.remove(record_id)

        terms = Counter(self._tokenize(text))
        doc = _Document(
            project=project,
            type=type,
            created_at=created_at,
            length=sum(terms.values()),
            term_freqs=terms,
        )
        stats = self._projects[project]
        for term in terms:
            stats.postings[term].add(record_id)
            stats.doc_freq[term] += 1
        stats.doc_count += 1
        stats.total_length += doc.length
        self._docs[record_id] = doc

    def remove(self, record_id: str) -> bool:
        doc = self._docs.pop(record_id, None)
        if doc is None:
            return False

        stats = self._projects[doc.project]
        for term in doc.term_freqs:
            postings = stats.postings.get(term)
            if postings is not None:
                postings.discard(record_id)
                if not postings:
                    del stats.postings[term]
            stats.doc_freq[term] -= 1
            if stats.doc_freq[term] <= 0:
                del stats.doc_freq[term]
        stats.doc_count -= 1
        stats.total_length -= doc.length
        if stats.doc_count == 0:
            del self._projects[doc.project]
        return True

    def clear(self) -> None:
        self._docs.clear()
        self._projects.clear()

    # ── Statistics ──────────────────────────────────────────────────

    def idf(self, term: str, project: str | None = None) -> float:
        """BM25 IDF of *term* within *project* (corpus-wide if None)."""
        if project is None:
            n = len(self._docs)
            df = sum(s.doc_freq.get(term, 0) for s in self._projects.values())
        else:
            stats = self._projects.get(project)
            n = stats.doc_count if stats else 0
            df = stats.doc_freq.get(term, 0) if stats else 0
        return math.log(1.0 + (n - df + 0.5) / (df + 0.5))

    def document_frequency(self, term: str, project: str) -> int:
        stats = self._projects.get(project)
        return stats.doc_freq.get(term, 0) if stats else 0

    # ── Query ───────────────────────────────────────────────────────

    def _expand(self, term: str, stats: _ProjectStats) -> list[str]:
        if term.endswith("*"):
            prefix = term[:-1]
            if not prefix:
                return []
            return [t for t in stats.postings if t.startswith(prefix)]
        return [term] if term in stats.postings else []

    def _query_terms(self, query: str) -> list[str]:
        terms: list[str] = []
        for raw in query.lower().split():
            tokens = self._tokenize(raw)
            if tokens and raw.endswith("*"):
                tokens[-1] += "*"
            terms.extend(tokens)
        # Deduplicate, keep first-seen order
        return list(dict.fromkeys(terms))

    def search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        limit: int | None = None,
    ) -> list[tuple[str, float]]:
        """Rank documents matching any query term.

        Returns:
            ``(record_id, score)`` pairs sorted by score descending; ties
            are ordered by record id so results are stable.
        """
        terms = self._query_terms(query)
        if not terms:
            return []

        scores: dict[str, float] = defaultdict(float)
        for project, stats in self._projects.items():
            if filters and filters.project is not None and project != filters.project:
                continue
            avgdl = stats.avg_length or 1.0
            n = stats.doc_count
            for query_term in terms:
                for term in self._expand(query_term, stats):
                    df = stats.doc_freq[term]
                    idf = math.log(1.0 + (n - df + 0.5) / (df + 0.5))
                    for record_id in stats.postings[term]:
                        doc = self._docs[record_id]
                        if filters and not filters.matches(
                            type=doc.type,
                            project=doc.project,
                            created_at=doc.created_at,
                        ):
                            continue
                        tf = doc.term_freqs[term]
                        norm = self._k1 * (
                            1.0 - self._b + self._b * doc.length / avgdl
                        )
                        scores[record_id] += idf * tf * (self._k1 + 1.0) / (tf + norm)

        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
        if limit is not None:
            ranked = ranked[:limit]
        return ranked
