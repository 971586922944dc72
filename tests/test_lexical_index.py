from __future__ import annotations

import math

import pytest
from rulebook_memory.lexical import LexicalIndex
from rulebook_memory.types import MemoryType, SearchFilters


def _add(
    index: LexicalIndex,
    record_id: str,
    text: str,
    project: str = "alpha",
    type: MemoryType = MemoryType.OBSERVATION,
    created_at: float = 1000.0,
) -> None:
    index.index(record_id, text, project=project, type=type, created_at=created_at)


class TestLexicalIndex:
    def test_ranks_matching_documents(self):
        index = LexicalIndex()
        _add(index, "a", "database connection pooling patterns")
        _add(index, "b", "unrelated topic about cooking")
        _add(index, "c", "pooling pooling pooling in the worker")

        hits = index.search("pooling")
        ids = [record_id for record_id, _ in hits]
        assert set(ids) == {"a", "c"}
        assert "b" not in ids
        assert all(score > 0 for _, score in hits)

    def test_bm25_single_document_score(self):
        index = LexicalIndex()
        _add(index, "only", "pooling")
        [(record_id, score)] = index.search("pooling")
        # N=1, df=1, tf=1, |d|=avgdl: the tf factor reduces to 1
        assert record_id == "only"
        assert score == pytest.approx(math.log(1 + 0.5 / 1.5))

    def test_reindex_replaces_document(self):
        index = LexicalIndex()
        _add(index, "a", "old wording about caches")
        _add(index, "a", "new wording about queues")

        assert len(index) == 1
        assert index.search("caches") == []
        assert [r for r, _ in index.search("queues")] == ["a"]
        assert index.document_frequency("wording", "alpha") == 1

    def test_remove(self):
        index = LexicalIndex()
        _add(index, "a", "connection pooling")
        empty_idf = LexicalIndex().idf("pooling", project="alpha")

        assert index.remove("a") is True
        assert index.remove("a") is False
        assert "a" not in index
        assert index.search("pooling") == []
        assert index.document_frequency("pooling", "alpha") == 0
        assert index.idf("pooling", project="alpha") == pytest.approx(empty_idf)

    def test_prefix_query(self):
        index = LexicalIndex()
        _add(index, "a", "connection pooling")
        _add(index, "b", "thread pool sizing")
        _add(index, "c", "swimming lessons")

        assert {r for r, _ in index.search("pool*")} == {"a", "b"}
        assert index.search("*") == []

    def test_stop_word_query_matches_nothing(self):
        index = LexicalIndex()
        _add(index, "a", "the connection")
        assert index.search("the and of") == []

    def test_ties_break_by_id(self):
        index = LexicalIndex()
        _add(index, "b", "retry logic")
        _add(index, "a", "retry logic")
        assert [r for r, _ in index.search("retry")] == ["a", "b"]

    def test_limit(self):
        index = LexicalIndex()
        for i in range(5):
            _add(index, f"r{i}", "flaky test")
        assert len(index.search("flaky", limit=2)) == 2

    def test_filters(self):
        index = LexicalIndex()
        _add(index, "a", "cache eviction", type=MemoryType.DECISION, created_at=100.0)
        _add(index, "b", "cache warming", type=MemoryType.BUGFIX, created_at=200.0)
        _add(index, "c", "cache keys", project="beta", created_at=300.0)

        def ids(filters: SearchFilters) -> set[str]:
            return {r for r, _ in index.search("cache", filters=filters)}

        assert ids(SearchFilters(type=MemoryType.DECISION)) == {"a"}
        assert ids(SearchFilters(project="beta")) == {"c"}
        assert ids(SearchFilters(since=150.0)) == {"b", "c"}
        assert ids(SearchFilters(until=200.0)) == {"a", "b"}
        assert ids(SearchFilters(since=150.0, until=250.0)) == {"b"}

    def test_statistics_are_per_project(self):
        index = LexicalIndex()
        _add(index, "a1", "connection pooling", project="alpha")
        _add(index, "a2", "schema migration", project="alpha")
        before = index.idf("pooling", project="alpha")
        score_before = index.search("pooling", SearchFilters(project="alpha"))

        for i in range(10):
            _add(index, f"b{i}", "pooling everywhere", project="beta")

        assert index.idf("pooling", project="alpha") == pytest.approx(before)
        assert index.search("pooling", SearchFilters(project="alpha")) == score_before

    def test_custom_stop_words(self):
        index = LexicalIndex(stop_words={"pooling"})
        _add(index, "a", "connection pooling")
        assert index.search("pooling") == []
        assert [r for r, _ in index.search("the connection")] == ["a"]

    def test_clear(self):
        index = LexicalIndex()
        _add(index, "a", "connection pooling")
        index.clear()
        assert len(index) == 0
        assert index.search("pooling") == []
