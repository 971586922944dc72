"""Tests for the ``rulebook memory`` command group."""
from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from rulebook_cli.main import app
from typer.testing import CliRunner

runner = CliRunner()

# ── Fixtures ────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def reset_logging():
    """Each invocation installs a stderr handler bound to that run's stream."""
    yield
    logging.getLogger("rulebook").handlers.clear()


@pytest.fixture()
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A project directory with memory enabled, used as the cwd."""
    root = tmp_path / "cli-project"
    (root / ".rulebook").mkdir(parents=True)
    (root / ".rulebook" / "config.toml").write_text(
        "[memory]\nenabled = true\nhnsw_seed = 7\nhnsw_ef_construction = 32\n"
    )
    monkeypatch.chdir(root)
    return root


def _invoke(*args: str, input: str | None = None):
    return runner.invoke(app, list(args), input=input)


def _search_json(query: str, *extra: str) -> dict:
    result = _invoke("memory", "search", query, "--json", *extra)
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


# ── Commands ────────────────────────────────────────────────


class TestMemoryCli:
    def test_version(self):
        result = _invoke("version")
        assert result.exit_code == 0
        assert "rulebook 0.1.0" in result.stdout

    def test_disabled(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.chdir(tmp_path)
        result = _invoke("memory", "stats")
        assert result.exit_code == 1
        assert "Memory is disabled" in result.stdout
        assert "enabled = true" in result.stdout

    def test_save_and_search(self, project: Path):
        result = _invoke(
            "memory", "save", "database connection pooling patterns", "--type", "discovery"
        )
        assert result.exit_code == 0, result.output
        assert "Saved" in result.stdout
        _invoke("memory", "save", "unrelated topic about cooking")

        data = _search_json("connection pooling")
        assert data["mode"] == "hybrid"
        assert data["results"][0]["title"] == "database connection pooling patterns"
        assert data["results"][0]["type"] == "discovery"

        table = _invoke("memory", "search", "pooling", "--mode", "lexical")
        assert table.exit_code == 0
        assert "Memories matching" in table.stdout

    def test_get_timeline_delete(self, project: Path):
        _invoke("memory", "save", "first timeline entry about queues")
        _invoke("memory", "save", "second timeline entry about queues")
        record_id = _search_json("second", "--mode", "lexical")["results"][0]["id"]

        got = _invoke("memory", "get", record_id, "--json")
        assert got.exit_code == 0
        assert json.loads(got.stdout)[0]["content"] == "second timeline entry about queues"

        timeline = _invoke("memory", "timeline", record_id, "--window", "2")
        assert timeline.exit_code == 0

        assert _invoke("memory", "delete", record_id).exit_code == 0
        missing = _invoke("memory", "delete", record_id)
        assert missing.exit_code == 1
        assert "Memory not found" in missing.stdout
        assert _invoke("memory", "timeline", record_id).exit_code == 1

    def test_private_content_is_dropped(self, project: Path):
        _invoke("memory", "save", "<private>token=abc123</private> Use this endpoint for auth")
        exported = _invoke("memory", "export")
        assert exported.exit_code == 0
        assert "abc123" not in exported.stdout
        assert "Use this endpoint for auth" in exported.stdout

    def test_invalid_mode(self, project: Path):
        result = _invoke("memory", "search", "anything", "--mode", "fuzzy")
        assert result.exit_code == 2
        assert "Invalid input" in result.stdout

    def test_list_stats_export(self, project: Path, tmp_path: Path):
        for i in range(3):
            _invoke("memory", "save", f"listed memory number {i}", "--tag", "cli")

        listed = _invoke("memory", "list")
        assert listed.exit_code == 0
        assert "Recent Memories" in listed.stdout

        stats = _invoke("memory", "stats", "--json")
        assert json.loads(stats.stdout)["record_count"] == 3
        assert "Memory Stats" in _invoke("memory", "stats").stdout

        out = tmp_path / "export.csv"
        assert _invoke("memory", "export", "--format", "csv", "--output", str(out)).exit_code == 0
        lines = out.read_text().splitlines()
        assert lines[0].startswith("id,type,title,content")
        assert len(lines) == 4

    def test_cleanup_and_rebuild(self, project: Path):
        _invoke("memory", "save", "something to keep")
        cleanup = _invoke("memory", "cleanup")
        assert cleanup.exit_code == 0
        assert "Nothing to evict" in cleanup.stdout

        rebuild = _invoke("memory", "rebuild")
        assert rebuild.exit_code == 0
        assert "Rebuilt indexes" in rebuild.stdout

        forced = _invoke("memory", "cleanup", "--force")
        assert forced.exit_code == 0
        assert "Evicted 1 memories" in forced.stdout

    def test_capture_from_stdin(self, project: Path):
        text = (
            "Fix the race in the worker pool by holding the lock during shutdown.\n"
            "---\n"
            "Decision: keep SQLite snapshots and flush them every fifty writes.\n"
        )
        result = _invoke("memory", "capture", "--agent", "cursor", input=text)
        assert result.exit_code == 0, result.output
        assert "Captured 2" in result.stdout

    def test_sessions(self, project: Path):
        started = _invoke("memory", "session", "start")
        assert started.exit_code == 0
        session_id = started.stdout.split()[-1]

        saved = _invoke("memory", "save", "work in a session", "--session", session_id)
        assert saved.exit_code == 0

        ended = _invoke("memory", "session", "end", session_id, "--summary", "done")
        assert ended.exit_code == 0
        assert "Ended session" in ended.stdout

        late = _invoke("memory", "save", "too late", "--session", session_id)
        assert late.exit_code == 2
        assert _invoke("memory", "session", "end", "missing").exit_code == 1
