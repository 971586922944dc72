from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
from rulebook_core.config import MemoryConfig, RulebookConfig
from rulebook_core.errors import ConfigError


class TestConfig:
    def test_default_config(self):
        config = RulebookConfig()
        assert config.memory.enabled is False
        assert config.memory.max_size_bytes == 524_288_000
        assert config.memory.vector_dimensions == 256
        assert config.memory.hnsw_m == 16
        assert config.memory.rrf_k == 60
        assert config.memory.max_limit is None

    def test_from_toml_missing_file(self):
        config = RulebookConfig.from_toml("/nonexistent/path/rulebook.toml")
        assert config.memory.enabled is False  # Returns defaults

    def test_from_toml(self):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
            f.write('''
[project]
name = "test-project"

[memory]
enabled = true
max_size_bytes = 1048576
hnsw_ef_search = 80
stop_words = ["foo", "bar"]
unknown_key = "ignored"
''')
            f.flush()
            config = RulebookConfig.from_toml(f.name)

        assert config.project_name == "test-project"
        assert config.memory.enabled is True
        assert config.memory.max_size_bytes == 1_048_576
        assert config.memory.hnsw_ef_search == 80
        assert config.memory.stop_words == ["foo", "bar"]

        Path(f.name).unlink()

    def test_malformed_toml(self, tmp_path):
        path = tmp_path / "rulebook.toml"
        path.write_text("[memory\nenabled = ")
        with pytest.raises(ConfigError):
            RulebookConfig.from_toml(path)

    def test_invalid_values(self):
        with pytest.raises(ConfigError):
            MemoryConfig(hnsw_m=1)
        with pytest.raises(ConfigError):
            MemoryConfig(eviction_headroom_percent=100)
        with pytest.raises(ConfigError):
            MemoryConfig(default_limit=500, max_limit=100)
        with pytest.raises(ConfigError):
            MemoryConfig(max_size_bytes=0)

    def test_resolve_paths(self, tmp_path):
        config = MemoryConfig()
        assert config.resolve_db_path(tmp_path) == tmp_path / ".rulebook/memory/memory.db"
        assert config.resolve_index_path(tmp_path) == tmp_path / ".rulebook/memory/vectors.hnsw"

        custom = MemoryConfig(index_path="idx/vectors.bin")
        assert custom.resolve_index_path(tmp_path) == tmp_path / "idx/vectors.bin"


class TestLayeredConfig:
    def test_project_overrides_global(self, tmp_path, isolated_home):
        global_dir = isolated_home / ".rulebook"
        global_dir.mkdir()
        (global_dir / "config.toml").write_text(
            "[memory]\nmax_size_bytes = 2000000\nauto_capture = true\n"
        )
        project = tmp_path / "proj"
        (project / ".rulebook").mkdir(parents=True)
        (project / ".rulebook" / "config.toml").write_text(
            "[memory]\nenabled = true\nmax_size_bytes = 3000000\n"
        )

        config = RulebookConfig.load(project)
        assert config.memory.enabled is True
        assert config.memory.max_size_bytes == 3_000_000
        assert config.memory.auto_capture is True

    def test_rulebook_toml_fallback(self, tmp_path):
        project = tmp_path / "proj"
        project.mkdir()
        (project / "rulebook.toml").write_text('[project]\nname = "named"\n')
        assert RulebookConfig.load(project).project_name == "named"

    def test_project_name_defaults_to_directory(self, tmp_path):
        project = tmp_path / "my-service"
        project.mkdir()
        config = RulebookConfig.load(project)
        assert config.project_name == "my-service"
        assert config.memory.enabled is False
