from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from rulebook_core.errors import ConfigError


def _load_toml(path: Path) -> dict:
    """Load a TOML file, returning empty dict if missing."""
    if not path.exists():
        return {}
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Cannot read config {path}: {exc}") from exc


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into base (1 level deep for TOML sections)."""
    merged = dict(base)
    for key, val in override.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(val, dict)
        ):
            merged[key] = {**merged[key], **val}
        else:
            merged[key] = val
    return merged


@dataclass(frozen=True, slots=True)
class MemoryConfig:
    """Persistent memory settings (``[memory]`` table)."""
    enabled: bool = False
    db_path: str = ".rulebook/memory/memory.db"
    index_path: str | None = None  # defaults to vectors.hnsw beside db_path
    max_size_bytes: int = 524_288_000  # 500 MiB
    auto_capture: bool = False
    vector_dimensions: int = 256
    hnsw_m: int = 16
    hnsw_ef_construction: int = 200
    hnsw_ef_search: int = 50
    hnsw_seed: int | None = None
    rrf_k: int = 60
    eviction_headroom_percent: float = 15.0
    eviction_batch_size: int = 100
    flush_threshold: int = 50
    index_flush_threshold: int = 100
    default_limit: int = 20
    max_limit: int | None = None  # no upper bound when unset
    stop_words: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.vector_dimensions <= 0:
            raise ConfigError("memory.vector_dimensions must be positive")
        if self.hnsw_m < 2:
            raise ConfigError("memory.hnsw_m must be at least 2")
        if self.hnsw_ef_construction < 1 or self.hnsw_ef_search < 1:
            raise ConfigError("memory.hnsw_ef_* must be positive")
        if not 0 <= self.eviction_headroom_percent < 100:
            raise ConfigError(
                "memory.eviction_headroom_percent must be in [0, 100)"
            )
        if self.max_size_bytes <= 0:
            raise ConfigError("memory.max_size_bytes must be positive")
        if self.flush_threshold < 1 or self.index_flush_threshold < 1:
            raise ConfigError("memory flush thresholds must be >= 1")
        if self.default_limit < 1:
            raise ConfigError("memory.default_limit must be >= 1")
        if self.max_limit is not None and self.default_limit > self.max_limit:
            raise ConfigError("memory.default_limit must not exceed max_limit")

    def resolve_db_path(self, project_root: Path | str) -> Path:
        return Path(project_root) / self.db_path

    def resolve_index_path(self, project_root: Path | str) -> Path:
        if self.index_path:
            return Path(project_root) / self.index_path
        return self.resolve_db_path(project_root).with_name("vectors.hnsw")


@dataclass(frozen=True, slots=True)
class RulebookConfig:
    """Top-level configuration, parsed from .rulebook/config.toml."""
    project_name: str = "rulebook-project"
    memory: MemoryConfig = field(default_factory=MemoryConfig)

    @classmethod
    def from_toml(
        cls, path: Path | str = "rulebook.toml"
    ) -> RulebookConfig:
        path = Path(path)
        raw = _load_toml(path)
        return cls._from_raw(raw)

    @classmethod
    def load(
        cls, project_dir: Path | str | None = None
    ) -> RulebookConfig:
        """Load config with global → project layering.

        Resolution order (later wins):
        1. Built-in defaults
        2. ~/.rulebook/config.toml (global)
        3. .rulebook/config.toml or rulebook.toml (project)
        """
        global_path = Path.home() / ".rulebook" / "config.toml"

        project_dir = (
            Path.cwd() if project_dir is None else Path(project_dir)
        )

        # Project config: .rulebook/config.toml takes priority
        project_path = project_dir / ".rulebook" / "config.toml"
        if not project_path.exists():
            project_path = project_dir / "rulebook.toml"

        global_raw = _load_toml(global_path)
        project_raw = _load_toml(project_path)
        merged = _deep_merge(global_raw, project_raw)

        config = cls._from_raw(merged)
        if "name" not in merged.get("project", {}):
            return cls(project_name=project_dir.resolve().name, memory=config.memory)
        return config

    @classmethod
    def _from_raw(cls, raw: dict) -> RulebookConfig:
        """Build RulebookConfig from a raw TOML dict."""
        memory_raw = raw.get("memory", {})

        def _pick(section: dict, dc: type) -> dict:
            fields = dc.__dataclass_fields__
            return {
                k: v for k, v in section.items() if k in fields
            }

        return cls(
            project_name=raw.get("project", {}).get(
                "name", "rulebook-project"
            ),
            memory=MemoryConfig(**_pick(memory_raw, MemoryConfig)),
        )
