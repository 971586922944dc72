from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio
from rulebook_core.config import MemoryConfig


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch) -> Path:
    """Keep ~/.rulebook/config.toml of the machine out of every test."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture
def memory_config() -> MemoryConfig:
    # Small beam keeps graph construction fast; seed keeps it reproducible.
    return MemoryConfig(enabled=True, hnsw_seed=42, hnsw_ef_construction=48)


@pytest.fixture
def project_root(tmp_path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest_asyncio.fixture
async def memory_manager(project_root, memory_config):
    from rulebook_memory import MemoryManager
    manager = MemoryManager(project_root, memory_config, project="test-project")
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def memory_store(tmp_path):
    from rulebook_memory import MemoryStore
    store = await MemoryStore.create(tmp_path / "store" / "memory.db")
    yield store
    await store.close()
