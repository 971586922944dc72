"""Rulebook Core: shared config, errors, and logging."""
from __future__ import annotations

from rulebook_core._version import __version__
from rulebook_core.config import MemoryConfig, RulebookConfig
from rulebook_core.errors import (
    CapacityExceededError,
    ConfigError,
    IndexCorruptedError,
    MemoryDisabledError,
    MemorySubsystemError,
    MemoryValidationError,
    RulebookError,
    StorageUnavailableError,
)
from rulebook_core.logging import get_logger, setup_logging

__all__ = [
    # Errors
    "CapacityExceededError",
    "ConfigError",
    "IndexCorruptedError",
    # Config
    "MemoryConfig",
    "MemoryDisabledError",
    "MemorySubsystemError",
    "MemoryValidationError",
    "RulebookConfig",
    "RulebookError",
    "StorageUnavailableError",
    # Version
    "__version__",
    # Logging
    "get_logger",
    "setup_logging",
]
