from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rulebook_memory.types import EvictionResult


class RulebookError(Exception):
    """Base exception for all Rulebook errors."""


# ── Config Errors ────────────────────────────────────────────────────

class ConfigError(RulebookError):
    """Invalid or missing configuration."""


# ── Memory Errors ────────────────────────────────────────────────────

class MemorySubsystemError(RulebookError):
    """Base for persistent-memory errors."""


class MemoryDisabledError(MemorySubsystemError):
    """Memory is disabled in the project configuration."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(
            message
            or "Memory is not enabled. Set `enabled = true` under"
            " [memory] in .rulebook/config.toml."
        )


class MemoryValidationError(MemorySubsystemError, ValueError):
    """Malformed input rejected before touching storage."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class StorageUnavailableError(MemorySubsystemError):
    """Record store or index file cannot be read or written."""


class IndexCorruptedError(StorageUnavailableError):
    """A persisted vector index blob failed to deserialize."""


class CapacityExceededError(MemorySubsystemError):
    """Storage budget exceeded and nothing left that may be evicted."""

    def __init__(self, message: str, result: EvictionResult) -> None:
        super().__init__(message)
        self.result = result
