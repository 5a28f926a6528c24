"""Abstract storage interfaces used by the persistent cache tiers.

The module provides:
- CacheRecordStore interface backing the database cache layer
- FileStore interface backing the filesystem cache layer
- Common aggregate and error types

Thread Safety:
    Thread-safe: Abstract interfaces with no shared state.

Example:
    >>> class MyRecordStore(CacheRecordStore):
    ...     async def upsert(self, key: str, record: Mapping[str, Any]) -> None:
    ...         # Implementation
    ...         pass
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..utils.errors import FoundationError

# ==============================================================================
# TYPE DEFINITIONS
# ==============================================================================

RecordPredicate = Callable[[Mapping[str, Any]], bool]


# ==============================================================================
# DATA MODELS
# ==============================================================================


@dataclass(slots=True, frozen=True)
class RecordAggregate:
    """Count/sum aggregate returned by :meth:`CacheRecordStore.aggregate`.

    Attributes:
        count: Number of stored records.
        total_size: Sum of the ``size_bytes`` field across records.
    """

    count: int = 0
    total_size: int = 0


# ==============================================================================
# INTERFACES
# ==============================================================================


class StorageError(FoundationError):
    """Base exception for storage backends."""

    def __init__(self, message: str, *, backend: str | None = None) -> None:
        super().__init__(
            message,
            status=503,
            extra={"backend": backend} if backend else None,
        )
        self.backend = backend


class CacheRecordStore(ABC):
    """Key-value persistence for JSON cache records.

    Records are plain mappings; implementations must round-trip them through
    JSON without loss.
    """

    @abstractmethod
    async def upsert(self, key: str, record: Mapping[str, Any]) -> None:
        """Insert or replace the record stored under ``key``."""

    @abstractmethod
    async def fetch(self, key: str) -> dict[str, Any] | None:
        """Return the record stored under ``key`` or ``None``."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove ``key``; returns whether a record existed."""

    @abstractmethod
    async def select(
        self, predicate: RecordPredicate, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Return up to ``limit`` records matching ``predicate``."""

    @abstractmethod
    async def delete_where(self, predicate: RecordPredicate) -> int:
        """Remove every record matching ``predicate`` and return the count."""

    @abstractmethod
    async def aggregate(self) -> RecordAggregate:
        """Return the record count and summed ``size_bytes``."""

    @abstractmethod
    async def clear(self) -> int:
        """Remove all records and return how many were removed."""


class FileStore(ABC):
    """Filesystem-like backend addressed by relative paths."""

    @abstractmethod
    async def read(self, path: Path) -> bytes | None:
        """Return file content or ``None`` when the file is missing."""

    @abstractmethod
    async def write(self, path: Path, data: bytes) -> None:
        """Write ``data`` creating parent directories as required."""

    @abstractmethod
    async def delete(self, path: Path) -> bool:
        """Delete a file; returns whether it existed."""

    @abstractmethod
    def iter_paths(self, suffix: str = ".json") -> AsyncIterator[Path]:
        """Iterate relative paths of stored files ending with ``suffix``."""


__all__ = [
    "CacheRecordStore",
    "FileStore",
    "RecordAggregate",
    "RecordPredicate",
    "StorageError",
]
