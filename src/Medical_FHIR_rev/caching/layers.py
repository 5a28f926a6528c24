"""Cache tiers used by :class:`~Medical_FHIR_rev.caching.cache_manager.ValidationCacheManager`.

Each tier stores complete :class:`CacheEntry` objects and applies lazy expiry
on read. Backend errors propagate to the manager, which logs them and treats
the tier as a miss.
"""

from __future__ import annotations

import copy
import json
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import structlog
from pydantic import ValidationError

from ..models.cache import CacheEntry, CacheLayerName
from ..storage.base import CacheRecordStore, FileStore

logger = structlog.get_logger(__name__)

EntryPredicate = Callable[[CacheEntry], bool]


@dataclass(slots=True, frozen=True)
class LayerUsage:
    entries: int = 0
    size_bytes: int = 0


def _detached(entry: CacheEntry) -> CacheEntry:
    """Copy of ``entry`` whose value callers may mutate freely."""
    return entry.model_copy(update={"value": copy.deepcopy(entry.value)})


class CacheLayer(ABC):
    """Abstract base class for cache tiers."""

    name: CacheLayerName

    def __init__(self) -> None:
        self.evictions = 0

    @abstractmethod
    async def get(self, key: str, now: float) -> CacheEntry | None:
        """Return a live entry, dropping it first when expired."""

    @abstractmethod
    async def put(self, entry: CacheEntry) -> None:
        """Store ``entry``, replacing any previous value for its key."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key; returns whether it was present."""

    @abstractmethod
    async def delete_where(self, predicate: EntryPredicate) -> int:
        """Remove every entry matching ``predicate``."""

    @abstractmethod
    async def find(
        self, predicate: EntryPredicate, now: float, limit: int | None = None
    ) -> list[CacheEntry]:
        """Live entries matching ``predicate``; lookups here do not count as hits."""

    @abstractmethod
    async def clear(self) -> int:
        """Remove all entries."""

    @abstractmethod
    async def usage(self) -> LayerUsage:
        """Return entry count and total size."""

    async def purge_expired(self, now: float) -> int:
        return await self.delete_where(lambda entry: entry.is_expired(now))


class MemoryCacheLayer(CacheLayer):
    """In-process LRU tier bounded by entry count and total byte size.

    Operations never suspend, so a read-modify-write on one key cannot
    interleave with another coroutine.
    """

    name = CacheLayerName.MEMORY

    def __init__(self, *, max_entries: int, max_bytes: int) -> None:
        super().__init__()
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._size_bytes = 0

    def _remove(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._size_bytes -= entry.size_bytes
        return entry

    def _over_capacity(self) -> bool:
        return len(self._entries) > self.max_entries or self._size_bytes > self.max_bytes

    def _evict(self) -> int:
        evicted = 0
        while self._entries and self._over_capacity():
            key, entry = self._entries.popitem(last=False)
            self._size_bytes -= entry.size_bytes
            evicted += 1
            logger.debug("cache.memory.evicted", key=key)
        self.evictions += evicted
        return evicted

    def resize(self, *, max_entries: int, max_bytes: int) -> int:
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        return self._evict()

    async def get(self, key: str, now: float) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            self._remove(key)
            return None
        entry.hit_count += 1
        entry.last_accessed = now
        self._entries.move_to_end(key)
        return _detached(entry)

    async def put(self, entry: CacheEntry) -> None:
        self._remove(entry.key)
        self._entries[entry.key] = entry.for_layer(self.name)
        self._size_bytes += entry.size_bytes
        self._evict()

    async def delete(self, key: str) -> bool:
        return self._remove(key) is not None

    async def delete_where(self, predicate: EntryPredicate) -> int:
        doomed = [key for key, entry in self._entries.items() if predicate(entry)]
        for key in doomed:
            self._remove(key)
        return len(doomed)

    async def find(
        self, predicate: EntryPredicate, now: float, limit: int | None = None
    ) -> list[CacheEntry]:
        found = [
            _detached(entry)
            for entry in self._entries.values()
            if not entry.is_expired(now) and predicate(entry)
        ]
        return found if limit is None else found[:limit]

    async def clear(self) -> int:
        removed = len(self._entries)
        self._entries.clear()
        self._size_bytes = 0
        return removed

    async def usage(self) -> LayerUsage:
        return LayerUsage(entries=len(self._entries), size_bytes=self._size_bytes)

    def keys(self) -> list[str]:
        """Keys ordered from least to most recently used."""
        return list(self._entries)


class DatabaseCacheLayer(CacheLayer):
    """Persistent tier backed by a :class:`CacheRecordStore`."""

    name = CacheLayerName.DATABASE

    def __init__(self, store: CacheRecordStore) -> None:
        super().__init__()
        self.store = store

    async def get(self, key: str, now: float) -> CacheEntry | None:
        record = await self.store.fetch(key)
        if record is None:
            return None
        try:
            entry = CacheEntry.model_validate(record)
        except ValidationError:
            logger.warning("cache.database.corrupt_record", key=key)
            await self.store.delete(key)
            return None
        if entry.is_expired(now):
            await self.store.delete(key)
            return None
        entry.hit_count += 1
        entry.last_accessed = now
        await self.store.upsert(key, entry.model_dump(mode="json"))
        return entry

    async def put(self, entry: CacheEntry) -> None:
        await self.store.upsert(entry.key, entry.for_layer(self.name).model_dump(mode="json"))

    async def delete(self, key: str) -> bool:
        return await self.store.delete(key)

    async def delete_where(self, predicate: EntryPredicate) -> int:
        def _matches(record: object) -> bool:
            try:
                return predicate(CacheEntry.model_validate(record))
            except ValidationError:
                return True

        return await self.store.delete_where(_matches)

    async def find(
        self, predicate: EntryPredicate, now: float, limit: int | None = None
    ) -> list[CacheEntry]:
        def _matches(record: object) -> bool:
            try:
                entry = CacheEntry.model_validate(record)
            except ValidationError:
                return False
            return not entry.is_expired(now) and predicate(entry)

        records = await self.store.select(_matches, limit)
        return [CacheEntry.model_validate(record) for record in records]

    async def clear(self) -> int:
        return await self.store.clear()

    async def usage(self) -> LayerUsage:
        aggregate = await self.store.aggregate()
        return LayerUsage(entries=aggregate.count, size_bytes=aggregate.total_size)


class FilesystemCacheLayer(CacheLayer):
    """Tier persisting one JSON document per key under ``<key[:2]>/<key>.json``."""

    name = CacheLayerName.FILESYSTEM

    def __init__(self, store: FileStore) -> None:
        super().__init__()
        self.store = store

    @staticmethod
    def path_for(key: str) -> Path:
        return Path(key[:2]) / f"{key}.json"

    async def _load(self, path: Path) -> CacheEntry | None:
        raw = await self.store.read(path)
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("cache.filesystem.corrupt_file", path=str(path))
            await self.store.delete(path)
            return None

    async def get(self, key: str, now: float) -> CacheEntry | None:
        path = self.path_for(key)
        entry = await self._load(path)
        if entry is None:
            return None
        if entry.is_expired(now):
            await self.store.delete(path)
            return None
        entry.hit_count += 1
        entry.last_accessed = now
        return entry

    async def put(self, entry: CacheEntry) -> None:
        document = entry.for_layer(self.name).model_dump(mode="json")
        await self.store.write(
            self.path_for(entry.key), json.dumps(document, default=str).encode("utf-8")
        )

    async def delete(self, key: str) -> bool:
        return await self.store.delete(self.path_for(key))

    async def delete_where(self, predicate: EntryPredicate) -> int:
        removed = 0
        async for path in self.store.iter_paths():
            entry = await self._load(path)
            if entry is None:
                continue
            if predicate(entry) and await self.store.delete(path):
                removed += 1
        return removed

    async def find(
        self, predicate: EntryPredicate, now: float, limit: int | None = None
    ) -> list[CacheEntry]:
        found: list[CacheEntry] = []
        async for path in self.store.iter_paths():
            if limit is not None and len(found) >= limit:
                break
            entry = await self._load(path)
            if entry is not None and not entry.is_expired(now) and predicate(entry):
                found.append(entry)
        return found

    async def clear(self) -> int:
        return await self.delete_where(lambda _: True)

    async def usage(self) -> LayerUsage:
        entries = 0
        size = 0
        async for path in self.store.iter_paths():
            entry = await self._load(path)
            if entry is None:
                continue
            entries += 1
            size += entry.size_bytes
        return LayerUsage(entries=entries, size_bytes=size)


__all__ = [
    "CacheLayer",
    "DatabaseCacheLayer",
    "FilesystemCacheLayer",
    "LayerUsage",
    "MemoryCacheLayer",
]
