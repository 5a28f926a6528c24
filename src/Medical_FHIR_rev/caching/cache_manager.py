"""Three-tier cache for validation results, profiles and terminology.

Lookups walk memory → database → filesystem and promote hits into the
faster tiers. Writes go to every enabled tier independently; a failing tier
is logged and skipped so caching never breaks a validation.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel

from ..config.settings import AppSettings, CacheSettings, _deep_update
from ..models.cache import (
    CacheCategory,
    CacheEntry,
    CacheLayerName,
    CacheMetadata,
    CacheStats,
    LayerStats,
    WarmupReport,
)
from ..observability.metrics import (
    record_cache_eviction,
    record_cache_layer_error,
    record_cache_lookup,
)
from ..storage.base import CacheRecordStore, FileStore
from ..storage.cache import RedisCacheRecordStore
from ..storage.filesystem import LocalFileStore
from ..utils.identifiers import canonical_json, hash_content, short_hash
from ..utils.time import utc_now
from .layers import (
    CacheLayer,
    DatabaseCacheLayer,
    EntryPredicate,
    FilesystemCacheLayer,
    LayerUsage,
    MemoryCacheLayer,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

WarmupLoader = Callable[[CacheCategory, str], Awaitable[Any]]

DEFAULT_WARM_PROFILES: tuple[str, ...] = (
    "http://hl7.org/fhir/StructureDefinition/Patient",
    "http://hl7.org/fhir/StructureDefinition/Observation",
    "http://hl7.org/fhir/StructureDefinition/Condition",
    "http://hl7.org/fhir/StructureDefinition/Procedure",
    "http://hl7.org/fhir/StructureDefinition/DiagnosticReport",
    "http://hl7.org/fhir/StructureDefinition/Medication",
    "http://hl7.org/fhir/StructureDefinition/MedicationRequest",
    "http://hl7.org/fhir/StructureDefinition/Encounter",
    "http://hl7.org/fhir/StructureDefinition/Organization",
    "http://hl7.org/fhir/StructureDefinition/Practitioner",
    "http://hl7.org/fhir/StructureDefinition/Bundle",
)

DEFAULT_WARM_TERMINOLOGY: tuple[str, ...] = (
    "http://loinc.org",
    "http://snomed.info/sct",
    "http://hl7.org/fhir/sid/icd-10",
    "http://www.nlm.nih.gov/research/umls/rxnorm",
    "http://hl7.org/fhir/administrative-gender",
    "http://hl7.org/fhir/observation-status",
    "http://terminology.hl7.org/CodeSystem/condition-clinical",
)

_TTL_FIELD: dict[CacheCategory, str] = {
    CacheCategory.VALIDATION: "validation",
    CacheCategory.PROFILE: "profile",
    CacheCategory.TERMINOLOGY: "terminology",
    CacheCategory.IG_PACKAGE: "ig_package",
}


@dataclass(slots=True)
class _LayerCounters:
    hits: int = 0
    misses: int = 0


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    return value


def estimate_size(value: Any) -> int:
    """Approximate stored size as the UTF-8 length of the JSON encoding."""
    return len(json.dumps(_jsonable(value), default=str).encode("utf-8"))


def _snapshot(value: Any) -> tuple[Any, int]:
    """JSON copy of ``value`` detached from the caller, with its encoded size."""
    encoded = json.dumps(_jsonable(value), default=str)
    return json.loads(encoded), len(encoded.encode("utf-8"))


class ValidationCacheManager:
    """Coordinates the memory, database and filesystem cache tiers.

    Args:
        config: Cache configuration (layer toggles, TTLs, limits).
        record_store: Backend for the database tier. When omitted and the
            tier is enabled a Redis store is created from ``config.redis_url``.
        file_store: Backend for the filesystem tier. Defaults to a
            :class:`LocalFileStore` rooted at ``config.filesystem_path``.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        config: CacheSettings | None = None,
        *,
        record_store: CacheRecordStore | None = None,
        file_store: FileStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or CacheSettings()
        self._clock = clock
        self._record_store = record_store
        self._owns_record_store = False
        self._file_store = file_store
        self._memory = MemoryCacheLayer(
            max_entries=self._config.limits.memory_max_entries,
            max_bytes=self._config.limits.memory_max_bytes,
        )
        self._database: DatabaseCacheLayer | None = None
        self._filesystem: FilesystemCacheLayer | None = None
        self._counters = {name: _LayerCounters() for name in CacheLayerName}
        self._cleanup_task: asyncio.Task[None] | None = None
        self._build_layers()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @property
    def config(self) -> CacheSettings:
        return self._config

    def _build_layers(self) -> None:
        layers = self._config.layers
        if layers.database and self._database is None:
            if self._record_store is None:
                self._record_store = RedisCacheRecordStore(
                    url=self._config.redis_url, key_prefix=self._config.redis_key_prefix
                )
                self._owns_record_store = True
            self._database = DatabaseCacheLayer(self._record_store)
        if layers.filesystem and self._filesystem is None:
            if self._file_store is None:
                self._file_store = LocalFileStore(self._config.filesystem_path)
            self._filesystem = FilesystemCacheLayer(self._file_store)

    def update_config(self, **changes: Any) -> CacheSettings:
        """Apply a (possibly nested) partial update and return the new config."""
        merged = _deep_update(self._config.model_dump(), changes)
        self._config = CacheSettings.model_validate(merged)
        self._build_layers()
        evicted = self._memory.resize(
            max_entries=self._config.limits.memory_max_entries,
            max_bytes=self._config.limits.memory_max_bytes,
        )
        record_cache_eviction(CacheLayerName.MEMORY.value, evicted)
        logger.info(
            "cache.config.updated",
            layers=self._config.layers.model_dump(),
            evicted=evicted,
        )
        return self._config

    def get_ttl(self, category: CacheCategory) -> float:
        return float(getattr(self._config.ttl, _TTL_FIELD[CacheCategory(category)]))

    def enabled_layers(self) -> list[CacheLayer]:
        """Enabled tiers, fastest first."""
        layers: list[CacheLayer] = []
        if self._config.layers.memory:
            layers.append(self._memory)
        if self._config.layers.database and self._database is not None:
            layers.append(self._database)
        if self._config.layers.filesystem and self._filesystem is not None:
            layers.append(self._filesystem)
        return layers

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------
    @staticmethod
    def generate_key(
        resource_content: Any,
        settings: Any = None,
        fhir_version: str = "R4",
        category: CacheCategory = CacheCategory.VALIDATION,
    ) -> str:
        """Derive a content-addressed key (SHA-256 hex) from the inputs."""
        parts = [
            canonical_json(_jsonable(resource_content)),
            canonical_json(_jsonable(settings) if settings is not None else {}),
            fhir_version or "R4",
            CacheCategory(category).value,
        ]
        return hash_content("::".join(parts))

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------
    async def _guarded(
        self, layer: CacheLayer, operation: str, call: Awaitable[T], default: T
    ) -> T:
        try:
            return await call
        except Exception as exc:
            logger.warning(
                "cache.layer.error",
                layer=layer.name.value,
                operation=operation,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            record_cache_layer_error(layer.name.value, operation)
            return default

    async def _put(self, layer: CacheLayer, entry: CacheEntry) -> None:
        before = layer.evictions
        await self._guarded(layer, "set", layer.put(entry), None)
        record_cache_eviction(layer.name.value, layer.evictions - before)

    def _build_entry(
        self,
        key: str,
        value: Any,
        category: CacheCategory,
        metadata: CacheMetadata | None,
        now: float,
    ) -> CacheEntry:
        stored, size = _snapshot(value)
        return CacheEntry(
            key=key,
            category=category,
            value=stored,
            created_at=now,
            expires_at=now + self.get_ttl(category),
            size_bytes=size,
            last_accessed=now,
            metadata=metadata or CacheMetadata(),
        )

    async def get(self, key: str, category: CacheCategory = CacheCategory.VALIDATION) -> Any:
        """Return the cached value for ``key`` or ``None`` on a miss."""
        category = CacheCategory(category)
        now = self._clock()
        layers = self.enabled_layers()
        for index, layer in enumerate(layers):
            entry = await self._guarded(layer, "get", layer.get(key, now), None)
            counters = self._counters[layer.name]
            if entry is None:
                counters.misses += 1
                record_cache_lookup(layer.name.value, hit=False)
                continue
            counters.hits += 1
            record_cache_lookup(layer.name.value, hit=True)
            if index:
                promoted = self._build_entry(key, entry.value, category, entry.metadata, now)
                for faster in layers[:index]:
                    await self._put(faster, promoted)
                logger.debug(
                    "cache.promoted",
                    key=short_hash(key),
                    source=layer.name.value,
                    targets=[faster.name.value for faster in layers[:index]],
                )
            return entry.value
        return None

    async def has(self, key: str) -> bool:
        """Check presence without touching statistics or promoting."""
        now = self._clock()
        for layer in self.enabled_layers():
            if await self._guarded(layer, "has", layer.get(key, now), None) is not None:
                return True
        return False

    async def set(
        self,
        key: str,
        value: Any,
        category: CacheCategory = CacheCategory.VALIDATION,
        metadata: CacheMetadata | None = None,
    ) -> None:
        """Write ``value`` to every enabled tier; tier failures are isolated."""
        category = CacheCategory(category)
        entry = self._build_entry(key, value, category, metadata, self._clock())
        for layer in self.enabled_layers():
            await self._put(layer, entry)

    async def delete(self, key: str) -> bool:
        removed = False
        for layer in self.enabled_layers():
            removed = await self._guarded(layer, "delete", layer.delete(key), False) or removed
        return removed

    async def clear(self) -> int:
        """Remove every entry from every enabled tier and reset statistics."""
        removed = 0
        for layer in self.enabled_layers():
            removed += await self._guarded(layer, "clear", layer.clear(), 0)
        for layer in (self._memory, self._database, self._filesystem):
            if layer is not None:
                layer.evictions = 0
        self._counters = {name: _LayerCounters() for name in CacheLayerName}
        logger.info("cache.cleared", removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def _find(
        self, operation: str, predicate: EntryPredicate, limit: int | None = None
    ) -> list[CacheEntry]:
        """Live matches across enabled tiers; the fastest tier wins per key."""
        now = self._clock()
        found: dict[str, CacheEntry] = {}
        for layer in self.enabled_layers():
            if limit is not None and len(found) >= limit:
                break
            matches = await self._guarded(layer, operation, layer.find(predicate, now, limit), [])
            for entry in matches:
                found.setdefault(entry.key, entry)
        entries = list(found.values())
        return entries if limit is None else entries[:limit]

    async def get_by_resource_hash(
        self, resource_hash: str, settings_hash: str | None = None
    ) -> Any:
        """Value cached for the resource content hashed as ``resource_hash``.

        With ``settings_hash`` only entries produced under those settings
        match. Returns ``None`` when nothing live matches.
        """

        def _matches(entry: CacheEntry) -> bool:
            metadata = entry.metadata
            if metadata.resource_hash != resource_hash:
                return False
            return settings_hash is None or metadata.settings_hash == settings_hash

        entries = await self._find("get_by_resource_hash", _matches, limit=1)
        return entries[0].value if entries else None

    async def get_entries_by_category(
        self, category: CacheCategory, limit: int = 100
    ) -> list[CacheEntry]:
        category = CacheCategory(category)
        return await self._find(
            "get_entries_by_category", lambda entry: entry.category is category, limit
        )

    async def get_keys(self, layer: CacheLayerName) -> list[str]:
        """Live keys held by one tier; an empty list when the tier is disabled."""
        layer = CacheLayerName(layer)
        for candidate in self.enabled_layers():
            if candidate.name is layer:
                now = self._clock()
                entries = await self._guarded(
                    candidate, "get_keys", candidate.find(lambda _: True, now), []
                )
                return [entry.key for entry in entries]
        return []

    # ------------------------------------------------------------------
    # Invalidation and expiry
    # ------------------------------------------------------------------
    async def _sweep(self, operation: str, predicate: EntryPredicate) -> int:
        removed = 0
        for layer in self.enabled_layers():
            removed += await self._guarded(layer, operation, layer.delete_where(predicate), 0)
        return removed

    async def invalidate_category(self, category: CacheCategory) -> int:
        category = CacheCategory(category)
        removed = await self._sweep(
            "invalidate_category", lambda entry: entry.category is category
        )
        logger.info("cache.invalidated.category", category=category.value, removed=removed)
        return removed

    async def invalidate_by_settings_hash(self, settings_hash: str) -> int:
        """Drop every entry derived from the settings identified by ``settings_hash``."""
        removed = await self._sweep(
            "invalidate_settings",
            lambda entry: entry.metadata.settings_hash == settings_hash,
        )
        logger.info(
            "cache.invalidated.settings",
            settings_hash=short_hash(settings_hash),
            removed=removed,
        )
        return removed

    async def cleanup_expired(self) -> int:
        now = self._clock()
        removed = 0
        for layer in self.enabled_layers():
            removed += await self._guarded(layer, "cleanup", layer.purge_expired(now), 0)
        if removed:
            logger.info("cache.cleanup.completed", removed=removed)
        return removed

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.cleanup_expired()

    def start_cleanup_task(self, interval_seconds: float | None = None) -> asyncio.Task[None] | None:
        """Start the periodic expiry sweep when an interval is configured."""
        interval = interval_seconds or self._config.cleanup_interval_seconds
        if interval is None:
            return None
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(interval))
            logger.info("cache.cleanup.scheduled", interval_seconds=interval)
        return self._cleanup_task

    async def close(self) -> None:
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        if self._owns_record_store and isinstance(self._record_store, RedisCacheRecordStore):
            await self._record_store.close()

    # ------------------------------------------------------------------
    # Warm-up
    # ------------------------------------------------------------------
    @classmethod
    def warm_key(cls, category: CacheCategory, url: str) -> str:
        """Key under which warm-up stores the entry for ``url``."""
        return cls.generate_key({"url": url}, None, "R4", category)

    async def _warm_one(
        self, category: CacheCategory, url: str, loader: WarmupLoader | None
    ) -> None:
        if loader is not None:
            payload = await loader(category, url)
        else:
            payload = {
                "url": url,
                "status": "active",
                "warmed": True,
                "warmedAt": utc_now().isoformat(),
            }
        metadata = CacheMetadata(profile_url=url) if category is CacheCategory.PROFILE else None
        await self.set(self.warm_key(category, url), payload, category, metadata)

    async def warm_cache(
        self,
        profiles: Iterable[str] | None = None,
        terminology_systems: Iterable[str] | None = None,
        categories: Iterable[CacheCategory] | None = None,
        loader: WarmupLoader | None = None,
    ) -> WarmupReport:
        """Populate common profiles and terminology systems ahead of traffic."""
        wanted = (
            {CacheCategory(item) for item in categories}
            if categories is not None
            else {CacheCategory.PROFILE, CacheCategory.TERMINOLOGY}
        )
        report = WarmupReport()
        if CacheCategory.PROFILE in wanted:
            for url in profiles if profiles is not None else DEFAULT_WARM_PROFILES:
                try:
                    await self._warm_one(CacheCategory.PROFILE, url, loader)
                except Exception as exc:
                    report.errors.append(f"profile {url}: {exc}")
                    continue
                report.profiles_warmed += 1
        if CacheCategory.TERMINOLOGY in wanted:
            systems = (
                terminology_systems if terminology_systems is not None else DEFAULT_WARM_TERMINOLOGY
            )
            for url in systems:
                try:
                    await self._warm_one(CacheCategory.TERMINOLOGY, url, loader)
                except Exception as exc:
                    report.errors.append(f"terminology {url}: {exc}")
                    continue
                report.terminology_warmed += 1
        logger.info(
            "cache.warmup.completed",
            profiles=report.profiles_warmed,
            terminology=report.terminology_warmed,
            errors=len(report.errors),
        )
        return report

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------
    async def get_stats(self) -> CacheStats:
        """Snapshot of per-tier usage and hit/miss counters."""
        enabled = {layer.name: layer for layer in self.enabled_layers()}
        layers: dict[CacheLayerName, LayerStats] = {}
        for name in CacheLayerName:
            counters = self._counters[name]
            layer = enabled.get(name)
            usage = LayerUsage()
            if layer is not None:
                usage = await self._guarded(layer, "stats", layer.usage(), LayerUsage())
            layers[name] = LayerStats(
                enabled=layer is not None,
                entries=usage.entries,
                size_bytes=usage.size_bytes,
                hits=counters.hits,
                misses=counters.misses,
                evictions=layer.evictions if layer is not None else 0,
            )
        return CacheStats.from_layers(layers)


def create_cache_manager(
    settings: AppSettings,
    *,
    record_store: CacheRecordStore | None = None,
    file_store: FileStore | None = None,
) -> ValidationCacheManager:
    """Build a cache manager from application settings."""
    return ValidationCacheManager(
        settings.cache, record_store=record_store, file_store=file_store
    )


__all__ = [
    "DEFAULT_WARM_PROFILES",
    "DEFAULT_WARM_TERMINOLOGY",
    "ValidationCacheManager",
    "WarmupLoader",
    "create_cache_manager",
    "estimate_size",
]
