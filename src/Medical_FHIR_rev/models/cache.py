"""Cache entry and statistics models."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field


class CacheCategory(str, Enum):
    """Kinds of cached data; each category has its own TTL."""

    VALIDATION = "validation"
    PROFILE = "profile"
    TERMINOLOGY = "terminology"
    IG_PACKAGE = "igPackage"


class CacheLayerName(str, Enum):
    """Cache tiers, fastest first."""

    MEMORY = "memory"
    DATABASE = "database"
    FILESYSTEM = "filesystem"


class CacheMetadata(BaseModel):
    """Tags attached to an entry for targeted invalidation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    resource_hash: str | None = None
    settings_hash: str | None = None
    fhir_version: str | None = None
    resource_type: str | None = None
    profile_url: str | None = None


class CacheEntry(BaseModel):
    """A cached payload as stored by every layer.

    Timestamps are epoch seconds so the layers can share one clock.
    """

    model_config = ConfigDict(extra="forbid")

    key: str
    category: CacheCategory
    value: Any
    created_at: float
    expires_at: float
    size_bytes: int = Field(default=0, ge=0)
    layer: CacheLayerName = CacheLayerName.MEMORY
    hit_count: int = Field(default=0, ge=0)
    last_accessed: float
    metadata: CacheMetadata = Field(default_factory=CacheMetadata)

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def for_layer(self, layer: CacheLayerName) -> CacheEntry:
        return self.model_copy(update={"layer": layer})


class LayerStats(BaseModel):
    enabled: bool = False
    entries: int = 0
    size_bytes: int = 0
    hits: int = 0
    misses: int = 0
    evictions: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class OverallStats(BaseModel):
    total_hits: int = 0
    total_misses: int = 0
    total_size_bytes: int = 0
    total_entries: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def hit_rate(self) -> float:
        total = self.total_hits + self.total_misses
        return self.total_hits / total if total else 0.0


class CacheStats(BaseModel):
    """Point-in-time snapshot of every layer plus overall sums."""

    layers: dict[CacheLayerName, LayerStats]
    overall: OverallStats

    @classmethod
    def from_layers(cls, layers: dict[CacheLayerName, LayerStats]) -> CacheStats:
        overall = OverallStats(
            total_hits=sum(item.hits for item in layers.values()),
            total_misses=sum(item.misses for item in layers.values()),
            total_size_bytes=sum(item.size_bytes for item in layers.values()),
            total_entries=sum(item.entries for item in layers.values()),
        )
        return cls(layers=layers, overall=overall)


class WarmupReport(BaseModel):
    """Outcome of a cache warm-up run."""

    profiles_warmed: int = 0
    terminology_warmed: int = 0
    errors: list[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_warmed(self) -> int:
        return self.profiles_warmed + self.terminology_warmed


__all__ = [
    "CacheCategory",
    "CacheEntry",
    "CacheLayerName",
    "CacheMetadata",
    "CacheStats",
    "LayerStats",
    "OverallStats",
    "WarmupReport",
]
