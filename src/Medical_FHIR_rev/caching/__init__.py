"""Multi-tier caching for validation results and reference data."""

from .cache_manager import (
    DEFAULT_WARM_PROFILES,
    DEFAULT_WARM_TERMINOLOGY,
    ValidationCacheManager,
    create_cache_manager,
)
from .layers import CacheLayer, DatabaseCacheLayer, FilesystemCacheLayer, MemoryCacheLayer

__all__ = [
    "DEFAULT_WARM_PROFILES",
    "DEFAULT_WARM_TERMINOLOGY",
    "CacheLayer",
    "DatabaseCacheLayer",
    "FilesystemCacheLayer",
    "MemoryCacheLayer",
    "ValidationCacheManager",
    "create_cache_manager",
]
