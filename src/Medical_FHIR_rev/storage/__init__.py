"""Storage backends for the persistent cache tiers."""

from .base import CacheRecordStore, FileStore, RecordAggregate, StorageError
from .cache import InMemoryCacheRecordStore, RedisCacheRecordStore
from .filesystem import LocalFileStore

__all__ = [
    "CacheRecordStore",
    "FileStore",
    "InMemoryCacheRecordStore",
    "LocalFileStore",
    "RecordAggregate",
    "RedisCacheRecordStore",
    "StorageError",
]
