"""Record store implementations for the database cache layer."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .base import CacheRecordStore, RecordAggregate, RecordPredicate, StorageError


def _size_of(record: Mapping[str, Any]) -> int:
    value = record.get("size_bytes", 0)
    return int(value) if isinstance(value, (int, float)) else 0


class InMemoryCacheRecordStore(CacheRecordStore):
    """Dictionary backed record store used for testing and single-process runs."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def upsert(self, key: str, record: Mapping[str, Any]) -> None:
        self._data[key] = json.dumps(dict(record), default=str)

    async def fetch(self, key: str) -> dict[str, Any] | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def select(
        self, predicate: RecordPredicate, limit: int | None = None
    ) -> list[dict[str, Any]]:
        matches: list[dict[str, Any]] = []
        for raw in self._data.values():
            if limit is not None and len(matches) >= limit:
                break
            record = json.loads(raw)
            if predicate(record):
                matches.append(record)
        return matches

    async def delete_where(self, predicate: RecordPredicate) -> int:
        doomed = [key for key, raw in self._data.items() if predicate(json.loads(raw))]
        for key in doomed:
            del self._data[key]
        return len(doomed)

    async def aggregate(self) -> RecordAggregate:
        records = [json.loads(raw) for raw in self._data.values()]
        return RecordAggregate(
            count=len(records), total_size=sum(_size_of(record) for record in records)
        )

    async def clear(self) -> int:
        removed = len(self._data)
        self._data.clear()
        return removed

    def __len__(self) -> int:
        return len(self._data)


class RedisCacheRecordStore(CacheRecordStore):
    """Redis backed record store keeping one JSON document per key."""

    def __init__(
        self,
        client: Redis | None = None,
        *,
        url: str | None = None,
        key_prefix: str = "fhir_validation:cache",
        scan_count: int = 500,
    ) -> None:
        if client is None:
            client = Redis.from_url(url) if url else Redis()
        self._client = client
        self._prefix = key_prefix.rstrip(":")
        self._scan_count = scan_count

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def _iter_records(self) -> AsyncIterator[tuple[Any, dict[str, Any]]]:
        async for redis_key in self._client.scan_iter(
            match=f"{self._prefix}:*", count=self._scan_count
        ):
            raw = await self._client.get(redis_key)
            if raw is None:
                continue
            yield redis_key, json.loads(raw)

    async def upsert(self, key: str, record: Mapping[str, Any]) -> None:
        try:
            await self._client.set(self._key(key), json.dumps(dict(record), default=str))
        except RedisError as exc:
            raise StorageError(f"Failed to store cache record '{key}'", backend="redis") from exc

    async def fetch(self, key: str) -> dict[str, Any] | None:
        try:
            raw = await self._client.get(self._key(key))
        except RedisError as exc:
            raise StorageError(f"Failed to read cache record '{key}'", backend="redis") from exc
        return json.loads(raw) if raw is not None else None

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(self._key(key)))
        except RedisError as exc:
            raise StorageError(f"Failed to delete cache record '{key}'", backend="redis") from exc

    async def select(
        self, predicate: RecordPredicate, limit: int | None = None
    ) -> list[dict[str, Any]]:
        matches: list[dict[str, Any]] = []
        try:
            async for _, record in self._iter_records():
                if limit is not None and len(matches) >= limit:
                    break
                if predicate(record):
                    matches.append(record)
        except RedisError as exc:
            raise StorageError("Failed to query cache records", backend="redis") from exc
        return matches

    async def delete_where(self, predicate: RecordPredicate) -> int:
        removed = 0
        try:
            async for redis_key, record in self._iter_records():
                if predicate(record):
                    removed += int(await self._client.delete(redis_key))
        except RedisError as exc:
            raise StorageError("Failed to sweep cache records", backend="redis") from exc
        return removed

    async def aggregate(self) -> RecordAggregate:
        count = 0
        total = 0
        try:
            async for _, record in self._iter_records():
                count += 1
                total += _size_of(record)
        except RedisError as exc:
            raise StorageError("Failed to aggregate cache records", backend="redis") from exc
        return RecordAggregate(count=count, total_size=total)

    async def clear(self) -> int:
        return await self.delete_where(lambda _: True)

    async def close(self) -> None:
        await self._client.aclose()


__all__ = ["InMemoryCacheRecordStore", "RedisCacheRecordStore"]
