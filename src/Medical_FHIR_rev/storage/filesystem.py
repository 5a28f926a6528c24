"""Local filesystem store used by the filesystem cache layer."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

from .base import FileStore, StorageError


class LocalFileStore(FileStore):
    """Stores files beneath ``root``; blocking I/O runs in worker threads."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: Path) -> Path:
        target = (self._root / path).resolve()
        if not target.is_relative_to(self._root.resolve()):
            raise StorageError(f"Path '{path}' escapes the store root", backend="filesystem")
        return target

    async def read(self, path: Path) -> bytes | None:
        target = self._resolve(path)

        def _read() -> bytes | None:
            try:
                return target.read_bytes()
            except FileNotFoundError:
                return None

        try:
            return await asyncio.to_thread(_read)
        except OSError as exc:
            raise StorageError(f"Failed to read '{path}'", backend="filesystem") from exc

    async def write(self, path: Path, data: bytes) -> None:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(target.suffix + ".tmp")
            tmp.write_bytes(data)
            tmp.replace(target)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StorageError(f"Failed to write '{path}'", backend="filesystem") from exc

    async def delete(self, path: Path) -> bool:
        target = self._resolve(path)

        def _delete() -> bool:
            try:
                target.unlink()
            except FileNotFoundError:
                return False
            return True

        try:
            return await asyncio.to_thread(_delete)
        except OSError as exc:
            raise StorageError(f"Failed to delete '{path}'", backend="filesystem") from exc

    async def iter_paths(self, suffix: str = ".json") -> AsyncIterator[Path]:
        def _list() -> list[Path]:
            if not self._root.exists():
                return []
            return sorted(
                candidate.relative_to(self._root)
                for candidate in self._root.rglob(f"*{suffix}")
                if candidate.is_file()
            )

        try:
            paths = await asyncio.to_thread(_list)
        except OSError as exc:
            raise StorageError("Failed to enumerate cache files", backend="filesystem") from exc
        for path in paths:
            yield path


__all__ = ["LocalFileStore"]
