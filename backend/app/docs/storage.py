"""Object storage used as the byte source for (re)processing."""

import asyncio
from pathlib import Path
from typing import Protocol

from backend.app.docs.errors import StorageError


class StorageClient(Protocol):
    """Storage interface: documents are addressed by a relative path."""

    async def download(self, path: str) -> bytes:
        """Read the object at ``path``."""
        ...

    async def upload(self, path: str, data: bytes) -> None:
        """Write ``data`` to ``path``, replacing any existing object."""
        ...

    async def remove(self, path: str) -> None:
        """Delete the object at ``path`` if it exists."""
        ...


class InMemoryStorage:
    """Dict-backed storage for tests and local runs."""

    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}

    async def download(self, path: str) -> bytes:
        try:
            return self._objects[path]
        except KeyError as e:
            raise StorageError(f"Object not found: {path}") from e

    async def upload(self, path: str, data: bytes) -> None:
        self._objects[path] = data

    async def remove(self, path: str) -> None:
        self._objects.pop(path, None)


class LocalFileStorage:
    """Filesystem storage rooted at a directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if not target.is_relative_to(self._root):
            raise StorageError(f"Path escapes storage root: {path}")
        return target

    async def download(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except OSError as e:
            raise StorageError(f"Failed to download {path}: {e}") from e

    async def upload(self, path: str, data: bytes) -> None:
        target = self._resolve(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"Failed to upload {path}: {e}") from e

    async def remove(self, path: str) -> None:
        target = self._resolve(path)
        try:
            await asyncio.to_thread(target.unlink, True)
        except OSError as e:
            raise StorageError(f"Failed to remove {path}: {e}") from e
