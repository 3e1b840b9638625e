"""Image storage sinks."""

import asyncio
from pathlib import Path
from typing import Protocol

import structlog

from atelier.services.exceptions import StorageError

logger = structlog.get_logger()


class StorageSink(Protocol):
    """Where generated images are persisted."""

    async def upload(self, data: bytes, key: str) -> str:
        """Store bytes under `key` and return their public URL."""
        ...

    async def delete(self, key: str) -> None:
        """Remove the object stored under `key` (missing objects are ignored)."""
        ...


class LocalFileStorage:
    """Stores images on the local filesystem, served under `public_base_url`."""

    def __init__(self, root: str | Path, public_base_url: str):
        self.root = Path(root).resolve()
        self.public_base_url = public_base_url.rstrip("/")

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    async def upload(self, data: bytes, key: str) -> str:
        path = self._resolve(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e
        logger.debug("storage.uploaded", key=key, size=len(data))
        return self.url_for(key)

    async def delete(self, key: str) -> None:
        path = self._resolve(key)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}") from e
        logger.debug("storage.deleted", key=key)

    def exists(self, key: str) -> bool:
        return self._resolve(key).is_file()

    def _resolve(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root) or path == self.root:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)
