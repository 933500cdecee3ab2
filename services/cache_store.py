"""
Cache store backends.

A store maps a cache key to the latest CacheEntry. ``get`` returns None for a
key that was never populated, so callers can tell "missing" from "stale".
The backend is a runtime choice (``CACHE_BACKEND``).
"""

from __future__ import annotations

import asyncio
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from app.config import Settings
from app.core.logging import get_logger
from app.models.content import CacheEntry

logger = get_logger().bind(module="cache_store")

_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class CacheStore:
    async def get(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    async def put(self, key: str, entry: CacheEntry) -> None:
        raise NotImplementedError

    async def keys(self) -> List[str]:
        raise NotImplementedError


class MemoryCacheStore(CacheStore):
    """Volatile backend; lost on restart."""

    def __init__(self) -> None:
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def put(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry

    async def keys(self) -> List[str]:
        return sorted(self._entries)


class FileCacheStore(CacheStore):
    """
    Durable backend: one JSON document per key under ``directory``.

    Writes go to a temp file that is then renamed over the target, so a reader
    never sees a half-written snapshot. An unreadable document is a miss.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        if not _SAFE_KEY_RE.match(key):
            raise ValueError(f"invalid cache key: {key!r}")
        return self.directory / f"{key}.json"

    def _read(self, key: str) -> Optional[CacheEntry]:
        path = self.path_for(key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("cache_file_read_error", key=key, path=str(path), error=str(exc))
            return None
        try:
            return CacheEntry.model_validate_json(text)
        except ValidationError as exc:
            logger.warning("cache_file_invalid", key=key, path=str(path), error=str(exc))
            return None

    def _write(self, key: str, entry: CacheEntry) -> None:
        path = self.path_for(key)
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=str(self.directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(entry.model_dump_json())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def get(self, key: str) -> Optional[CacheEntry]:
        return await asyncio.to_thread(self._read, key)

    async def put(self, key: str, entry: CacheEntry) -> None:
        await asyncio.to_thread(self._write, key, entry)

    async def keys(self) -> List[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


def build_cache_store(settings: Settings) -> CacheStore:
    backend = settings.CACHE_BACKEND.lower()
    if backend == "memory":
        store: CacheStore = MemoryCacheStore()
    elif backend == "file":
        store = FileCacheStore(settings.CACHE_DIR)
    else:
        raise ValueError(f"unknown CACHE_BACKEND: {settings.CACHE_BACKEND!r}")
    logger.info("cache_store_selected", backend=backend)
    return store
