"""Minimal async key/value storage for session snapshots.

The session store only ever needs ``get`` / ``set`` / ``remove`` on string
values, so that is the whole interface.  Three backends:

    MemoryKVStore — in-process dict; tests and throwaway runs
    FileKVStore   — one file per key under a directory; the CLI default
    RedisKVStore  — redis.asyncio; shared across processes/machines

Pick one from configuration with :func:`build_kv_store`.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog

logger = structlog.get_logger().bind(component="kv_store")


@runtime_checkable
class KeyValueStore(Protocol):
    """Durable string storage used by :class:`delve.research.store.SessionStore`."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemoryKVStore:
    """Dict-backed store.  Contents vanish with the process."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data


class FileKVStore:
    """One UTF-8 file per key under *directory*.

    Writes go to a temp file first and are renamed into place, so a crash
    mid-write never leaves a truncated snapshot behind.  File I/O runs in a
    worker thread to keep the event loop free.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.directory / f"{safe}.json"

    async def get(self, key: str) -> str | None:
        path = self._path(key)

        def _read() -> str | None:
            if not path.exists():
                return None
            return path.read_text(encoding="utf-8")

        return await asyncio.to_thread(_read)

    async def set(self, key: str, value: str) -> None:
        path = self._path(key)

        def _write() -> None:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            tmp.write_text(value, encoding="utf-8")
            tmp.replace(path)

        await asyncio.to_thread(_write)

    async def remove(self, key: str) -> None:
        path = self._path(key)
        await asyncio.to_thread(path.unlink, missing_ok=True)


class RedisKVStore:
    """Redis-backed store (``redis.asyncio``), connected lazily on first use.

    Args:
        url:    Redis URL.  Falls back to ``settings.redis_url``.
        _redis: Pre-built ``redis.asyncio.Redis`` (inject for tests).
    """

    def __init__(self, url: str | None = None, *, _redis=None) -> None:
        if url is None and _redis is None:
            from delve.config import settings
            url = settings.redis_url
        self.url = url
        self._redis = _redis

    async def _get_redis(self):
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(self.url, decode_responses=True)
            logger.info("redis_connected", url=self.url)
        return self._redis

    async def get(self, key: str) -> str | None:
        r = await self._get_redis()
        return await r.get(key)

    async def set(self, key: str, value: str) -> None:
        r = await self._get_redis()
        await r.set(key, value)

    async def remove(self, key: str) -> None:
        r = await self._get_redis()
        await r.delete(key)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def build_kv_store(backend: str | None = None) -> KeyValueStore:
    """Return the backend named by *backend* (defaults to ``settings.session_backend``).

    Raises:
        ValueError: For an unknown backend name.
    """
    from delve.config import settings

    backend = (backend or settings.session_backend).lower()
    if backend == "memory":
        return MemoryKVStore()
    if backend == "file":
        return FileKVStore(settings.session_dir)
    if backend == "redis":
        return RedisKVStore(settings.redis_url)
    raise ValueError(
        f"Unknown session backend '{backend}'. Valid values: ['file', 'memory', 'redis']."
    )
