"""
Key-Value Storage

The core persists a handful of JSON documents (credential, controller state,
activity log). Three interchangeable backends: in-memory (tests), a single
JSON file (default) and Redis.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

import redis.asyncio as redis

from tuneshift.config import Settings, settings as default_settings
from tuneshift.utils.logging import get_logger

logger = get_logger(__name__, category="system")


class KeyValueStore:
    """Async key-value interface; values are JSON-serializable."""

    async def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = dict(initial or {})
        self.writes = 0

    async def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    async def set(self, key: str, value: Any) -> None:
        self.writes += 1
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """Whole-document JSON file, rewritten atomically on every change."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._data: Optional[Dict[str, Any]] = None
        self._lock = asyncio.Lock()

    def _load(self) -> Dict[str, Any]:
        if self._data is None:
            if self.path.exists():
                try:
                    self._data = json.loads(self.path.read_text(encoding="utf-8"))
                except (OSError, ValueError) as e:
                    logger.error(f"Failed to read store {self.path}: {e}")
                    self._data = {}
            else:
                self._data = {}
        return self._data

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(self._data, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    async def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            self._load()[key] = value
            self._write()

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._write()


class RedisStore(KeyValueStore):
    """JSON values in Redis under a namespace prefix."""

    def __init__(self, redis_url: str, namespace: str = "tuneshift"):
        self.redis_url = redis_url
        self.namespace = namespace
        self.redis_client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Establish connection to Redis."""
        try:
            self.redis_client = redis.from_url(self.redis_url, decode_responses=True)
            await self.redis_client.ping()
            logger.info("Connected to Redis")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def close(self) -> None:
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("Redis connection closed")

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def _client(self) -> redis.Redis:
        if self.redis_client is None:
            await self.connect()
        return self.redis_client

    async def get(self, key: str, default: Any = None) -> Any:
        client = await self._client()
        data = await client.get(self._key(key))
        if data is None:
            return default
        return json.loads(data)

    async def set(self, key: str, value: Any) -> None:
        client = await self._client()
        await client.set(self._key(key), json.dumps(value))

    async def delete(self, key: str) -> None:
        client = await self._client()
        await client.delete(self._key(key))


def create_store(config: Settings = default_settings) -> KeyValueStore:
    backend = config.store_backend.lower()
    if backend == "redis":
        return RedisStore(config.redis_url, namespace=config.redis_namespace)
    if backend == "memory":
        return MemoryStore()
    return JsonFileStore(config.store_path)
