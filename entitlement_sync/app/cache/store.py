"""
Key/value storage backends for persisted client state.

Values are JSON text. Every backend keeps one container per namespace (a
dict, a file, a Redis hash), so a read in one namespace cannot reach another.
"""

import json
import os
from pathlib import Path
from typing import Dict, Optional, Protocol
from urllib.parse import quote

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger


class KeyValueStore(Protocol):
    """Namespaced string store."""

    async def get(self, namespace: str, key: str) -> Optional[str]:
        ...

    async def set(self, namespace: str, key: str, value: str) -> bool:
        ...

    async def delete(self, namespace: str, key: str) -> bool:
        ...

    async def items(self, namespace: str) -> Dict[str, str]:
        ...

    async def clear(self, namespace: str) -> int:
        ...


class InMemoryStore:
    """Process-local store."""

    def __init__(self):
        self._data: Dict[str, Dict[str, str]] = {}

    async def get(self, namespace: str, key: str) -> Optional[str]:
        return self._data.get(namespace, {}).get(key)

    async def set(self, namespace: str, key: str, value: str) -> bool:
        self._data.setdefault(namespace, {})[key] = value
        return True

    async def delete(self, namespace: str, key: str) -> bool:
        return self._data.get(namespace, {}).pop(key, None) is not None

    async def items(self, namespace: str) -> Dict[str, str]:
        return dict(self._data.get(namespace, {}))

    async def clear(self, namespace: str) -> int:
        return len(self._data.pop(namespace, {}))

    def namespaces(self):
        return [name for name, entries in self._data.items() if entries]


class JsonFileStore:
    """One JSON document per namespace inside ``directory``.

    An unreadable file is logged and treated as empty; the next write
    replaces it.
    """

    def __init__(self, directory):
        self.directory = Path(directory)
        self.logger = get_logger("sync.cache.file_store")

    def _path(self, namespace: str) -> Path:
        return self.directory / f"{quote(namespace, safe='')}.json"

    def _load(self, namespace: str) -> Dict[str, str]:
        path = self._path(namespace)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("root is not an object")
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            self.logger.warning("Failed to load namespace file", path=str(path), error=str(e))
            return {}
        return {str(key): value for key, value in payload.items() if isinstance(value, str)}

    def _store(self, namespace: str, entries: Dict[str, str]) -> None:
        path = self._path(namespace)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(entries, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp_path, path)

    async def get(self, namespace: str, key: str) -> Optional[str]:
        return self._load(namespace).get(key)

    async def set(self, namespace: str, key: str, value: str) -> bool:
        entries = self._load(namespace)
        entries[key] = value
        try:
            self._store(namespace, entries)
        except OSError as e:
            self.logger.error("Failed to write namespace file", namespace=namespace, error=str(e))
            return False
        return True

    async def delete(self, namespace: str, key: str) -> bool:
        entries = self._load(namespace)
        if entries.pop(key, None) is None:
            return False
        try:
            self._store(namespace, entries)
        except OSError as e:
            self.logger.error("Failed to write namespace file", namespace=namespace, error=str(e))
            return False
        return True

    async def items(self, namespace: str) -> Dict[str, str]:
        return self._load(namespace)

    async def clear(self, namespace: str) -> int:
        count = len(self._load(namespace))
        try:
            self._path(namespace).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.error("Failed to remove namespace file", namespace=namespace, error=str(e))
            return 0
        return count


class RedisStore:
    """One Redis hash per namespace.

    Connection failures are logged: reads behave as misses and writes report
    failure, so resolution can carry on without persistence.
    """

    KEY_PREFIX = "entitlement_sync:"

    def __init__(self, redis_url: str = "redis://localhost:6379/0", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.logger = get_logger("sync.cache.redis_store")
        self.redis = client or redis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )

    def _key(self, namespace: str) -> str:
        return f"{self.KEY_PREFIX}{namespace}"

    async def get(self, namespace: str, key: str) -> Optional[str]:
        try:
            return await self.redis.hget(self._key(namespace), key)
        except (RedisError, OSError) as e:
            self.logger.error("Error reading from Redis", namespace=namespace, error=str(e))
            return None

    async def set(self, namespace: str, key: str, value: str) -> bool:
        try:
            await self.redis.hset(self._key(namespace), key, value)
            return True
        except (RedisError, OSError) as e:
            self.logger.error("Error writing to Redis", namespace=namespace, error=str(e))
            return False

    async def delete(self, namespace: str, key: str) -> bool:
        try:
            return bool(await self.redis.hdel(self._key(namespace), key))
        except (RedisError, OSError) as e:
            self.logger.error("Error deleting from Redis", namespace=namespace, error=str(e))
            return False

    async def items(self, namespace: str) -> Dict[str, str]:
        try:
            return dict(await self.redis.hgetall(self._key(namespace)))
        except (RedisError, OSError) as e:
            self.logger.error("Error listing Redis hash", namespace=namespace, error=str(e))
            return {}

    async def clear(self, namespace: str) -> int:
        try:
            count = await self.redis.hlen(self._key(namespace))
            await self.redis.delete(self._key(namespace))
            return int(count)
        except (RedisError, OSError) as e:
            self.logger.error("Error clearing Redis hash", namespace=namespace, error=str(e))
            return 0

    async def close(self) -> None:
        await self.redis.aclose()
