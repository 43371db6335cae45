import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Protocol

from redis import Redis
from redis.exceptions import RedisError

from .config import get_settings

logger = logging.getLogger(__name__)


class KeyValueBackend(Protocol):
    name: str

    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str, ttl: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def list_push(self, key: str, value: str, ttl: int | None = None) -> None:
        ...

    def list_range(self, key: str) -> list[str]:
        ...


class RedisKeyValueBackend:
    name = "redis"

    def __init__(self, client: Redis):
        self.client = client

    def get(self, key: str) -> str | None:
        value = self.client.get(key)
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else value

    def set(self, key: str, value: str, ttl: int) -> None:
        self.client.setex(key, ttl, value)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def list_push(self, key: str, value: str, ttl: int | None = None) -> None:
        pipeline = self.client.pipeline()
        pipeline.lpush(key, value)
        if ttl:
            pipeline.expire(key, ttl)
        pipeline.execute()

    def list_range(self, key: str) -> list[str]:
        return [
            item.decode("utf-8") if isinstance(item, bytes) else item
            for item in self.client.lrange(key, 0, -1)
        ]


@dataclass
class _InMemoryEntry:
    value: str | list[str]
    expires_at: float | None = None


@dataclass
class InMemoryKeyValueBackend:
    name = "memory"

    _data: dict[str, _InMemoryEntry] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def _live_entry(self, key: str) -> _InMemoryEntry | None:
        entry = self._data.get(key)
        if not entry:
            return None
        if entry.expires_at is not None and entry.expires_at < time.time():
            self._data.pop(key, None)
            return None
        return entry

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or not isinstance(entry.value, str):
                return None
            return entry.value

    def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._data[key] = _InMemoryEntry(value=value, expires_at=time.time() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def list_push(self, key: str, value: str, ttl: int | None = None) -> None:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or not isinstance(entry.value, list):
                entry = _InMemoryEntry(value=[])
                self._data[key] = entry
            entry.value.insert(0, value)
            if ttl:
                entry.expires_at = time.time() + ttl

    def list_range(self, key: str) -> list[str]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None or not isinstance(entry.value, list):
                return []
            return list(entry.value)


class StoreManager:
    def __init__(self) -> None:
        self.backend: KeyValueBackend | None = None

    def init_backend(self) -> None:
        if self.backend is not None:
            return

        settings = get_settings()
        if settings.REDIS_URL:
            try:
                client = Redis.from_url(settings.REDIS_URL)
                client.ping()
                self.backend = RedisKeyValueBackend(client)
                logger.info("Using Redis store backend.")
                return
            except (RedisError, OSError) as exc:
                logger.warning("Redis unavailable (%s). Falling back to in-memory store.", exc)
        self.backend = InMemoryKeyValueBackend()
        logger.info("Using in-memory store backend; failed batches are not shared across processes.")

    def get_backend(self) -> KeyValueBackend:
        if self.backend is None:
            self.init_backend()
        assert self.backend is not None
        return self.backend

    def redis_client(self) -> Redis | None:
        backend = self.get_backend()
        return backend.client if isinstance(backend, RedisKeyValueBackend) else None

    def reset(self, backend: KeyValueBackend | None = None) -> None:
        self.backend = backend


store_manager = StoreManager()
