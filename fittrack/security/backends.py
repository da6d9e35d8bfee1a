"""
Key-value backends for sessions and rate-limit counters.

Both stores only need get/set/delete with an optional TTL plus prefix
listing for sweeps, so a process-local dict and Redis are interchangeable.
"""

import json
import logging
import threading
import time
from typing import Callable, Dict, Iterator, Optional, Tuple

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class KeyValueBackend:
    """Interface implemented by every backend."""

    def get(self, key: str) -> Optional[dict]:
        raise NotImplementedError

    def set(self, key: str, value: dict, ttl: Optional[float] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def keys(self, prefix: str = "") -> Iterator[str]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class MemoryBackend(KeyValueBackend):
    """Thread-safe in-process store. Values are copied on the way in and out."""

    def __init__(self, clock: Clock = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[dict]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            raw, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                del self._data[key]
                return None
        return json.loads(raw)

    def set(self, key: str, value: dict, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        raw = json.dumps(value)
        with self._lock:
            self._data[key] = (raw, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> Iterator[str]:
        with self._lock:
            snapshot = [k for k in self._data if k.startswith(prefix)]
        return iter(snapshot)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                k for k, (_, expires_at) in self._data.items()
                if expires_at is not None and now >= expires_at
            ]
            for key in expired:
                del self._data[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


class RedisBackend(KeyValueBackend):
    """Shared store for multi-process deployments."""

    def __init__(self, client):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisBackend":
        import redis

        client = redis.Redis.from_url(url, decode_responses=True)
        logger.info("Using Redis backend at %s", url.split("@")[-1])
        return cls(client)

    def get(self, key: str) -> Optional[dict]:
        raw = self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    def set(self, key: str, value: dict, ttl: Optional[float] = None) -> None:
        raw = json.dumps(value)
        if ttl:
            self._client.setex(key, max(1, int(ttl)), raw)
        else:
            self._client.set(key, raw)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def keys(self, prefix: str = "") -> Iterator[str]:
        return self._client.scan_iter(match=f"{prefix}*")

    def close(self) -> None:
        self._client.close()


def build_backend(redis_url: Optional[str], clock: Clock = time.time) -> KeyValueBackend:
    if redis_url:
        return RedisBackend.from_url(redis_url)
    return MemoryBackend(clock=clock)
