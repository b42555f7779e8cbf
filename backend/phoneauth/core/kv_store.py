import logging
import math
import threading
import time
from collections.abc import Callable
from typing import Protocol

import redis

logger = logging.getLogger(__name__)

# INCR and the first-hit EXPIRE must happen as one step, otherwise two concurrent
# callers can both observe count=1 or a key can be left without a TTL.
_INCR_WITH_EXPIRY_LUA = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

_COMPARE_AND_SET_LUA = """
if redis.call('GET', KEYS[1]) ~= ARGV[1] then
    return 0
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl > 0 then
    redis.call('SET', KEYS[1], ARGV[2], 'PX', ttl)
else
    redis.call('SET', KEYS[1], ARGV[2])
end
return 1
"""

_COMPARE_AND_DELETE_LUA = """
if redis.call('GET', KEYS[1]) ~= ARGV[1] then
    return 0
end
return redis.call('DEL', KEYS[1])
"""


class KeyValueStore(Protocol):
    def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def get(self, key: str) -> str | None: ...

    def delete(self, key: str) -> int: ...

    def compare_and_set(self, key: str, expected: str, value: str) -> bool:
        """Replace the value only if it still equals `expected`; the remaining TTL is kept."""
        ...

    def compare_and_delete(self, key: str, expected: str) -> bool: ...

    def incr_with_expiry(self, key: str, ttl_seconds: int) -> int: ...

    def ttl(self, key: str) -> int:
        """Remaining whole seconds; -2 when the key is missing, -1 when it has no expiry."""
        ...

    def close(self) -> None: ...


class MemoryKeyValueStore:
    """Process-local TTL store. Suitable for tests and single-process development."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._data: dict[str, tuple[float | None, str]] = {}

    def _live(self, key: str) -> tuple[float | None, str] | None:
        hit = self._data.get(key)
        if hit is None:
            return None
        expires_at, _ = hit
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return hit

    def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (self._clock() + max(0, ttl_seconds), value)

    def get(self, key: str) -> str | None:
        with self._lock:
            hit = self._live(key)
            return hit[1] if hit else None

    def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._data.pop(key, None) is not None else 0

    def compare_and_set(self, key: str, expected: str, value: str) -> bool:
        with self._lock:
            hit = self._live(key)
            if hit is None or hit[1] != expected:
                return False
            self._data[key] = (hit[0], value)
            return True

    def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            hit = self._live(key)
            if hit is None or hit[1] != expected:
                return False
            del self._data[key]
            return True

    def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            hit = self._live(key)
            if hit is None:
                self._data[key] = (self._clock() + max(0, ttl_seconds), "1")
                return 1
            expires_at, value = hit
            count = int(value) + 1
            self._data[key] = (expires_at, str(count))
            return count

    def ttl(self, key: str) -> int:
        with self._lock:
            hit = self._live(key)
            if hit is None:
                return -2
            expires_at, _ = hit
            if expires_at is None:
                return -1
            return max(0, math.ceil(expires_at - self._clock()))

    def close(self) -> None:
        with self._lock:
            self._data.clear()


class RedisKeyValueStore:
    def __init__(self, client: redis.Redis):
        self._redis = client
        self._incr_script = client.register_script(_INCR_WITH_EXPIRY_LUA)
        self._cas_script = client.register_script(_COMPARE_AND_SET_LUA)
        self._cad_script = client.register_script(_COMPARE_AND_DELETE_LUA)

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=5)
        return cls(client)

    def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        self._redis.setex(key, ttl_seconds, value)

    def get(self, key: str) -> str | None:
        return self._redis.get(key)

    def delete(self, key: str) -> int:
        return int(self._redis.delete(key))

    def compare_and_set(self, key: str, expected: str, value: str) -> bool:
        return bool(self._cas_script(keys=[key], args=[expected, value]))

    def compare_and_delete(self, key: str, expected: str) -> bool:
        return bool(self._cad_script(keys=[key], args=[expected]))

    def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        return int(self._incr_script(keys=[key], args=[ttl_seconds]))

    def ttl(self, key: str) -> int:
        return int(self._redis.ttl(key))

    def close(self) -> None:
        try:
            self._redis.close()
        except redis.RedisError as exc:
            logger.warning("Redis close failed: %s", exc)
