import logging
from dataclasses import dataclass

from phoneauth.core.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

PHONE_KEY_PREFIX = "otp:ratelimit:"
IP_KEY_PREFIX = "otp:ratelimit:ip:"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    current_count: int
    limit: int
    retry_after_seconds: int | None = None


class RateLimiter:
    """Fixed-window request counter.

    The first hit in a window creates the counter with a TTL of `window_seconds`; later
    hits only increment it. Once the count passes `limit` the caller is told how long
    until the window closes.
    """

    def __init__(self, store: KeyValueStore, *, key_prefix: str, limit: int, window_seconds: int):
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self._store = store
        self.key_prefix = key_prefix
        self.limit = limit
        self.window_seconds = window_seconds

    def check(self, key: str) -> RateLimitDecision:
        counter_key = f"{self.key_prefix}{key}"
        count = self._store.incr_with_expiry(counter_key, self.window_seconds)
        if count <= self.limit:
            return RateLimitDecision(allowed=True, current_count=count, limit=self.limit)

        ttl = self._store.ttl(counter_key)
        retry_after = ttl if ttl > 0 else self.window_seconds
        logger.debug("rate_limited prefix=%s count=%s retry_after=%s", self.key_prefix, count, retry_after)
        return RateLimitDecision(
            allowed=False,
            current_count=count,
            limit=self.limit,
            retry_after_seconds=retry_after,
        )


def phone_rate_limiter(store: KeyValueStore, *, limit: int = 3, window_seconds: int = 600) -> RateLimiter:
    return RateLimiter(store, key_prefix=PHONE_KEY_PREFIX, limit=limit, window_seconds=window_seconds)


def ip_rate_limiter(store: KeyValueStore, *, limit: int = 10, window_seconds: int = 3600) -> RateLimiter:
    return RateLimiter(store, key_prefix=IP_KEY_PREFIX, limit=limit, window_seconds=window_seconds)
