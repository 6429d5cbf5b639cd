import pickle
import threading
import time
from typing import Any, Callable

import structlog
from redis import Redis
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)


class TimedCache:
    """TTL cache for read-model projections.

    Redis is used when configured and reachable; the in-process dict is always
    written too so a Redis outage degrades to per-worker caching.
    """

    def __init__(self, redis_url: str | None = None, key_prefix: str = "fintrack") -> None:
        self._cache: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._key_prefix = key_prefix
        self._redis: Redis | None = None
        if redis_url:
            try:
                client = Redis.from_url(redis_url, decode_responses=False)
                client.ping()
                self._redis = client
            except (RedisError, ValueError) as exc:
                logger.warning("cache_redis_unavailable", error=str(exc))

    def _redis_key(self, key: str) -> str:
        return f"{self._key_prefix}:cache:{key}"

    def get(self, key: str) -> Any | None:
        if self._redis is not None:
            try:
                raw = self._redis.get(self._redis_key(key))
                if raw is not None:
                    return pickle.loads(raw)
            except (RedisError, pickle.PickleError, EOFError) as exc:
                logger.warning("cache_get_failed", key=key, error=str(exc))

        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if time.monotonic() > expires_at:
                self._cache.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any, ttl: int) -> None:
        ttl = max(1, int(ttl))
        if self._redis is not None:
            try:
                self._redis.setex(self._redis_key(key), ttl, pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL))
            except (RedisError, pickle.PickleError, TypeError) as exc:
                logger.warning("cache_set_failed", key=key, error=str(exc))

        with self._lock:
            self._cache[key] = (time.monotonic() + ttl, value)

    def get_or_compute(self, key: str, ttl: int, compute: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        self.set(key, value, ttl)
        return value

    def invalidate_prefix(self, prefix: str) -> None:
        if self._redis is not None:
            try:
                pattern = self._redis_key(f"{prefix}*")
                for chunk in self._redis.scan_iter(match=pattern, count=200):
                    self._redis.delete(chunk)
            except RedisError as exc:
                logger.warning("cache_invalidate_failed", prefix=prefix, error=str(exc))

        with self._lock:
            for key in [k for k in self._cache if k.startswith(prefix)]:
                self._cache.pop(key, None)
