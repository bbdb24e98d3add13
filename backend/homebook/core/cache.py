import pickle
import threading
import time
from typing import Any, Callable

from redis import Redis
from redis.exceptions import RedisError

from homebook.core.logging import get_logger

log = get_logger(__name__)


def connect_redis(redis_url: str | None) -> Redis | None:
    if not redis_url:
        return None
    try:
        client = Redis.from_url(redis_url, decode_responses=False)
        client.ping()
    except RedisError as exc:
        log.warning("redis_unavailable", error=str(exc))
        return None
    return client


class TimedCache:
    """TTL cache kept in Redis when reachable, mirrored in process memory."""

    def __init__(self, redis_url: str | None = None, key_prefix: str = "homebook") -> None:
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._key_prefix = key_prefix
        self._redis = connect_redis(redis_url)

    def _redis_key(self, key: str) -> str:
        return f"{self._key_prefix}:cache:{key}"

    def get(self, key: str) -> Any | None:
        if self._redis is not None:
            try:
                raw = self._redis.get(self._redis_key(key))
                if raw is not None:
                    return pickle.loads(raw)
            except (RedisError, pickle.PickleError, EOFError) as exc:
                log.warning("cache_read_failed", key=key, error=str(exc))

        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if time.time() > expires_at:
                self._entries.pop(key, None)
                return None
            return value

    def set(self, key: str, value: Any, ttl: int) -> None:
        ttl = max(1, ttl)
        if self._redis is not None:
            try:
                self._redis.setex(self._redis_key(key), ttl, pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL))
            except (RedisError, pickle.PickleError, TypeError) as exc:
                log.warning("cache_write_failed", key=key, error=str(exc))

        with self._lock:
            self._entries[key] = (time.time() + ttl, value)

    def get_or_load(self, key: str, ttl: int, loader: Callable[[], Any]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        self.set(key, value, ttl)
        return value

    def invalidate_prefix(self, prefix: str) -> None:
        if self._redis is not None:
            try:
                pattern = self._redis_key(f"{prefix}*")
                for key in self._redis.scan_iter(match=pattern, count=200):
                    self._redis.delete(key)
            except RedisError as exc:
                log.warning("cache_invalidate_failed", prefix=prefix, error=str(exc))

        with self._lock:
            for key in [k for k in self._entries if k.startswith(prefix)]:
                self._entries.pop(key, None)
