import secrets
import threading
import time

from redis.exceptions import RedisError

from homebook.core.cache import connect_redis
from homebook.core.logging import get_logger

log = get_logger(__name__)


class RateLimiter:
    """Sliding-window limiter; Redis sorted sets when available, else a local list."""

    _REDIS_WINDOW_SCRIPT = """
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]
local ttl = tonumber(ARGV[5])

redis.call("ZREMRANGEBYSCORE", key, 0, now_ms - window_ms)
if redis.call("ZCARD", key) >= limit then
  redis.call("EXPIRE", key, ttl)
  return 1
end
redis.call("ZADD", key, now_ms, member)
redis.call("EXPIRE", key, ttl)
return 0
"""

    def __init__(self, redis_url: str | None = None, key_prefix: str = "homebook") -> None:
        self._events: dict[str, list[float]] = {}
        self._lock = threading.Lock()
        self._key_prefix = key_prefix
        self._redis = connect_redis(redis_url)

    def _exceeded_redis(self, key: str, limit: int, window_seconds: int) -> bool | None:
        if self._redis is None:
            return None
        now_ms = int(time.time() * 1000)
        try:
            result = self._redis.eval(
                self._REDIS_WINDOW_SCRIPT,
                1,
                f"{self._key_prefix}:ratelimit:{key}",
                now_ms,
                window_seconds * 1000,
                limit,
                f"{now_ms}-{secrets.token_hex(6)}",
                window_seconds + 1,
            )
        except RedisError as exc:
            log.warning("rate_limit_redis_failed", key=key, error=str(exc))
            return None
        return int(result or 0) == 1

    def exceeded(self, key: str, limit: int, window_seconds: int) -> bool:
        limit = max(1, int(limit))
        window_seconds = max(1, int(window_seconds))

        redis_result = self._exceeded_redis(key, limit, window_seconds)
        if redis_result is not None:
            return redis_result

        now = time.time()
        with self._lock:
            events = [ts for ts in self._events.get(key, []) if ts >= now - window_seconds]
            if len(events) >= limit:
                self._events[key] = events
                return True
            events.append(now)
            self._events[key] = events
            return False
