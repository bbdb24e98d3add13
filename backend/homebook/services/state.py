from homebook.core.cache import TimedCache
from homebook.core.config import settings
from homebook.core.rate_limit import RateLimiter

cache = TimedCache(redis_url=settings.redis_url, key_prefix=settings.redis_prefix)
rate_limiter = RateLimiter(redis_url=settings.redis_url, key_prefix=settings.redis_prefix)
