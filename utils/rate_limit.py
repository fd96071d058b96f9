"""Rate limiting utilities using throttled-py"""
from datetime import timedelta
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from throttled import Throttled, RateLimiterType, store, rate_limiter

from core.config import logger, REDIS_URL, TRACKING_RATE_LIMIT, ADMIN_RATE_LIMIT
from utils.fingerprint import get_client_ip

# Redis for production, MemoryStore for development and tests
_storage_type = "memory"
try:
    if REDIS_URL:
        storage = store.RedisStore(server=REDIS_URL)
        _storage_type = "redis"
        logger.info("[rate_limit] Using Redis for rate limiting")
    else:
        storage = store.MemoryStore()
        logger.warning("[rate_limit] REDIS_URL not set - using in-memory storage (not suitable for production with multiple workers)")
except Exception as ex:
    storage = store.MemoryStore()
    logger.warning(f"[rate_limit] Redis connection failed, using in-memory storage: {ex}")

# Public tracking endpoints: per IP per minute
tracking_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=1), limit=TRACKING_RATE_LIMIT),
    store=storage,
)

# Admin endpoints: per IP per minute
admin_throttle = Throttled(
    using=RateLimiterType.FIXED_WINDOW.value,
    quota=rate_limiter.per_duration(timedelta(minutes=1), limit=ADMIN_RATE_LIMIT),
    store=storage,
)


def check_rate_limit(throttle: Throttled, key: str) -> bool:
    """True when the request may proceed. Limiter failures fail open."""
    try:
        result = throttle.limit(key, cost=1)
        return not result.limited
    except Exception as ex:
        logger.warning(f"[rate_limit] check failed key={key}: {ex}")
        return True


def enforce(request: Request, throttle: Throttled, scope: str) -> Optional[JSONResponse]:
    """Return a 429 response when the caller's IP is over the limit for scope."""
    ip = get_client_ip(request) or "unknown"
    if check_rate_limit(throttle, f"{scope}:{ip}"):
        return None
    logger.warning(f"[rate_limit] limited scope={scope} ip={ip}")
    return JSONResponse({"error": "Too many requests. Please try again later."}, status_code=429)
