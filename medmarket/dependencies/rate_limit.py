"""Per-IP per-path sliding-window rate limiter for sensitive endpoints."""
import time
from collections import defaultdict, deque
from fastapi import HTTPException, Request, status
from medmarket.core.config import settings
from medmarket.utils.helpers import get_client_ip

# key -> deque[timestamps]
_buckets = defaultdict(deque)


def reset_buckets():
    _buckets.clear()


async def rate_limit(request: Request):
    if not settings.RATE_LIMIT_ENABLED:
        return True

    now = time.time()
    window_start = now - settings.RATE_LIMIT_PERIOD_SECONDS
    key = f"{get_client_ip(request)}:{request.url.path}"

    bucket = _buckets[key]
    while bucket and bucket[0] <= window_start:
        bucket.popleft()

    if len(bucket) >= settings.RATE_LIMIT_REQUESTS:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please slow down.",
        )

    bucket.append(now)
    return True
