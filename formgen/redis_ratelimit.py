import os
import time
from typing import Any, Optional, Tuple

import redis

WINDOW_SECONDS = int(os.getenv("RATE_WINDOW_SECONDS", "3600"))
MAX_REQUESTS = int(os.getenv("RATE_MAX_REQUESTS", "30"))
KEY_PREFIX = os.getenv("RATE_KEY_PREFIX", "formgen:rl")


class RedisRateLimiter:
    """
    Fixed-window limiter shared across worker processes; same
    (allowed, remaining, reset_ts) contract as formgen.ratelimit.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        window_seconds: Optional[int] = None,
        max_requests: Optional[int] = None,
        client: Any = None,
    ) -> None:
        self.window_seconds = int(window_seconds or WINDOW_SECONDS)
        self.max_requests = int(max_requests or MAX_REQUESTS)
        if client is None:
            url = (redis_url or os.getenv("REDIS_URL", "")).strip() or "redis://localhost:6379/0"
            # Lazy: no network traffic until the first command
            client = redis.from_url(url, decode_responses=True, socket_timeout=0.5, socket_connect_timeout=0.5)
        self._client = client

    def _window(self, now: int) -> Tuple[int, int]:
        start = now - (now % self.window_seconds)
        return start, start + self.window_seconds

    def check_and_increment(self, bucket: str, key: str, now: Optional[int] = None) -> Tuple[bool, int, int]:
        current_ts = int(now or time.time())
        start, reset_ts = self._window(current_ts)
        bucket_key = f"{KEY_PREFIX}:{bucket or 'default'}:{key or 'anon'}:{start}"
        pipe = self._client.pipeline()
        pipe.incr(bucket_key, 1)
        pipe.expire(bucket_key, self.window_seconds)
        count, _ = pipe.execute()
        used = int(count)
        return used <= self.max_requests, max(0, self.max_requests - used), reset_ts
