"""Redis token bucket shared by the public payment endpoints."""

from time import time

import redis

from fybpay.common.logging import logger


class RateLimitExceeded(Exception):
    """Raised when a bucket has no tokens left."""


class TokenBucket:
    """Per-key token bucket (capacity = refill rate = limit per minute)."""

    def __init__(self, rdb: redis.Redis, limit_per_minute: int, prefix: str = "tokenbucket") -> None:
        self.rdb = rdb
        self.capacity = float(limit_per_minute)
        self.refill_per_sec = self.capacity / 60.0
        self.prefix = prefix

    def consume(self, scope: str, key: str) -> None:
        """Take one token for `scope:key` or raise `RateLimitExceeded`.

        Redis outages fail open: payment verification must keep working when
        the limiter is unavailable.
        """

        if self.capacity <= 0:
            return
        bucket_key = f"{self.prefix}:{scope}:{key}"
        now = time()
        try:
            values = self.rdb.hmget(bucket_key, "tokens", "updated_at")
            tokens = float(values[0]) if values[0] is not None else self.capacity
            updated_at = float(values[1]) if values[1] is not None else now
            elapsed = max(0.0, now - updated_at)
            tokens = min(self.capacity, tokens + elapsed * self.refill_per_sec)

            allowed = tokens >= 1.0
            if allowed:
                tokens -= 1.0
            self.rdb.hset(bucket_key, mapping={"tokens": tokens, "updated_at": now})
            self.rdb.expire(bucket_key, 120)
        except redis.RedisError as exc:
            logger.warning("rate_limit_unavailable scope=%s error=%s", scope, exc)
            return
        if not allowed:
            raise RateLimitExceeded(bucket_key)
