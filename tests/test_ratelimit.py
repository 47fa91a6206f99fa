"""Token bucket behaviour with an in-memory Redis stand-in."""

import pytest
import redis

from fybpay.common.ratelimit import RateLimitExceeded, TokenBucket


class MemoryRedis:
    """Implements only the hash commands the bucket uses."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}

    def hmget(self, key, *fields):
        values = self.hashes.get(key, {})
        return [values.get(field) for field in fields]

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    def expire(self, key, seconds):
        return True


class BrokenRedis:
    def hmget(self, key, *fields):
        raise redis.ConnectionError("redis unavailable")


def test_bucket_allows_up_to_capacity_then_limits():
    bucket = TokenBucket(MemoryRedis(), limit_per_minute=3)

    for _ in range(3):
        bucket.consume("verify", "10.0.0.1")
    with pytest.raises(RateLimitExceeded):
        bucket.consume("verify", "10.0.0.1")


def test_buckets_are_isolated_per_key_and_scope():
    bucket = TokenBucket(MemoryRedis(), limit_per_minute=1)

    bucket.consume("verify", "10.0.0.1")
    bucket.consume("verify", "10.0.0.2")
    bucket.consume("checkout", "10.0.0.1")


def test_zero_limit_disables_limiting():
    bucket = TokenBucket(BrokenRedis(), limit_per_minute=0)
    for _ in range(10):
        bucket.consume("verify", "10.0.0.1")


def test_redis_outage_fails_open():
    """Verification keeps working when the limiter backend is down."""

    TokenBucket(BrokenRedis(), limit_per_minute=5).consume("verify", "10.0.0.1")
