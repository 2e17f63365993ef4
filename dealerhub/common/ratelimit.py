"""Redis token bucket used on unauthenticated endpoints."""

from time import time

import redis

from dealerhub.common.logging import logger


class TokenBucket:
    """Per-key token bucket (capacity = refill rate = limit per minute)."""

    def __init__(self, client: redis.Redis, limit_per_minute: int, prefix: str = "tokenbucket") -> None:
        self.client = client
        self.limit_per_minute = limit_per_minute
        self.prefix = prefix

    def allow(self, key: str) -> bool:
        """Consume one token for `key`; fails open when Redis is unreachable."""

        bucket_key = f"{self.prefix}:{key}"
        now = time()
        capacity = float(self.limit_per_minute)
        refill_per_sec = capacity / 60.0
        try:
            values = self.client.hmget(bucket_key, "tokens", "updated_at")
            tokens = float(values[0]) if values[0] is not None else capacity
            updated_at = float(values[1]) if values[1] is not None else now
            elapsed = max(0.0, now - updated_at)
            tokens = min(capacity, tokens + elapsed * refill_per_sec)

            allowed = tokens >= 1.0
            if allowed:
                tokens -= 1.0
            self.client.hset(bucket_key, mapping={"tokens": tokens, "updated_at": now})
            self.client.expire(bucket_key, 120)
            return allowed
        except redis.RedisError as exc:
            logger.warning("rate_limit_unavailable key=%s error=%s", bucket_key, exc)
            return True
