"""Redis token bucket keyed by actor id.

Counters live in Redis with a TTL so every stateless instance sees the same
budget for one actor.
"""

from time import time

from fastapi import HTTPException


def enforce_token_bucket(rdb, actor_key: str, limit_per_minute: int, now: float | None = None) -> None:
    """Spend one token for `actor_key`, or raise 429 when the bucket is empty."""

    # Capacity = refill rate = limit per minute.
    key = f"tokenbucket:{actor_key}"
    now = time() if now is None else now
    capacity = float(limit_per_minute)
    refill_per_sec = capacity / 60.0

    values = rdb.hmget(key, "tokens", "updated_at")
    tokens = float(values[0]) if values[0] is not None else capacity
    updated_at = float(values[1]) if values[1] is not None else now
    elapsed = max(0.0, now - updated_at)
    tokens = min(capacity, tokens + elapsed * refill_per_sec)

    if tokens < 1.0:
        rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        rdb.expire(key, 120)
        raise HTTPException(status_code=429, detail="rate limit exceeded")
    tokens -= 1.0
    rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
    rdb.expire(key, 120)
