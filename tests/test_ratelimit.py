"""Redis token bucket used by the token refresh endpoint."""

import pytest
from fastapi import HTTPException

from mentorsaga.common.ratelimit import enforce_token_bucket


class FakeRedis:
    def __init__(self) -> None:
        self.hashes: dict[str, dict] = {}
        self.ttls: dict[str, int] = {}

    def hmget(self, key, *fields):
        stored = self.hashes.get(key, {})
        return [stored.get(field) for field in fields]

    def hset(self, key, mapping):
        self.hashes.setdefault(key, {}).update({k: str(v) for k, v in mapping.items()})

    def expire(self, key, seconds):
        self.ttls[key] = seconds


def test_bucket_empties_then_refills():
    rdb = FakeRedis()

    for _ in range(3):
        enforce_token_bucket(rdb, "token-refresh:mentor-1", 3, now=1000.0)
    with pytest.raises(HTTPException) as excinfo:
        enforce_token_bucket(rdb, "token-refresh:mentor-1", 3, now=1000.0)
    assert excinfo.value.status_code == 429

    enforce_token_bucket(rdb, "token-refresh:mentor-1", 3, now=1030.0)
    assert rdb.ttls["tokenbucket:token-refresh:mentor-1"] == 120


def test_buckets_are_per_actor():
    rdb = FakeRedis()

    for _ in range(2):
        enforce_token_bucket(rdb, "token-refresh:mentor-1", 2, now=0.0)
    enforce_token_bucket(rdb, "token-refresh:mentor-2", 2, now=0.0)
