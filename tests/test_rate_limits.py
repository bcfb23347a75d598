"""Tests for token-bucket rate limiting (in-process fallback and Redis wrapper)."""

import pytest

from tourpass.service.runtime import (
    _mask_url_password,
    check_rate_limit,
    get_runtime,
)
from tourpass.storage.redis_cache import SyncRedisCache, _unpack_bucket_result, rate_limit_key


class TestLocalBucket:
    async def test_allows_up_to_limit_then_blocks(self):
        runtime = get_runtime()
        assert runtime.cache is None
        results = [await check_rate_limit(runtime, "login:a@x.com", 3, 60) for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_reports_retry_after(self):
        runtime = get_runtime()
        for _ in range(2):
            await check_rate_limit(runtime, "k", 2, 60)
        allowed, remaining, retry_after = await check_rate_limit(
            runtime, "k", 2, 60, return_remaining=True
        )
        assert allowed is False
        assert remaining == 0
        assert 1 <= retry_after <= 30

    async def test_keys_are_independent(self):
        runtime = get_runtime()
        assert await check_rate_limit(runtime, "a", 1, 60)
        assert not await check_rate_limit(runtime, "a", 1, 60)
        assert await check_rate_limit(runtime, "b", 1, 60)

    async def test_non_positive_limit_disables(self):
        runtime = get_runtime()
        for _ in range(10):
            assert await check_rate_limit(runtime, "k", 0, 60)


class TestRedisWrapper:
    def test_keys_are_hashed(self):
        key = rate_limit_key("login:a@x.com", scope="auth")
        assert key.startswith("tourpass:rate:auth:")
        assert "a@x.com" not in key

    def test_unpack_bucket_result(self):
        assert _unpack_bucket_result([1, "4.5", 0]) == (True, 4, 0)
        assert _unpack_bucket_result([0, -1, 12]) == (False, 0, 12)

    async def test_sync_cache_runs_bucket_script(self):
        cache = SyncRedisCache("redis://localhost:6379/15")
        calls = []

        def _fake_script(keys, args):
            calls.append((keys, args))
            return [0, 0, 7]

        cache._token_bucket = _fake_script
        allowed, remaining, retry_after = await cache.check_rate_limit(
            "refresh:10.0.0.1", 30, 60, return_remaining=True
        )
        assert (allowed, remaining, retry_after) == (False, 0, 7)
        keys, args = calls[0]
        assert keys == [rate_limit_key("refresh:10.0.0.1")]
        assert args[1:] == [0.5, 30, 1]


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:hunter2@cache:6379/0", "redis://:***@cache:6379/0"),
        ("redis://cache:6379/0", "redis://cache:6379/0"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected
