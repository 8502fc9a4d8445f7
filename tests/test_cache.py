"""Tests for the TTL cache, in-flight registry and rate limiter."""

import asyncio

import pytest

from common.cache import InFlightRegistry, MemoryCache
from common.security import RateLimiter, constant_time_equals, decode_token, hmac_sha256_hex, issue_session


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class TestMemoryCache:
    def test_get_before_expiry(self):
        clock = FakeClock()
        cache = MemoryCache(clock)
        cache.set("a", {"x": 1}, ttl=60)
        clock.advance(59)
        assert cache.get("a") == {"x": 1}

    def test_expired_entry_is_gone(self):
        clock = FakeClock()
        cache = MemoryCache(clock)
        cache.set("a", 1, ttl=60)
        clock.advance(60)
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_sweep_removes_only_expired(self):
        clock = FakeClock()
        cache = MemoryCache(clock)
        cache.set("short", 1, ttl=10)
        cache.set("long", 2, ttl=100)
        clock.advance(50)
        assert cache.sweep() == 1
        assert cache.get("long") == 2

    def test_delete_and_clear(self):
        cache = MemoryCache(FakeClock())
        cache.set("a", 1, ttl=10)
        cache.set("b", 2, ttl=10)
        cache.delete("a")
        assert cache.get("a") is None
        cache.clear()
        assert len(cache) == 0


class TestInFlightRegistry:
    def test_concurrent_callers_share_one_call(self):
        registry = InFlightRegistry()
        calls = []

        async def fetch():
            calls.append(1)
            await asyncio.sleep(0.01)
            return "rates"

        async def scenario():
            return await asyncio.gather(*[registry.run_once("k", fetch) for _ in range(5)])

        results = asyncio.run(scenario())
        assert results == ["rates"] * 5
        assert len(calls) == 1
        assert "k" not in registry

    def test_different_keys_run_separately(self):
        registry = InFlightRegistry()
        calls = []

        async def fetch():
            calls.append(1)
            await asyncio.sleep(0)
            return len(calls)

        async def scenario():
            return await asyncio.gather(registry.run_once("a", fetch), registry.run_once("b", fetch))

        asyncio.run(scenario())
        assert len(calls) == 2

    def test_failure_is_shared_then_cleared(self):
        registry = InFlightRegistry()
        attempts = []

        async def failing():
            attempts.append(1)
            await asyncio.sleep(0.01)
            raise RuntimeError("upstream down")

        async def ok():
            return "fine"

        async def scenario():
            results = await asyncio.gather(
                registry.run_once("k", failing), registry.run_once("k", failing),
                return_exceptions=True,
            )
            again = await registry.run_once("k", ok)
            return results, again

        results, again = asyncio.run(scenario())
        assert all(isinstance(r, RuntimeError) for r in results)
        assert len(attempts) == 1
        assert again == "fine"
        assert len(registry) == 0

    def test_cancelled_waiter_does_not_cancel_shared_call(self):
        registry = InFlightRegistry()

        async def fetch():
            await asyncio.sleep(0.05)
            return "done"

        async def scenario():
            first = asyncio.ensure_future(registry.run_once("k", fetch))
            second = asyncio.ensure_future(registry.run_once("k", fetch))
            await asyncio.sleep(0.01)
            first.cancel()
            with pytest.raises(asyncio.CancelledError):
                await first
            return await second

        assert asyncio.run(scenario()) == "done"


class TestRateLimiter:
    def test_blocks_after_limit_within_window(self):
        clock = FakeClock()
        limiter = RateLimiter(clock)
        assert all(limiter.hit("orders:1.2.3.4", 3, 60) for _ in range(3))
        assert limiter.hit("orders:1.2.3.4", 3, 60) is False

    def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(clock)
        for _ in range(3):
            limiter.hit("k", 3, 60)
        clock.advance(61)
        assert limiter.hit("k", 3, 60) is True

    def test_keys_are_independent(self):
        limiter = RateLimiter(FakeClock())
        limiter.hit("a", 1, 60)
        assert limiter.hit("b", 1, 60) is True

    def test_sweep_drops_idle_keys(self):
        clock = FakeClock()
        limiter = RateLimiter(clock)
        limiter.hit("k", 5, 60)
        clock.advance(1000)
        assert limiter.sweep(window=240) == 1


class TestSecurityHelpers:
    def test_hmac_is_deterministic_hex(self):
        digest = hmac_sha256_hex("secret", "message")
        assert digest == hmac_sha256_hex("secret", "message")
        assert len(digest) == 64

    def test_constant_time_equals_rejects_empty(self):
        assert constant_time_equals("abc", "abc")
        assert not constant_time_equals("abc", "abd")
        assert not constant_time_equals("", "")
        assert not constant_time_equals(None, "abc")

    def test_session_token_carries_csrf_claim(self):
        token, csrf = issue_session(7, "customer")
        payload = decode_token(token)
        assert payload["sub"] == "7"
        assert payload["csrf"] == csrf

    def test_garbage_token_decodes_to_none(self):
        assert decode_token("not-a-jwt") is None
