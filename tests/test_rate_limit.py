"""
בדיקות ל-Rate Limiting — app/core/rate_limit.py

מכסה:
- FixedWindowRateLimiter: ספירה, איפוס בחלון חדש, retry_after, ניקוי buckets
- RedisFixedWindowRateLimiter: מפתח החלון ו-pipeline
- enforce_rate_limit: fallback לזיכרון + backoff כש-Redis נכשל
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core import rate_limit
from app.core.config import settings
from app.core.exceptions import RateLimitExceededError
from app.core.rate_limit import (
    FixedWindowRateLimiter,
    RedisFixedWindowRateLimiter,
    SharedBackendBackoff,
    enforce_rate_limit,
    require_rate_limit,
)


class FakeClock:
    def __init__(self, now: float = 0):
        self.now = now

    def __call__(self):
        return self.now


class TestFixedWindowRateLimiter:

    @pytest.mark.unit
    def test_allows_up_to_limit_then_denies(self):
        limiter = FixedWindowRateLimiter(FakeClock(1_000))
        results = [limiter.hit("k", 3, 60_000) for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]

    @pytest.mark.unit
    def test_retry_after_counts_to_window_end(self):
        clock = FakeClock(59_000)
        limiter = FixedWindowRateLimiter(clock)
        limiter.hit("k", 1, 60_000)
        denied = limiter.hit("k", 1, 60_000)
        assert denied.allowed is False
        assert denied.retry_after_seconds == 1

        clock.now = 1_000
        fresh = FixedWindowRateLimiter(clock)
        fresh.hit("k", 1, 60_000)
        assert fresh.hit("k", 1, 60_000).retry_after_seconds == 59

    @pytest.mark.unit
    def test_counter_resets_on_new_window(self):
        clock = FakeClock(10_000)
        limiter = FixedWindowRateLimiter(clock)
        assert limiter.hit("k", 1, 60_000).allowed
        assert not limiter.hit("k", 1, 60_000).allowed
        clock.now = 60_000
        assert limiter.hit("k", 1, 60_000).allowed

    @pytest.mark.unit
    def test_boundary_burst_up_to_twice_limit(self):
        """חלון קבוע: סוף חלון + תחילת הבא = עד 2×limit"""
        clock = FakeClock(59_999)
        limiter = FixedWindowRateLimiter(clock)
        allowed = sum(limiter.hit("k", 5, 60_000).allowed for _ in range(5))
        clock.now = 60_000
        allowed += sum(limiter.hit("k", 5, 60_000).allowed for _ in range(5))
        assert allowed == 10

    @pytest.mark.unit
    def test_keys_are_independent(self):
        limiter = FixedWindowRateLimiter(FakeClock(0))
        limiter.hit("a", 1, 1_000)
        assert limiter.hit("b", 1, 1_000).allowed

    @pytest.mark.unit
    def test_sweeps_expired_buckets_when_full(self):
        clock = FakeClock(0)
        limiter = FixedWindowRateLimiter(clock, sweep_threshold=3)
        for key in ("a", "b", "c"):
            limiter.hit(key, 10, 1_000)
        clock.now = 5_000
        limiter.hit("d", 10, 1_000)
        assert len(limiter) == 1

    @pytest.mark.unit
    def test_live_buckets_evict_oldest_key(self):
        clock = FakeClock(0)
        limiter = FixedWindowRateLimiter(clock, sweep_threshold=3)
        for key in ("a", "b", "c"):
            limiter.hit(key, 1, 60_000)

        limiter.hit("d", 1, 60_000)
        limiter.hit("e", 1, 60_000)

        assert len(limiter) == 3
        assert not limiter.hit("e", 1, 60_000).allowed
        # "a" פונה — מתחיל ספירה מחדש
        assert limiter.hit("a", 1, 60_000).allowed

    @pytest.mark.unit
    def test_expired_scan_is_throttled(self, monkeypatch):
        clock = FakeClock(0)
        limiter = FixedWindowRateLimiter(clock, sweep_threshold=2, sweep_interval_ms=1_000)
        scans = []
        original_sweep = limiter._sweep

        def counting_sweep(now_ms):
            scans.append(now_ms)
            original_sweep(now_ms)

        monkeypatch.setattr(limiter, "_sweep", counting_sweep)

        for index in range(10):
            clock.now = index * 10
            limiter.hit(f"key-{index}", 5, 60_000)
        clock.now = 1_500
        limiter.hit("late", 5, 60_000)

        assert scans == [20, 1_500]
        assert len(limiter) == 2

    @pytest.mark.unit
    def test_rejects_non_positive_window(self):
        with pytest.raises(ValueError):
            FixedWindowRateLimiter(FakeClock(0)).hit("k", 1, 0)


class TestRedisFixedWindowRateLimiter:

    @pytest.mark.unit
    async def test_uses_window_index_key_and_expiry(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[2, True])
        redis = MagicMock()
        redis.pipeline.return_value = pipe

        limiter = RedisFixedWindowRateLimiter(AsyncMock(return_value=redis), FakeClock(125_000))
        result = await limiter.hit("payments:webhook:1.2.3.4", 1, 60_000)

        pipe.incr.assert_called_once_with("ratelimit:payments:webhook:1.2.3.4:2")
        pipe.pexpire.assert_called_once_with("ratelimit:payments:webhook:1.2.3.4:2", 60_000)
        assert result.allowed is False
        assert result.retry_after_seconds == 55


class TestSharedBackendBackoff:

    @pytest.mark.unit
    def test_exponential_and_capped(self):
        clock = FakeClock(100.0)
        backoff = SharedBackendBackoff(clock)
        delays = [backoff.record_failure() for _ in range(8)]
        assert delays[:5] == [30.0, 60.0, 120.0, 240.0, 300.0]
        assert max(delays) == 300.0
        assert backoff.is_disabled

    @pytest.mark.unit
    def test_success_resets(self):
        clock = FakeClock(0.0)
        backoff = SharedBackendBackoff(clock)
        backoff.record_failure()
        backoff.record_success()
        assert backoff.failure_count == 0
        assert not backoff.is_disabled


class TestEnforceRateLimit:

    @pytest.mark.unit
    async def test_memory_backend(self, monkeypatch):
        monkeypatch.setattr(settings, "RATE_LIMIT_BACKEND", "memory")
        first = await enforce_rate_limit("mem:key", 1, 60_000)
        second = await enforce_rate_limit("mem:key", 1, 60_000)
        assert first.allowed and not second.allowed

    @pytest.mark.unit
    async def test_redis_failure_falls_back_and_backs_off(self, monkeypatch):
        monkeypatch.setattr(settings, "RATE_LIMIT_BACKEND", "redis")
        failing = MagicMock()
        failing.hit = AsyncMock(side_effect=ConnectionError("redis down"))
        monkeypatch.setattr(rate_limit, "shared_limiter", failing)
        backoff = SharedBackendBackoff()
        monkeypatch.setattr(rate_limit, "shared_backoff", backoff)

        result = await enforce_rate_limit("redis:key", 5, 60_000)
        assert result.allowed
        assert backoff.failure_count == 1
        assert backoff.is_disabled

        # בזמן ה-backoff לא פונים ל-Redis בכלל
        await enforce_rate_limit("redis:key", 5, 60_000)
        assert failing.hit.await_count == 1

    @pytest.mark.unit
    async def test_redis_success(self, monkeypatch):
        monkeypatch.setattr(settings, "RATE_LIMIT_BACKEND", "redis")
        shared = MagicMock()
        shared.hit = AsyncMock(return_value=rate_limit.RateLimitResult(True, 4, 60))
        monkeypatch.setattr(rate_limit, "shared_limiter", shared)
        monkeypatch.setattr(rate_limit, "shared_backoff", SharedBackendBackoff())

        result = await enforce_rate_limit("redis:key", 5, 60_000)
        assert result.remaining == 4


class TestRequireRateLimit:

    @pytest.mark.unit
    async def test_raises_when_exhausted(self, monkeypatch):
        monkeypatch.setattr(settings, "RATE_LIMIT_BACKEND", "memory")
        await require_rate_limit("req:key", 1, 60_000, "slow down")
        with pytest.raises(RateLimitExceededError) as exc_info:
            await require_rate_limit("req:key", 1, 60_000, "slow down")
        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after_seconds >= 1
        assert exc_info.value.message == "slow down"
