"""
Fixed-Window Rate Limiting

חלון מזוהה ע"י floor(now / window_ms); המונה מתאפס כשהחלון מתחלף.
תכונה ידועה של חלון קבוע: סביב גבול חלון ייתכן פרץ של עד 2×limit
(סוף חלון אחד + תחילת הבא). הספירה ב-backend הזיכרון היא לכל תהליך;
backend ה-Redis משותף לכל ה-instances.
"""
import math
import time
from dataclasses import dataclass
from typing import Callable

from app.core.config import settings
from app.core.exceptions import RateLimitExceededError
from app.core.logging import get_logger

logger = get_logger(__name__)

# backoff אחרי כשל Redis — 15s × 2^n, עד 5 דקות
SHARED_BACKOFF_BASE_SECONDS = 15.0
SHARED_BACKOFF_MAX_SECONDS = 300.0
SHARED_BACKOFF_MAX_EXPONENT = 5


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after_seconds: int


def _now_ms() -> int:
    return int(time.time() * 1000)


def _window_bounds(now_ms: int, window_ms: int) -> tuple[int, int]:
    """(אינדקס חלון, תחילת חלון במילישניות)"""
    index = now_ms // window_ms
    return index, index * window_ms


def _build_result(count: int, limit: int, window_start: int, window_ms: int, now_ms: int) -> RateLimitResult:
    retry_after = max(1, math.ceil((window_start + window_ms - now_ms) / 1000))
    return RateLimitResult(
        allowed=count <= limit,
        remaining=max(limit - count, 0),
        retry_after_seconds=retry_after,
    )


class FixedWindowRateLimiter:
    """מונה in-process — dict של key → (תחילת חלון, ספירה)

    כשה-store מלא: סריקת חלונות שפג תוקפם (לכל היותר פעם ב-sweep_interval_ms),
    ואם עדיין מלא — פינוי ה-key הוותיק ביותר. הגודל חסום ב-sweep_threshold.
    """

    def __init__(
        self,
        clock: Callable[[], int] = _now_ms,
        *,
        sweep_threshold: int = 10_000,
        sweep_interval_ms: int = 1_000,
    ):
        self._clock = clock
        self._sweep_threshold = sweep_threshold
        self._sweep_interval_ms = sweep_interval_ms
        self._last_sweep_ms: int | None = None
        self._buckets: dict[str, tuple[int, int, int]] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def _sweep(self, now_ms: int) -> None:
        """מחיקת חלונות שפג תוקפם — מונע גדילה בלתי מוגבלת מ-keys חד-פעמיים"""
        self._last_sweep_ms = now_ms
        expired = [
            key for key, (start, window_ms, _) in self._buckets.items()
            if now_ms - start >= window_ms
        ]
        for key in expired:
            del self._buckets[key]

    def _make_room(self, now_ms: int) -> None:
        if self._last_sweep_ms is None or now_ms - self._last_sweep_ms >= self._sweep_interval_ms:
            self._sweep(now_ms)
        # סדר ההכנסה ל-dict = סדר יצירת ה-key; הראשון הוא הוותיק ביותר
        while len(self._buckets) >= self._sweep_threshold:
            del self._buckets[next(iter(self._buckets))]

    def hit(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")

        now_ms = self._clock()
        _, window_start = _window_bounds(now_ms, window_ms)

        bucket = self._buckets.get(key)
        if bucket is None or bucket[0] != window_start:
            count = 1
        else:
            count = bucket[2] + 1

        if bucket is None and len(self._buckets) >= self._sweep_threshold:
            self._make_room(now_ms)

        self._buckets[key] = (window_start, window_ms, count)
        return _build_result(count, limit, window_start, window_ms, now_ms)

    def reset(self) -> None:
        self._buckets.clear()
        self._last_sweep_ms = None


class RedisFixedWindowRateLimiter:
    """אותו חישוב חלון, מונה משותף ב-Redis (INCR + PEXPIRE)"""

    KEY_PREFIX = "ratelimit"

    def __init__(self, redis_factory, clock: Callable[[], int] = _now_ms):
        self._redis_factory = redis_factory
        self._clock = clock

    async def hit(self, key: str, limit: int, window_ms: int) -> RateLimitResult:
        now_ms = self._clock()
        index, window_start = _window_bounds(now_ms, window_ms)
        redis_key = f"{self.KEY_PREFIX}:{key}:{index}"

        redis = await self._redis_factory()
        pipe = redis.pipeline(transaction=True)
        pipe.incr(redis_key)
        pipe.pexpire(redis_key, window_ms)
        count, _ = await pipe.execute()

        return _build_result(int(count), limit, window_start, window_ms, now_ms)


class SharedBackendBackoff:
    """השבתה זמנית של ה-backend המשותף אחרי כשלים רצופים"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.failure_count = 0
        self.disabled_until = 0.0

    @property
    def is_disabled(self) -> bool:
        return self._clock() < self.disabled_until

    def record_failure(self) -> float:
        self.failure_count += 1
        exponent = min(self.failure_count, SHARED_BACKOFF_MAX_EXPONENT)
        delay = min(SHARED_BACKOFF_MAX_SECONDS, SHARED_BACKOFF_BASE_SECONDS * 2 ** exponent)
        self.disabled_until = self._clock() + delay
        return delay

    def record_success(self) -> None:
        self.failure_count = 0
        self.disabled_until = 0.0


async def _default_redis():
    from app.core.redis_client import get_redis

    return await get_redis()


memory_limiter = FixedWindowRateLimiter()
shared_limiter = RedisFixedWindowRateLimiter(_default_redis)
shared_backoff = SharedBackendBackoff()


async def enforce_rate_limit(key: str, limit: int, window_ms: int) -> RateLimitResult:
    """בדיקת מגבלה: Redis כשמוגדר וזמין, אחרת המונה המקומי"""
    if settings.RATE_LIMIT_BACKEND == "redis" and not shared_backoff.is_disabled:
        try:
            result = await shared_limiter.hit(key, limit, window_ms)
        except Exception as e:
            delay = shared_backoff.record_failure()
            logger.error(
                "Shared rate limiter failed, falling back to memory",
                extra_data={
                    "error_type": type(e).__name__,
                    "backoff_seconds": delay,
                    "failure_count": shared_backoff.failure_count,
                },
            )
        else:
            shared_backoff.record_success()
            return result

    return memory_limiter.hit(key, limit, window_ms)


async def require_rate_limit(key: str, limit: int, window_ms: int, message: str) -> RateLimitResult:
    """כמו enforce_rate_limit, אבל זורק RateLimitExceededError (429) כשנחסם"""
    result = await enforce_rate_limit(key, limit, window_ms)
    if not result.allowed:
        raise RateLimitExceededError(message, retry_after_seconds=result.retry_after_seconds)
    return result
