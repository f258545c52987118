"""
限流层单元测试

覆盖范围：
  - 构造参数校验
  - 滑动窗口准入时刻
  - 等待者 FIFO 顺序
  - 等待中被取消不影响窗口状态
  - 调用异常原样传播
"""

import asyncio
import os
import sys

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from acquisition_service.exceptions import ConfigurationError
from acquisition_service.layers.rate_limiter import RateLimiter, RateLimiterRegistry


class FakeClock:
    """手动推进的时钟，sleep 直接把时间拨到唤醒时刻"""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


# ─────────────────────────────────────────────────────────
# 1. 构造参数
# ─────────────────────────────────────────────────────────

class TestConfiguration:
    @pytest.mark.parametrize("max_requests, window", [(0, 60), (-1, 60), (10, 0), (10, -5)])
    def test_non_positive_parameters_rejected(self, max_requests, window):
        with pytest.raises(ConfigurationError):
            RateLimiter(max_requests, window)

    def test_registry_unknown_source(self):
        registry = RateLimiterRegistry({"upbit": (50, 60)})
        with pytest.raises(ConfigurationError):
            registry.get("binance")

    def test_registry_sources_are_independent(self):
        registry = RateLimiterRegistry({"upbit": (50, 60), "coingecko": (30, 60)})
        assert registry.get("upbit") is not registry.get("coingecko")
        stats = registry.stats()
        assert stats["upbit"]["max_requests"] == 50
        assert stats["coingecko"]["max_requests"] == 30


# ─────────────────────────────────────────────────────────
# 2. 滑动窗口
# ─────────────────────────────────────────────────────────

class TestSlidingWindow:
    def test_admissions_respect_window(self):
        clock = FakeClock()
        limiter = RateLimiter(2, 10, clock=clock, sleep=clock.sleep)
        admitted_at = []

        async def scenario():
            await asyncio.gather(*[
                limiter.execute(lambda: admitted_at.append(clock.now)) for _ in range(6)
            ])

        asyncio.run(scenario())
        assert len(admitted_at) == 6
        for n in range(2, 6):
            assert admitted_at[n] >= admitted_at[n - 2] + 10
        assert admitted_at[:2] == [0.0, 0.0]

    def test_under_limit_never_waits(self):
        clock = FakeClock()
        limiter = RateLimiter(5, 60, clock=clock, sleep=clock.sleep)

        async def scenario():
            for _ in range(5):
                await limiter.admit()

        asyncio.run(scenario())
        assert clock.sleeps == []
        stats = limiter.stats()
        assert stats["in_window"] == 5
        assert stats["available"] == 0

    def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(1, 10, clock=clock, sleep=clock.sleep)

        async def scenario():
            await limiter.admit()
            clock.now = 4
            await limiter.admit()

        asyncio.run(scenario())
        # 最早的准入在 t=0，t=4 时需要再等 6 秒
        assert clock.sleeps == [6]
        assert clock.now == 10
        assert limiter.stats()["waited_total"] == 1

    def test_waiters_are_fifo(self):
        clock = FakeClock()
        limiter = RateLimiter(1, 1, clock=clock, sleep=clock.sleep)
        order = []

        async def scenario():
            await asyncio.gather(*[
                limiter.execute(order.append, i) for i in range(8)
            ])

        asyncio.run(scenario())
        assert order == list(range(8))


# ─────────────────────────────────────────────────────────
# 3. 取消与异常
# ─────────────────────────────────────────────────────────

class TestCancellationAndErrors:
    def test_cancelled_waiter_leaves_window_untouched(self):
        clock = FakeClock()

        async def scenario():
            gate = asyncio.Event()

            async def blocking_sleep(delay):
                await gate.wait()

            limiter = RateLimiter(1, 10, clock=clock, sleep=blocking_sleep)
            await limiter.admit()

            waiter = asyncio.ensure_future(limiter.admit())
            await asyncio.sleep(0)
            waiter.cancel()
            with pytest.raises(asyncio.CancelledError):
                await waiter
            during = limiter.stats()

            # 窗口滑过后，新的调用方可以立即准入（队列锁已释放）
            clock.now = 10
            await asyncio.wait_for(limiter.admit(), timeout=1)
            return during, limiter.stats()

        during, after = asyncio.run(scenario())
        assert during["in_window"] == 1
        assert during["admitted_total"] == 1
        assert after["admitted_total"] == 2
        assert after["in_window"] == 1

    def test_call_errors_propagate(self):
        limiter = RateLimiter(3, 60)

        def failing():
            raise ValueError("upstream said no")

        with pytest.raises(ValueError, match="upstream said no"):
            asyncio.run(limiter.execute(failing))
        # 失败的调用同样占用窗口额度，且不会重试
        assert limiter.stats()["in_window"] == 1
        assert limiter.stats()["admitted_total"] == 1

    def test_execute_awaits_coroutines(self):
        limiter = RateLimiter(3, 60)

        async def fetch(symbol, scale=1):
            return {"market": symbol, "price": 100 * scale}

        result = asyncio.run(limiter.execute(fetch, "KRW-BTC", scale=2))
        assert result == {"market": "KRW-BTC", "price": 200}
