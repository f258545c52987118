"""
限流层 – 滑动窗口限流器
每个上游数据源一个实例，窗口内请求数达到上限时挂起调用方，
直到最早的请求滑出窗口。
"""

import asyncio
import inspect
import logging
import threading
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict

from acquisition_service.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    滑动窗口限流器

    - 准入时间戳在准入时刻记录（而非调用完成时），长耗时调用不会提前释放额度
    - 等待者按请求顺序排队（asyncio.Lock 为 FIFO），不会饿死
    - 调用方任务被取消时，时间戳尚未写入，窗口状态不受影响
    - 不做任何重试，被包装调用的异常原样抛给调用方
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_requests <= 0:
            raise ConfigurationError(f"限流器 {name}: max_requests 必须为正数，当前为 {max_requests}")
        if window_seconds <= 0:
            raise ConfigurationError(f"限流器 {name}: window_seconds 必须为正数，当前为 {window_seconds}")
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._sleep = sleep
        self._timestamps: Deque[float] = deque()
        self._lock = threading.Lock()
        self._queue = asyncio.Lock()
        self._admitted = 0
        self._waited = 0
        self._total_wait = 0.0

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def _try_admit(self) -> float:
        """窗口有余量时记录时间戳并返回 0，否则返回需要等待的秒数"""
        now = self._clock()
        with self._lock:
            self._prune(now)
            if len(self._timestamps) < self.max_requests:
                self._timestamps.append(now)
                self._admitted += 1
                return 0.0
            return self.window_seconds - (now - self._timestamps[0])

    async def admit(self) -> None:
        """等待直到当前时刻发起调用不会超过窗口上限"""
        async with self._queue:
            waited = False
            while True:
                wait_time = self._try_admit()
                if wait_time <= 0:
                    return
                if not waited:
                    waited = True
                    self._waited += 1
                logger.info(f"⏳ 限流等待（{self.name}）: {wait_time:.3f}s")
                self._total_wait += wait_time
                await self._sleep(wait_time)

    async def execute(self, call: Callable[..., Any], *args, **kwargs) -> Any:
        """先准入再执行调用，返回结果或传播异常"""
        await self.admit()
        result = call(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            self._prune(now)
            in_window = len(self._timestamps)
        return {
            "name": self.name,
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
            "in_window": in_window,
            "available": max(self.max_requests - in_window, 0),
            "admitted_total": self._admitted,
            "waited_total": self._waited,
            "total_wait_seconds": round(self._total_wait, 3),
        }


class RateLimiterRegistry:
    """按上游数据源管理限流器（每个数据源一个实例，互不共享）"""

    def __init__(self, limits: Dict[str, tuple], **limiter_kwargs):
        self._limiters: Dict[str, RateLimiter] = {
            source: RateLimiter(max_requests, window, name=source, **limiter_kwargs)
            for source, (max_requests, window) in limits.items()
        }

    def get(self, source: str) -> RateLimiter:
        try:
            return self._limiters[source]
        except KeyError:
            raise ConfigurationError(f"未配置限流的数据源: {source}") from None

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {source: limiter.stats() for source, limiter in self._limiters.items()}
