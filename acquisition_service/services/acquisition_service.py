"""
行情获取服务
组合限流层 + 缓存层，对外提供“按键获取数据，必要时在限流下刷新”的统一接口
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from acquisition_service.layers.acquisition import UpbitClient
from acquisition_service.layers.cache import CacheResult, TieredCache, make_key
from acquisition_service.layers.rate_limiter import RateLimiterRegistry

logger = logging.getLogger(__name__)

_MARKETS_NS = "markets"
_TICKER_NS = "ticker"
_CANDLES_NS = "candles"


def ticker_key(market: str) -> str:
    return make_key(_TICKER_NS, market)


class AcquisitionFacade:
    """行情获取门面：缓存优先，未命中时经限流器调用上游"""

    def __init__(
        self,
        cache: TieredCache,
        limiters: RateLimiterRegistry,
        client: Optional[UpbitClient] = None,
    ):
        self._cache = cache
        self._limiters = limiters
        self._client = client or UpbitClient()
        self._mode = None

    def attach_mode(self, mode) -> None:
        """绑定模式控制器，实时模式下行情走推送数据"""
        self._mode = mode

    @property
    def streaming(self) -> bool:
        return bool(self._mode is not None and self._mode.is_streaming)

    # ── 通用接口 ──────────────────────────────────────────

    def _limited(self, fetch_fn: Callable[[], Any], source: str) -> Callable[[], Any]:
        limiter = self._limiters.get(source)

        def call():
            return limiter.execute(fetch_fn)

        return call

    async def get(
        self,
        key: str,
        fetch_fn: Callable[[], Any],
        ttl_class: str,
        source: str = "upbit",
    ) -> CacheResult:
        return await self._cache.get(key, self._limited(fetch_fn, source), ttl_class)

    def refresh_in_background(
        self,
        key: str,
        fetch_fn: Callable[[], Any],
        ttl_class: str,
        source: str = "upbit",
    ) -> bool:
        return self._cache.refresh_in_background(key, self._limited(fetch_fn, source), ttl_class)

    def ingest(self, key: str, value: Any, ttl_class: str = "tick") -> None:
        """实时推送数据写入缓存"""
        self._cache.put(key, value, ttl_class)

    # ── Upbit 行情 ────────────────────────────────────────

    async def get_markets(self) -> CacheResult:
        return await self.get(make_key(_MARKETS_NS, "upbit"), self._client.get_markets, "reference")

    async def get_tickers(self, markets: List[str]) -> Dict[str, Any]:
        """
        获取多个交易对的最新行情

        实时模式下推送数据按 tick 等级写入缓存，大部分请求直接命中；
        轮询模式下按 price 等级过期。
        """
        ttl_class = "tick" if self.streaming else "price"
        results = await asyncio.gather(
            *[self.get(ticker_key(m), self._ticker_fetcher(m), ttl_class) for m in markets],
            return_exceptions=True,
        )
        tickers, errors = [], {}
        degraded = False
        for market, result in zip(markets, results):
            if isinstance(result, BaseException):
                errors[market] = str(result)
                continue
            degraded = degraded or result.degraded
            tickers.append(result.value)
        return {
            "tickers": tickers,
            "degraded": degraded or bool(errors),
            "errors": errors,
            "mode": "streaming" if self.streaming else "polling",
        }

    def _ticker_fetcher(self, market: str) -> Callable[[], Any]:
        async def fetch():
            items = await self._client.get_tickers([market])
            if not items:
                raise LookupError(f"上游未返回行情: {market}")
            return items[0]

        return fetch

    async def get_candles(self, market: str, unit: int = 1, count: int = 30) -> CacheResult:
        key = make_key(_CANDLES_NS, market, str(unit), str(count))

        def fetch():
            return self._client.get_minute_candles(market, unit=unit, count=count)

        return await self.get(key, fetch, "price")

    # ── 状态 ──────────────────────────────────────────────

    def status(self) -> Dict[str, Any]:
        return {
            "mode": "streaming" if self.streaming else "polling",
            "limits": self._limiters.stats(),
            "cache": self._cache.stats(),
        }
