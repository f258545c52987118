"""
行情快照服务
为模式控制器提供 {volatility, volume_spike, major_event} 快照：
波动率与成交量倍数取关注交易对中的最大值，重大事件由外部标记且带有效期。
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from acquisition_service.layers.mode import MarketSnapshot
from acquisition_service.layers.processing import ProcessingLayer
from acquisition_service.services.acquisition_service import AcquisitionFacade

logger = logging.getLogger(__name__)


class MarketSnapshotService:
    def __init__(
        self,
        facade: AcquisitionFacade,
        markets: List[str],
        candle_unit: int = 1,
        candle_count: int = 30,
        event_ttl: float = 30 * 60,
        processing: Optional[ProcessingLayer] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._facade = facade
        self._markets = list(markets)
        self._candle_unit = candle_unit
        self._candle_count = candle_count
        self._event_ttl = event_ttl
        self._proc = processing or ProcessingLayer()
        self._clock = clock
        self._event_title: Optional[str] = None
        self._event_expires_at = 0.0

    # ── 重大事件标记 ──────────────────────────────────────

    def flag_major_event(self, title: str, ttl: Optional[float] = None) -> dict:
        self._event_title = title
        self._event_expires_at = self._clock() + (ttl if ttl is not None else self._event_ttl)
        logger.info(f"📰 重大事件已标记: {title}")
        return self.major_event()

    def major_event(self) -> dict:
        active = self._event_title is not None and self._clock() < self._event_expires_at
        return {
            "active": active,
            "title": self._event_title if active else None,
            "expires_at": self._event_expires_at if active else None,
        }

    # ── 快照 ──────────────────────────────────────────────

    async def __call__(self) -> MarketSnapshot:
        results = await asyncio.gather(
            *[
                self._facade.get_candles(m, unit=self._candle_unit, count=self._candle_count)
                for m in self._markets
            ],
            return_exceptions=True,
        )
        volatility, volume_spike = 0.0, 0.0
        for market, result in zip(self._markets, results):
            if isinstance(result, BaseException):
                logger.warning(f"K 线获取失败（{market}）: {result}")
                continue
            if result.degraded:
                # 旧数据不参与触发判断
                continue
            metrics = self._proc.snapshot_metrics(result.value)
            volatility = max(volatility, metrics["volatility"])
            volume_spike = max(volume_spike, metrics["volume_spike"])
        return MarketSnapshot(
            volatility=volatility,
            volume_spike=volume_spike,
            major_event=self.major_event()["active"],
        )
