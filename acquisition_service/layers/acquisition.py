"""
数据获取层 – 上游行情接口
封装 Upbit REST 接口（市场列表 / 实时行情 / 分钟 K 线），
只负责发起请求与字段规范化，限流与缓存由上层组合。
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from acquisition_service.config import settings

logger = logging.getLogger(__name__)


class UpbitClient:
    """Upbit 公共行情接口（无需 API Key）"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = (base_url or settings.UPBIT_API_URL).rstrip("/")
        self._timeout = timeout or settings.UPSTREAM_TIMEOUT
        self._transport = transport

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        ) as client:
            response = await client.get(path, params=params)
            response.raise_for_status()
            return response.json()

    # ── 市场列表 ──────────────────────────────────────────

    async def get_markets(self) -> List[Dict[str, Any]]:
        """获取全部交易对"""
        data = await self._get("/market/all", params={"isDetails": "false"})
        markets = [
            {
                "market": item.get("market", ""),
                "korean_name": item.get("korean_name", ""),
                "english_name": item.get("english_name", ""),
                "quote": item.get("market", "").split("-")[0],
            }
            for item in data
        ]
        logger.info(f"市场列表获取成功（来源：upbit），共 {len(markets)} 条")
        return markets

    # ── 实时行情 ──────────────────────────────────────────

    async def get_tickers(self, markets: List[str]) -> List[Dict[str, Any]]:
        if not markets:
            return []
        data = await self._get("/ticker", params={"markets": ",".join(markets)})
        return [normalize_ticker(item) for item in data]

    # ── 分钟 K 线 ─────────────────────────────────────────

    async def get_minute_candles(
        self, market: str, unit: int = 1, count: int = 30
    ) -> List[Dict[str, Any]]:
        data = await self._get(
            f"/candles/minutes/{unit}",
            params={"market": market, "count": count},
        )
        records = []
        for item in data:
            try:
                records.append({
                    "timestamp": item.get("candle_date_time_utc", ""),
                    "open": float(item.get("opening_price", 0)),
                    "high": float(item.get("high_price", 0)),
                    "low": float(item.get("low_price", 0)),
                    "close": float(item.get("trade_price", 0)),
                    "volume": float(item.get("candle_acc_trade_volume", 0)),
                })
            except (TypeError, ValueError):
                continue
        return records


def normalize_ticker(item: Dict[str, Any]) -> Dict[str, Any]:
    """REST 与 WebSocket 两种行情格式统一为同一结构"""
    market = item.get("market") or item.get("code") or ""
    return {
        "market": market,
        "trade_price": float(item.get("trade_price") or 0),
        "change_rate": float(item.get("signed_change_rate") or 0) * 100,
        "acc_trade_volume_24h": float(item.get("acc_trade_volume_24h") or 0),
        "acc_trade_price_24h": float(item.get("acc_trade_price_24h") or 0),
        "timestamp": item.get("timestamp"),
    }
