"""
行情数据路由
GET /api/market/markets              - 交易对列表（reference 等级缓存）
GET /api/market/tickers              - 最新行情（轮询 / 实时推送缓存）
GET /api/market/candles/{market}     - 分钟 K 线
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from acquisition_service.models.response import ApiResponse
from acquisition_service.routers.auth import get_current_user
from acquisition_service.services.auth_service import CurrentUser
from acquisition_service.services.runtime import AcquisitionRuntime, get_runtime

router = APIRouter(prefix="/api/market", tags=["行情数据"])


@router.get("/markets", response_model=ApiResponse)
async def get_markets(
    quote: Optional[str] = Query(default=None, description="计价币种过滤，如 KRW / BTC / USDT"),
    runtime: AcquisitionRuntime = Depends(get_runtime),
    user: CurrentUser = Depends(get_current_user),
):
    """获取交易对列表"""
    result = await runtime.facade.get_markets()
    markets = result.value
    if quote:
        markets = [m for m in markets if m.get("quote") == quote.upper()]
    return ApiResponse.ok(
        data={
            "count": len(markets),
            "markets": markets,
            "degraded": result.degraded,
            "fetched_at": result.fetched_at,
        },
        degraded=result.degraded,
    )


@router.get("/tickers", response_model=ApiResponse)
async def get_tickers(
    markets: Optional[str] = Query(
        default=None, description="逗号分隔的交易对，默认使用关注列表"
    ),
    runtime: AcquisitionRuntime = Depends(get_runtime),
    user: CurrentUser = Depends(get_current_user),
):
    """获取最新行情；部分交易对失败时返回 degraded"""
    codes = [m.strip().upper() for m in markets.split(",") if m.strip()] if markets else runtime.markets
    data = await runtime.facade.get_tickers(codes)
    if not data["tickers"] and data["errors"]:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=data["errors"])
    return ApiResponse.ok(data=data, degraded=data["degraded"])


@router.get("/candles/{market}", response_model=ApiResponse)
async def get_candles(
    market: str,
    unit: int = Query(default=1, description="分钟周期: 1 / 3 / 5 / 15 / 30 / 60 / 240"),
    count: int = Query(default=30, ge=1, le=200),
    runtime: AcquisitionRuntime = Depends(get_runtime),
    user: CurrentUser = Depends(get_current_user),
):
    """获取分钟 K 线"""
    result = await runtime.facade.get_candles(market.upper(), unit=unit, count=count)
    return ApiResponse.ok(
        data={
            "market": market.upper(),
            "unit": unit,
            "count": len(result.value),
            "candles": result.value,
            "degraded": result.degraded,
        },
        degraded=result.degraded,
    )
