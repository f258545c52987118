"""
缓存与限流路由
GET  /api/cache/stats     - 缓存统计
POST /api/cache/clear     - 清理缓存（单个键或全部）
GET  /api/cache/limits    - 各上游限流器状态
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from acquisition_service.models.response import ApiResponse
from acquisition_service.routers.auth import get_current_user, require_admin
from acquisition_service.services.auth_service import CurrentUser
from acquisition_service.services.runtime import AcquisitionRuntime, get_runtime

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


class ClearRequest(BaseModel):
    key: Optional[str] = None


@router.get("/stats", response_model=ApiResponse)
async def cache_stats(
    runtime: AcquisitionRuntime = Depends(get_runtime),
    user: CurrentUser = Depends(get_current_user),
):
    """获取缓存统计信息"""
    return ApiResponse.ok(data={
        "ttl_classes": runtime.cache.ttl_classes,
        **runtime.cache.stats(),
    })


@router.post("/clear", response_model=ApiResponse)
async def clear_cache(
    body: ClearRequest,
    runtime: AcquisitionRuntime = Depends(get_runtime),
    admin: CurrentUser = Depends(require_admin),
):
    """显式失效缓存；不传 key 时清理全部"""
    removed = await runtime.cache.clear(body.key)
    return ApiResponse.ok(
        data={"removed": removed},
        message=f"缓存已清理: {body.key or '全部'}",
    )


@router.get("/limits", response_model=ApiResponse)
async def rate_limits(
    runtime: AcquisitionRuntime = Depends(get_runtime),
    user: CurrentUser = Depends(get_current_user),
):
    """获取各上游数据源的限流窗口状态"""
    return ApiResponse.ok(data=runtime.limiters.stats())
