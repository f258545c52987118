"""健康检查路由"""

import time

from fastapi import APIRouter, Depends

from acquisition_service import __version__
from acquisition_service.db import check_health
from acquisition_service.services.runtime import AcquisitionRuntime, get_runtime

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health(runtime: AcquisitionRuntime = Depends(get_runtime)):
    """服务健康检查：存储连接 + 当前行情获取模式"""
    db_health = await check_health()
    return {
        "success": True,
        "data": {
            "status": "ok",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "CryptoWise AcquisitionService",
            "databases": db_health,
            "mode": runtime.mode.status()["mode"],
            "stream": runtime.stream.status(),
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(runtime: AcquisitionRuntime = Depends(get_runtime)):
    """Kubernetes readiness probe"""
    return {"ready": runtime is not None}
