"""
行情获取模式路由
GET  /api/mode              - 当前模式与触发信息
POST /api/mode/activate     - 手动开启实时模式（已开启时重置回退计时）
POST /api/mode/deactivate   - 手动回到轮询模式
POST /api/mode/events       - 标记重大事件并立即评估
"""

from fastapi import APIRouter, Depends

from acquisition_service.models.response import ApiResponse
from acquisition_service.models.state import MajorEventRequest
from acquisition_service.routers.auth import get_current_user, require_admin
from acquisition_service.services.auth_service import CurrentUser
from acquisition_service.services.runtime import AcquisitionRuntime, get_runtime

router = APIRouter(prefix="/api/mode", tags=["获取模式"])


@router.get("", response_model=ApiResponse)
async def get_mode(
    runtime: AcquisitionRuntime = Depends(get_runtime),
    user: CurrentUser = Depends(get_current_user),
):
    """当前获取模式、限流与缓存概况"""
    return ApiResponse.ok(data=runtime.status())


@router.post("/activate", response_model=ApiResponse)
async def activate(
    runtime: AcquisitionRuntime = Depends(get_runtime),
    user: CurrentUser = Depends(get_current_user),
):
    """用户手动开启实时模式"""
    data = await runtime.mode.activate()
    return ApiResponse.ok(data=data, message="实时模式已开启")


@router.post("/deactivate", response_model=ApiResponse)
async def deactivate(
    runtime: AcquisitionRuntime = Depends(get_runtime),
    user: CurrentUser = Depends(get_current_user),
):
    """手动回到轮询模式"""
    return ApiResponse.ok(data=runtime.mode.deactivate(), message="已回到轮询模式")


@router.post("/events", response_model=ApiResponse)
async def flag_major_event(
    body: MajorEventRequest,
    runtime: AcquisitionRuntime = Depends(get_runtime),
    admin: CurrentUser = Depends(require_admin),
):
    """标记重大新闻事件并立即评估一次"""
    event = runtime.snapshots.flag_major_event(body.title, body.ttl_seconds)
    trigger = await runtime.mode.evaluate()
    return ApiResponse.ok(
        data={
            "event": event,
            "trigger": trigger.value if trigger else None,
            "mode": runtime.mode.status()["mode"],
        },
        message="重大事件已标记",
    )
