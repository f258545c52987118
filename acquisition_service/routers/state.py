"""
会话状态路由
PUT /api/state    - 保存当前用户的会话状态（本地 + 远端）
GET /api/state    - 恢复当前用户的会话状态
"""

from fastapi import APIRouter, Depends, HTTPException, status

from acquisition_service.models.response import ApiResponse
from acquisition_service.models.state import SaveStateRequest
from acquisition_service.routers.auth import get_current_user
from acquisition_service.services.auth_service import CurrentUser
from acquisition_service.services.runtime import AcquisitionRuntime, get_runtime

router = APIRouter(prefix="/api/state", tags=["会话状态"])


@router.put("", response_model=ApiResponse)
async def save_state(
    body: SaveStateRequest,
    runtime: AcquisitionRuntime = Depends(get_runtime),
    user: CurrentUser = Depends(get_current_user),
):
    """保存会话状态；任一副本写入成功即视为成功"""
    result = await runtime.persistence.save(user.user_id, body.model_dump())
    if not (result["local"] or result["remote"]):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="本地与远端存储均不可用",
        )
    return ApiResponse.ok(data=result, message="会话状态已保存")


@router.get("", response_model=ApiResponse)
async def restore_state(
    runtime: AcquisitionRuntime = Depends(get_runtime),
    user: CurrentUser = Depends(get_current_user),
):
    """恢复会话状态；没有可用副本时 data 为 null"""
    state = await runtime.persistence.restore(user.user_id)
    if state is None:
        return ApiResponse.ok(data=None, message="没有可恢复的会话状态")
    return ApiResponse.ok(data=state.model_dump(), message="会话状态已恢复")
