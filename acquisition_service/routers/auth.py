"""
用户认证路由
POST /api/auth/login       - 登录获取 JWT
POST /api/auth/register    - 注册新用户（管理员权限）
GET  /api/auth/me          - 当前用户（user_id 即会话状态归属）
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header, status
from pydantic import BaseModel, Field

from acquisition_service.models.response import ApiResponse
from acquisition_service.services.auth_service import AuthService, CurrentUser

router = APIRouter(prefix="/api/auth", tags=["认证"])

_auth = AuthService()


class Credentials(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1)


class RegisterRequest(Credentials):
    is_admin: bool = False


# ── 依赖注入 ──────────────────────────────────────────────

async def get_current_user(authorization: Optional[str] = Header(default=None)) -> CurrentUser:
    """解析 Authorization: Bearer <token>"""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="未提供认证令牌")
    user = _auth.verify_token(token)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="令牌无效或已过期")
    return user


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="需要管理员权限")
    return user


# ── 路由处理器 ────────────────────────────────────────────

@router.post("/login", response_model=ApiResponse)
async def login(body: Credentials):
    user = await _auth.authenticate(body.username, body.password)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="用户名或密码错误")
    return ApiResponse.ok(
        data={"access_token": _auth.create_access_token(user), "token_type": "bearer"},
        message="登录成功",
    )


@router.post("/register", response_model=ApiResponse)
async def register(body: RegisterRequest, admin: CurrentUser = Depends(require_admin)):
    if not await _auth.create_user(body.username, body.password, body.is_admin):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"用户名 '{body.username}' 已存在或用户存储不可用",
        )
    return ApiResponse.ok(message=f"用户 '{body.username}' 创建成功")


@router.get("/me", response_model=ApiResponse)
async def me(user: CurrentUser = Depends(get_current_user)):
    return ApiResponse.ok(data=user.model_dump())
