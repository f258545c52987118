"""
认证服务
JWT 无状态认证；令牌 sub 即会话状态的 user_id，adm 标记管理员。
用户存储在 MongoDB users 集合，MongoDB 不可用时只允许配置中的默认管理员登录。
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import BaseModel

from acquisition_service.config import settings
from acquisition_service.db import USERS_COLLECTION, get_mongo_db

logger = logging.getLogger(__name__)

_PBKDF2_ROUNDS = 120_000


class TokenPayload(BaseModel):
    sub: str
    exp: int
    adm: bool = False


class CurrentUser(BaseModel):
    user_id: str
    is_admin: bool = False


def hash_password(password: str, salt: str) -> str:
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _PBKDF2_ROUNDS)
    return digest.hex()


class AuthService:
    """用户认证服务"""

    # ── Token ─────────────────────────────────────────────

    @staticmethod
    def create_access_token(user: CurrentUser) -> str:
        expire = datetime.now(tz=timezone.utc) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )
        payload = {"sub": user.user_id, "exp": expire, "adm": user.is_admin}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Optional[CurrentUser]:
        try:
            payload = TokenPayload(
                **jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
            )
        except jwt.ExpiredSignatureError:
            logger.debug("Token 已过期")
            return None
        except (jwt.InvalidTokenError, TypeError, ValueError) as exc:
            logger.debug(f"Token 无效: {exc}")
            return None
        return CurrentUser(user_id=payload.sub, is_admin=payload.adm)

    # ── 用户管理 ──────────────────────────────────────────

    async def authenticate(self, username: str, password: str) -> Optional[CurrentUser]:
        """验证用户名密码"""
        db = get_mongo_db()
        if db is not None:
            try:
                user = await db[USERS_COLLECTION].find_one({"username": username})
            except Exception as exc:
                logger.warning(f"数据库认证失败，降级到默认账号: {exc}")
                user = None
            if user and hmac.compare_digest(
                user.get("password_hash", ""), hash_password(password, user.get("salt", ""))
            ):
                return CurrentUser(user_id=user["username"], is_admin=user.get("is_admin", False))

        if hmac.compare_digest(
            username.encode(), settings.DEFAULT_ADMIN_USERNAME.encode()
        ) and hmac.compare_digest(password.encode(), settings.DEFAULT_ADMIN_PASSWORD.encode()):
            return CurrentUser(user_id=username, is_admin=True)
        return None

    async def create_user(self, username: str, password: str, is_admin: bool = False) -> bool:
        """创建用户，用户名已存在或 MongoDB 不可用时返回 False"""
        db = get_mongo_db()
        if db is None:
            logger.warning("MongoDB 不可用，无法创建用户")
            return False
        salt = secrets.token_hex(16)
        try:
            if await db[USERS_COLLECTION].find_one({"username": username}):
                return False
            await db[USERS_COLLECTION].insert_one({
                "username": username,
                "salt": salt,
                "password_hash": hash_password(password, salt),
                "is_admin": is_admin,
                "created_at": datetime.now(tz=timezone.utc),
            })
        except Exception as exc:
            logger.error(f"创建用户失败: {exc}")
            return False
        logger.info(f"用户已创建: {username}（管理员: {is_admin}）")
        return True
