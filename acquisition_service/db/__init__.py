"""
存储连接管理模块
MongoDB（异步，远端会话状态）与 Redis（异步，缓存镜像）连接的生命周期
两者均为可选：连接失败时服务以降级模式继续运行
"""

import logging
import time
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from redis.asyncio import ConnectionPool, Redis

from acquisition_service.config import settings

logger = logging.getLogger(__name__)

STATE_COLLECTION = "trading_states"
USERS_COLLECTION = "users"

# ── 全局连接实例 ─────────────────────────────────────────
_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None
_redis_client: Optional[Redis] = None
_redis_pool: Optional[ConnectionPool] = None


async def init_mongodb() -> bool:
    """初始化 MongoDB 连接并确保状态集合索引，返回是否成功"""
    global _mongo_client, _mongo_db
    if not settings.MONGODB_ENABLED:
        logger.info("MongoDB 未启用，会话状态仅保存在本地")
        return False
    try:
        _mongo_client = AsyncIOMotorClient(
            settings.MONGO_URI,
            maxPoolSize=settings.MONGO_MAX_CONNECTIONS,
            minPoolSize=settings.MONGO_MIN_CONNECTIONS,
            serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
            connectTimeoutMS=settings.MONGO_CONNECT_TIMEOUT_MS,
            socketTimeoutMS=settings.MONGO_SOCKET_TIMEOUT_MS,
        )
        await _mongo_client.admin.command("ping")
        _mongo_db = _mongo_client[settings.MONGODB_DATABASE]
        await _mongo_db[STATE_COLLECTION].create_index("user_id", unique=True)
        await _mongo_db[USERS_COLLECTION].create_index("username", unique=True)
        logger.info(f"✅ MongoDB 连接成功: {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
        return True
    except Exception as exc:
        logger.warning(f"⚠️ MongoDB 连接失败（远端状态备份不可用）: {exc}")
        if _mongo_client is not None:
            _mongo_client.close()
        _mongo_client = None
        _mongo_db = None
        return False


async def init_redis() -> bool:
    """初始化 Redis 连接，返回是否成功"""
    global _redis_client, _redis_pool
    if not settings.REDIS_ENABLED:
        logger.info("Redis 未启用，缓存仅保存在进程内存")
        return False
    try:
        _redis_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=10,
        )
        _redis_client = Redis(connection_pool=_redis_pool)
        await _redis_client.ping()
        logger.info(f"✅ Redis 连接成功: {settings.REDIS_HOST}:{settings.REDIS_PORT}")
        return True
    except Exception as exc:
        logger.warning(f"⚠️ Redis 连接失败（缓存镜像不可用）: {exc}")
        _redis_client = None
        _redis_pool = None
        return False


async def close_connections():
    """关闭所有存储连接"""
    global _mongo_client, _mongo_db, _redis_client, _redis_pool
    if _mongo_client:
        _mongo_client.close()
        _mongo_client = None
        _mongo_db = None
        logger.info("MongoDB 连接已关闭")
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None
        logger.info("Redis 连接已关闭")


def get_mongo_db() -> Optional[AsyncIOMotorDatabase]:
    """获取 MongoDB 数据库实例（可能为 None）"""
    return _mongo_db


def get_redis() -> Optional[Redis]:
    """获取 Redis 客户端（可能为 None）"""
    return _redis_client


async def _mongo_health() -> dict:
    if _mongo_db is None:
        return {"status": "disconnected" if settings.MONGODB_ENABLED else "disabled"}
    try:
        await _mongo_client.admin.command("ping")
        stored = await _mongo_db[STATE_COLLECTION].estimated_document_count()
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}
    return {"status": "healthy", "stored_states": stored}


async def _redis_health() -> dict:
    if _redis_client is None:
        return {"status": "disconnected" if settings.REDIS_ENABLED else "disabled"}
    start = time.perf_counter()
    try:
        await _redis_client.ping()
    except Exception as exc:
        return {"status": "unhealthy", "error": str(exc)}
    return {"status": "healthy", "latency_ms": round((time.perf_counter() - start) * 1000, 2)}


async def check_health() -> dict:
    """
    存储健康状态

    mongodb 承担远端会话状态备份，redis 承担缓存镜像；
    任一不可用时服务仍可运行，对应能力降级。
    """
    mongo = await _mongo_health()
    redis = await _redis_health()
    return {
        "remote_state": {"backend": "mongodb", "collection": STATE_COLLECTION, **mongo},
        "cache_mirror": {"backend": "redis", **redis},
        "degraded": mongo["status"] != "healthy" or redis["status"] != "healthy",
    }
