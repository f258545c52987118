"""
行情获取服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_mongo_host() -> str:
    """Docker 环境使用服务名 'mongodb'，本地使用 'localhost'"""
    return "mongodb" if _is_docker() else "localhost"


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


def _default_ttl_classes() -> Dict[str, int]:
    return {
        "reference": 24 * 60 * 60,  # 交易所市场列表
        "listing": 6 * 60 * 60,     # 币种列表
        "news": 30 * 60,            # 新闻
        "price": 60,                # 轮询行情
        "tick": 10,                 # 实时行情
    }


class AcquisitionSettings(BaseSettings):
    """行情获取服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── MongoDB 配置（远端状态存储，支持服务发现） ─────────
    MONGODB_HOST: str = Field(default_factory=_default_mongo_host)
    MONGODB_PORT: int = Field(default=27017)
    MONGODB_USERNAME: str = Field(default="")
    MONGODB_PASSWORD: str = Field(default="")
    MONGODB_DATABASE: str = Field(default="cryptowise")
    MONGODB_AUTH_SOURCE: str = Field(default="admin")
    MONGODB_ENABLED: bool = Field(default=True)
    MONGO_MAX_CONNECTIONS: int = Field(default=50)
    MONGO_MIN_CONNECTIONS: int = Field(default=5)
    MONGO_CONNECT_TIMEOUT_MS: int = Field(default=30000)
    MONGO_SOCKET_TIMEOUT_MS: int = Field(default=60000)
    MONGO_SERVER_SELECTION_TIMEOUT_MS: int = Field(default=5000)

    @property
    def MONGO_URI(self) -> str:
        if self.MONGODB_USERNAME and self.MONGODB_PASSWORD:
            return (
                f"mongodb://{self.MONGODB_USERNAME}:{self.MONGODB_PASSWORD}"
                f"@{self.MONGODB_HOST}:{self.MONGODB_PORT}"
                f"/{self.MONGODB_DATABASE}?authSource={self.MONGODB_AUTH_SOURCE}"
            )
        return f"mongodb://{self.MONGODB_HOST}:{self.MONGODB_PORT}/{self.MONGODB_DATABASE}"

    # ── Redis 配置（缓存镜像，支持服务发现） ───────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── JWT / 认证配置 ─────────────────────────────────────
    JWT_SECRET: str = Field(default="change-me-in-production")
    JWT_ALGORITHM: str = Field(default="HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=60)
    DEFAULT_ADMIN_USERNAME: str = Field(default="admin")
    DEFAULT_ADMIN_PASSWORD: str = Field(default="admin123")

    # ── 上游数据源 ─────────────────────────────────────────
    UPBIT_API_URL: str = Field(default="https://api.upbit.com/v1")
    UPBIT_WS_URL: str = Field(default="wss://api.upbit.com/websocket/v1")
    UPSTREAM_TIMEOUT: float = Field(default=10.0)   # 秒

    # ── 限流配置（滑动窗口） ───────────────────────────────
    UPBIT_RATE_LIMIT: int = Field(default=50)              # 每窗口最大请求数
    UPBIT_RATE_WINDOW_SECONDS: float = Field(default=60.0)
    COINGECKO_RATE_LIMIT: int = Field(default=30)
    COINGECKO_RATE_WINDOW_SECONDS: float = Field(default=60.0)

    # ── 缓存配置 ──────────────────────────────────────────
    CACHE_TTL_CLASSES: Dict[str, int] = Field(default_factory=_default_ttl_classes)
    CACHE_REDIS_MIRROR: bool = Field(default=True)   # 成功结果写入 Redis，重启后可预热
    CACHE_REDIS_RETENTION: int = Field(default=24 * 60 * 60)  # Redis 镜像保留时长（秒）

    # ── 模式切换配置 ───────────────────────────────────────
    MODE_VOLATILITY_THRESHOLD: float = Field(default=3.0)    # 波动率（%）
    MODE_VOLUME_SPIKE_THRESHOLD: float = Field(default=2.0)  # 成交量倍数
    MODE_REVERT_AFTER_SECONDS: float = Field(default=30 * 60)
    MODE_EVALUATION_INTERVAL_SECONDS: float = Field(default=60.0)
    MODE_AUTO_EVALUATE: bool = Field(default=True)
    MAJOR_EVENT_TTL_SECONDS: float = Field(default=30 * 60)  # 重大事件标记有效期

    # ── 行情快照 / 实时推送 ───────────────────────────────
    WATCHED_MARKETS: List[str] = Field(
        default_factory=lambda: ["KRW-BTC", "KRW-ETH", "KRW-XRP"]
    )
    SNAPSHOT_CANDLE_UNIT: int = Field(default=1)      # 分钟 K 线周期
    SNAPSHOT_CANDLE_COUNT: int = Field(default=30)

    # ── 会话状态持久化 ─────────────────────────────────────
    STATE_DIR: str = Field(default="./state")
    STATE_STALE_AFTER_SECONDS: int = Field(default=24 * 60 * 60)
    STATE_SCHEMA_VERSION: str = Field(default="1.0")

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")
    TZ: str = Field(default="Asia/Seoul")


@lru_cache
def get_settings() -> AcquisitionSettings:
    """获取全局配置（单例）"""
    return AcquisitionSettings()


settings = get_settings()
