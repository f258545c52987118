"""
CryptoWise 行情获取服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn acquisition_service.main:app --host 0.0.0.0 --port 8002
    python -m acquisition_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from acquisition_service import __version__
from acquisition_service.config import settings
from acquisition_service.db import init_mongodb, init_redis, close_connections
from acquisition_service.exceptions import TransportActivationFailure, UpstreamFailure
from acquisition_service.models.response import ApiResponse
from acquisition_service.routers import health, auth, market, cache, mode, state
from acquisition_service.services.runtime import build_runtime

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 CryptoWise AcquisitionService v{__version__} 启动中")
    logger.info(f"   Upbit     : {settings.UPBIT_API_URL}")
    logger.info(f"   MongoDB   : {settings.MONGODB_HOST}:{settings.MONGODB_PORT}")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(f"   关注交易对: {', '.join(settings.WATCHED_MARKETS)}")
    logger.info("=" * 60)

    # 存储连接失败不阻断启动，降级运行
    mongo_ok = await init_mongodb()
    redis_ok = await init_redis()

    if mongo_ok and redis_ok:
        logger.info("✅ 所有存储连接就绪")
    elif mongo_ok:
        logger.warning("⚠️ Redis 不可用，缓存仅保存在进程内存")
    elif redis_ok:
        logger.warning("⚠️ MongoDB 不可用，会话状态仅保存在本地")
    else:
        logger.warning("⚠️ 存储均不可用，降级为内存缓存 + 本地状态文件")

    runtime = build_runtime()
    app.state.runtime = runtime
    if settings.MODE_AUTO_EVALUATE:
        runtime.mode.start(settings.MODE_EVALUATION_INTERVAL_SECONDS)

    yield

    logger.info("🔄 行情获取服务正在关闭...")
    await runtime.mode.stop()
    await close_connections()
    logger.info("✅ 行情获取服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="CryptoWise 行情获取服务",
    description=(
        "加密货币行情获取微服务，提供以下功能：\n"
        "- ⏳ 上游数据源滑动窗口限流（Upbit / CoinGecko）\n"
        "- 🗄️ 分级 TTL 缓存（内存 → Redis 镜像），失败时返回旧数据并标记 degraded\n"
        "- ⚡ 轮询 / 实时推送自动切换（波动率 / 成交量 / 重大事件）\n"
        "- 💾 会话状态本地优先 + 远端备份\n"
        "- 🔐 用户认证（JWT）\n\n"
        "**分层架构**\n"
        "```\n"
        "Rate Limiter       ← 每个上游一个滑动窗口\n"
        "Tiered Cache       ← TTL 等级 + 单飞刷新 + 旧数据兜底\n"
        "Mode Controller    ← 轮询 / 实时推送状态机\n"
        "State Persistence  ← 本地文件 + MongoDB\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 异常处理 ──────────────────────────────────────────────
@app.exception_handler(UpstreamFailure)
async def upstream_failure_handler(request: Request, exc: UpstreamFailure):
    logger.warning(f"上游获取失败且无缓存可用: {exc}")
    return JSONResponse(
        status_code=502,
        content=ApiResponse.fail(error="上游数据源不可用", message=str(exc)).model_dump(),
    )


@app.exception_handler(TransportActivationFailure)
async def activation_failure_handler(request: Request, exc: TransportActivationFailure):
    return JSONResponse(
        status_code=503,
        content=ApiResponse.fail(error="实时模式不可用", message=str(exc)).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ApiResponse.fail(error="内部服务错误", message=str(exc)).model_dump(),
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(market.router)
app.include_router(cache.router)
app.include_router(mode.router)
app.include_router(state.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "CryptoWise AcquisitionService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "acquisition_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
