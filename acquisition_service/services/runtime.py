"""
服务运行时容器
启动时构建一次，挂载到 app.state，路由通过依赖注入获取，
替代各模块自行维护的全局单例。
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from fastapi import Request

from acquisition_service.config import AcquisitionSettings, settings as default_settings
from acquisition_service.db import get_mongo_db, get_redis
from acquisition_service.layers.acquisition import UpbitClient
from acquisition_service.layers.cache import TieredCache
from acquisition_service.layers.mode import ModeController, Scheduler
from acquisition_service.layers.persistence import FileLocalStore, MongoRemoteStore, StatePersistence
from acquisition_service.layers.rate_limiter import RateLimiterRegistry
from acquisition_service.services.acquisition_service import AcquisitionFacade
from acquisition_service.services.snapshot_service import MarketSnapshotService
from acquisition_service.services.streaming_service import UpbitTickerStream

logger = logging.getLogger(__name__)


@dataclass
class AcquisitionRuntime:
    limiters: RateLimiterRegistry
    cache: TieredCache
    facade: AcquisitionFacade
    snapshots: MarketSnapshotService
    stream: UpbitTickerStream
    mode: ModeController
    persistence: StatePersistence
    markets: List[str] = field(default_factory=list)

    def status(self) -> dict:
        return {
            **self.facade.status(),
            "mode": self.mode.status(),
            "stream": self.stream.status(),
            "major_event": self.snapshots.major_event(),
        }


def build_runtime(
    cfg: Optional[AcquisitionSettings] = None,
    client: Optional[UpbitClient] = None,
    scheduler: Optional[Scheduler] = None,
    connect: Optional[Callable[..., Any]] = None,
) -> AcquisitionRuntime:
    cfg = cfg or default_settings

    limiters = RateLimiterRegistry({
        "upbit": (cfg.UPBIT_RATE_LIMIT, cfg.UPBIT_RATE_WINDOW_SECONDS),
        "coingecko": (cfg.COINGECKO_RATE_LIMIT, cfg.COINGECKO_RATE_WINDOW_SECONDS),
    })
    cache = TieredCache(
        cfg.CACHE_TTL_CLASSES,
        redis_getter=get_redis if cfg.CACHE_REDIS_MIRROR else None,
        redis_retention=cfg.CACHE_REDIS_RETENTION,
    )
    facade = AcquisitionFacade(cache, limiters, client=client or UpbitClient(cfg.UPBIT_API_URL, cfg.UPSTREAM_TIMEOUT))
    snapshots = MarketSnapshotService(
        facade,
        cfg.WATCHED_MARKETS,
        candle_unit=cfg.SNAPSHOT_CANDLE_UNIT,
        candle_count=cfg.SNAPSHOT_CANDLE_COUNT,
        event_ttl=cfg.MAJOR_EVENT_TTL_SECONDS,
    )
    stream = UpbitTickerStream(facade, cfg.WATCHED_MARKETS, ws_url=cfg.UPBIT_WS_URL, connect=connect)
    mode = ModeController(
        snapshot_provider=snapshots,
        activate_hook=stream.activate,
        deactivate_hook=stream.deactivate,
        volatility_threshold=cfg.MODE_VOLATILITY_THRESHOLD,
        volume_spike_threshold=cfg.MODE_VOLUME_SPIKE_THRESHOLD,
        revert_after=cfg.MODE_REVERT_AFTER_SECONDS,
        scheduler=scheduler,
    )
    facade.attach_mode(mode)
    stream.on_lost = lambda: mode.deactivate(reason="stream_lost")
    persistence = StatePersistence(
        FileLocalStore(cfg.STATE_DIR),
        MongoRemoteStore(get_mongo_db),
        stale_after=cfg.STATE_STALE_AFTER_SECONDS,
        schema_version=cfg.STATE_SCHEMA_VERSION,
    )
    logger.info(
        f"运行时已构建：限流 upbit={cfg.UPBIT_RATE_LIMIT}/{cfg.UPBIT_RATE_WINDOW_SECONDS:.0f}s，"
        f"关注交易对 {len(cfg.WATCHED_MARKETS)} 个"
    )
    return AcquisitionRuntime(
        limiters=limiters,
        cache=cache,
        facade=facade,
        snapshots=snapshots,
        stream=stream,
        mode=mode,
        persistence=persistence,
        markets=list(cfg.WATCHED_MARKETS),
    )


def get_runtime(request: Request) -> AcquisitionRuntime:
    """FastAPI 依赖：获取当前应用的运行时容器"""
    return request.app.state.runtime
