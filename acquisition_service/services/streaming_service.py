"""
实时推送服务
实时模式下连接 Upbit WebSocket，把推送的 ticker 写入缓存，
与轮询路径使用同一套缓存键。
"""

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, List, Optional, Set

import websockets

from acquisition_service.config import settings
from acquisition_service.layers.acquisition import normalize_ticker
from acquisition_service.services.acquisition_service import AcquisitionFacade, ticker_key

logger = logging.getLogger(__name__)

_CONNECT_TIMEOUT = 10.0
_RECONNECT_STEP = 2.0        # 每次重连延迟递增 2s
_RECONNECT_MAX_DELAY = 10.0


class UpbitTickerStream:
    """ModeController 的 activate / deactivate 钩子实现"""

    def __init__(
        self,
        facade: AcquisitionFacade,
        markets: List[str],
        ws_url: Optional[str] = None,
        connect: Optional[Callable[..., Any]] = None,
        max_reconnect_attempts: int = 5,
        on_lost: Optional[Callable[[], Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._facade = facade
        self._markets = list(markets)
        self._url = ws_url or settings.UPBIT_WS_URL
        self._connect = connect or websockets.connect
        self.max_reconnect_attempts = max_reconnect_attempts
        self.on_lost = on_lost
        self._sleep = sleep
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._closing: Set[asyncio.Future] = set()
        self.messages = 0
        self.reconnects = 0
        self.last_message_at: Optional[float] = None

    @property
    def connected(self) -> bool:
        return self._task is not None and not self._task.done()

    async def activate(self) -> None:
        """建立连接并订阅 ticker；失败时抛出异常，由模式控制器保持轮询"""
        if self.connected:
            return
        ws = await self._open()
        self._ws = ws
        self._task = asyncio.create_task(self._run(ws))
        logger.info(f"✅ Upbit 实时连接已建立，订阅 {len(self._markets)} 个交易对")

    def deactivate(self) -> None:
        task, ws = self._task, self._ws
        self._task = None
        self._ws = None
        if task is not None:
            task.cancel()
        if ws is not None:
            # 读取任务可能尚未开始运行，连接需在这里显式关闭
            closing = asyncio.ensure_future(ws.close())
            self._closing.add(closing)
            closing.add_done_callback(self._on_closed)
        logger.info("Upbit 实时连接已关闭")

    def _on_closed(self, future: asyncio.Future) -> None:
        self._closing.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.debug(f"关闭 WebSocket 失败: {future.exception()}")

    async def _open(self):
        ws = await asyncio.wait_for(
            self._connect(self._url, ping_interval=20, ping_timeout=20),
            timeout=_CONNECT_TIMEOUT,
        )
        try:
            await ws.send(json.dumps([
                {"ticket": str(uuid.uuid4())},
                {"type": "ticker", "codes": self._markets},
                {"format": "DEFAULT"},
            ]))
        except Exception:
            await ws.close()
            raise
        return ws

    async def _run(self, ws) -> None:
        """读取推送；连接中断后按 2s、4s … 10s 递增延迟重连，超过次数后放弃"""
        attempts = 0
        while True:
            if await self._pump(ws):
                attempts = 0
            ws = None
            while ws is None:
                attempts += 1
                if attempts > self.max_reconnect_attempts:
                    logger.error(f"❌ Upbit 实时连接重连 {self.max_reconnect_attempts} 次失败，行情回到轮询缓存")
                    self._task = None
                    if self.on_lost is not None:
                        self.on_lost()
                    return
                delay = min(attempts * _RECONNECT_STEP, _RECONNECT_MAX_DELAY)
                logger.warning(f"🔄 {delay:.0f}s 后重连 Upbit（{attempts}/{self.max_reconnect_attempts}）")
                await self._sleep(delay)
                try:
                    ws = await self._open()
                except Exception as exc:
                    logger.warning(f"Upbit 重连失败: {exc}")
            self._ws = ws
            self.reconnects += 1
            logger.info("✅ Upbit 实时连接已恢复")

    async def _pump(self, ws) -> bool:
        """读取单个连接直到关闭，返回是否收到过有效推送"""
        received = False
        try:
            async for message in ws:
                try:
                    ticker = normalize_ticker(json.loads(message))
                except (TypeError, ValueError) as exc:
                    logger.debug(f"无法解析的推送消息: {exc}")
                    continue
                if not ticker["market"]:
                    continue
                self._facade.ingest(ticker_key(ticker["market"]), ticker, "tick")
                self.messages += 1
                self.last_message_at = time.time()
                received = True
            logger.warning("Upbit 实时连接被服务端关闭")
        except Exception as exc:
            logger.warning(f"Upbit 实时连接异常中断: {exc}")
        finally:
            if self._ws is ws:
                self._ws = None
            await ws.close()
        return received

    def status(self) -> dict:
        return {
            "connected": self.connected,
            "markets": self._markets,
            "messages": self.messages,
            "reconnects": self.reconnects,
            "last_message_at": self.last_message_at,
        }
