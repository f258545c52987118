"""
模式层 – 轮询 / 实时推送模式控制器

状态机：
  POLLING   ──(触发条件成立 / 用户手动开启)──▶  STREAMING
  STREAMING ──(回退定时器到期 / 显式关闭)────▶  POLLING

触发条件按优先级评估：重大事件 > 高波动 > 成交量激增 > 手动开启，
只记录第一个成立的条件。实时模式期间再次评估不会延长定时器，
只有用户再次手动开启才会重新计时。
"""

import asyncio
import inspect
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from acquisition_service.exceptions import TransportActivationFailure

logger = logging.getLogger(__name__)


class AcquisitionMode(str, Enum):
    POLLING = "polling"
    STREAMING = "streaming"


class Trigger(str, Enum):
    MAJOR_EVENT = "major_news_event"
    HIGH_VOLATILITY = "high_volatility"
    VOLUME_SPIKE = "volume_spike"
    MANUAL = "user_manual_activation"


@dataclass
class MarketSnapshot:
    volatility: float = 0.0     # 波动率（%）
    volume_spike: float = 0.0   # 最新成交量 / 平均成交量
    major_event: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MarketSnapshot":
        """兼容 camelCase / snake_case 两种字段命名"""
        volume = data.get("volume_spike", data.get("volumeSpike", 0.0))
        event = data.get("major_event", data.get("majorEvent", False))
        return cls(
            volatility=float(data.get("volatility") or 0.0),
            volume_spike=float(volume or 0.0),
            major_event=bool(event),
        )


# ── 可取消的定时任务抽象 ──────────────────────────────────

class ScheduledHandle:
    def cancel(self) -> None:
        raise NotImplementedError


class Scheduler:
    """延迟执行回调，返回可取消的句柄；测试中可替换为手动推进的时钟"""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> ScheduledHandle:
        raise NotImplementedError

    def now(self) -> float:
        return time.time()


class LoopScheduler(Scheduler):
    """基于 asyncio 事件循环的默认实现"""

    def call_later(self, delay: float, callback: Callable[[], Any]):
        return asyncio.get_running_loop().call_later(delay, callback)


SnapshotProvider = Callable[[], Union[MarketSnapshot, Mapping[str, Any], Awaitable[Any]]]
ModeListener = Callable[[Dict[str, Any]], Any]


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


class ModeController:
    """行情获取模式控制器（每个进程一个实例）"""

    def __init__(
        self,
        snapshot_provider: SnapshotProvider,
        activate_hook: Callable[[], Awaitable[None]],
        deactivate_hook: Callable[[], None],
        volatility_threshold: float = 3.0,
        volume_spike_threshold: float = 2.0,
        revert_after: float = 30 * 60,
        scheduler: Optional[Scheduler] = None,
    ):
        self._snapshot_provider = snapshot_provider
        self._activate_hook = activate_hook
        self._deactivate_hook = deactivate_hook
        self.volatility_threshold = volatility_threshold
        self.volume_spike_threshold = volume_spike_threshold
        self.revert_after = revert_after
        self._scheduler = scheduler or LoopScheduler()

        self.mode = AcquisitionMode.POLLING
        self.active_trigger: Optional[Trigger] = None
        self.activated_at: Optional[float] = None
        self._reverts_at: Optional[float] = None
        self._timer: Optional[ScheduledHandle] = None
        self._transition = asyncio.Lock()
        self._listeners: List[ModeListener] = []
        self._loop_task: Optional[asyncio.Task] = None
        self.last_snapshot: Optional[MarketSnapshot] = None
        self.last_error: Optional[str] = None

    @property
    def is_streaming(self) -> bool:
        return self.mode is AcquisitionMode.STREAMING

    # ── 触发条件评估 ──────────────────────────────────────

    def select_trigger(self, snapshot: MarketSnapshot) -> Optional[Trigger]:
        if snapshot.major_event:
            return Trigger.MAJOR_EVENT
        if snapshot.volatility > self.volatility_threshold:
            return Trigger.HIGH_VOLATILITY
        if snapshot.volume_spike > self.volume_spike_threshold:
            return Trigger.VOLUME_SPIKE
        return None

    async def evaluate(self) -> Optional[Trigger]:
        """
        拉取一次行情快照并评估触发条件

        Returns:
            本轮成立的触发条件（无论是否发生了模式切换）
        """
        try:
            raw = await _maybe_await(self._snapshot_provider())
            snapshot = raw if isinstance(raw, MarketSnapshot) else MarketSnapshot.from_mapping(raw)
        except Exception as exc:
            logger.warning(f"行情快照获取失败，本轮不触发: {exc}")
            return None

        self.last_snapshot = snapshot
        trigger = self.select_trigger(snapshot)
        if trigger is None:
            return None
        if self.is_streaming:
            logger.debug(f"已处于实时模式，忽略触发条件: {trigger.value}")
            return trigger
        await self._switch_to_streaming(trigger)
        return trigger

    # ── 状态切换 ──────────────────────────────────────────

    async def activate(self, trigger: Trigger = Trigger.MANUAL) -> Dict[str, Any]:
        """用户手动开启实时模式；已处于实时模式时重建断开的连接并重新计时"""
        if self.is_streaming and trigger is Trigger.MANUAL:
            async with self._transition:
                if self.is_streaming:
                    # 推送连接可能已断开，钩子需幂等：已连接时直接返回
                    try:
                        await _maybe_await(self._activate_hook())
                    except Exception as exc:
                        self.last_error = str(exc)
                        logger.error(f"❌ 实时连接重建失败，回到轮询: {exc}")
                        self.deactivate(reason="activation_failed")
                        raise TransportActivationFailure(trigger.value, str(exc)) from exc
                    self.active_trigger = Trigger.MANUAL
                    self._arm_timer()
                    logger.info("🔁 用户重新开启实时模式，回退定时器已重置")
                    self._notify()
                    return self.status()
        await self._switch_to_streaming(trigger)
        return self.status()

    async def _switch_to_streaming(self, trigger: Trigger) -> None:
        async with self._transition:
            if self.is_streaming:
                return
            try:
                await _maybe_await(self._activate_hook())
            except Exception as exc:
                self.last_error = str(exc)
                logger.error(f"❌ 实时模式启动失败（触发条件：{trigger.value}），保持轮询: {exc}")
                raise TransportActivationFailure(trigger.value, str(exc)) from exc
            self.mode = AcquisitionMode.STREAMING
            self.active_trigger = trigger
            self.activated_at = self._scheduler.now()
            self.last_error = None
            self._arm_timer()
            logger.info(f"🚀 实时模式已开启: {trigger.value}，{self.revert_after:.0f}s 后自动回退")
        self._notify()

    def deactivate(self, reason: str = "manual") -> Dict[str, Any]:
        """关闭实时模式，回到轮询"""
        if not self.is_streaming:
            return self.status()
        self._disarm_timer()
        try:
            self._deactivate_hook()
        except Exception as exc:
            logger.warning(f"实时连接关闭异常（已忽略）: {exc}")
        self.mode = AcquisitionMode.POLLING
        self.active_trigger = None
        self.activated_at = None
        logger.info(f"🕐 回到轮询模式（原因：{reason}）")
        self._notify()
        return self.status()

    def _arm_timer(self) -> None:
        self._disarm_timer()
        self._reverts_at = self._scheduler.now() + self.revert_after
        self._timer = self._scheduler.call_later(self.revert_after, self._on_revert_timeout)

    def _disarm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._reverts_at = None

    def _on_revert_timeout(self) -> None:
        self._timer = None
        self.deactivate(reason="timeout")

    # ── 订阅 ──────────────────────────────────────────────

    def subscribe(self, listener: ModeListener) -> Callable[[], None]:
        """订阅模式切换通知，返回取消订阅函数"""
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    def _notify(self) -> None:
        status = self.status()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as exc:
                logger.warning(f"模式监听器异常: {exc}")

    # ── 周期评估 ──────────────────────────────────────────

    def start(self, interval: float) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._run(interval))
            logger.info(f"模式评估任务已启动，间隔 {interval:.0f}s")

    async def _run(self, interval: float) -> None:
        while True:
            try:
                await self.evaluate()
            except TransportActivationFailure:
                pass  # 已记录，下一轮再尝试
            except Exception as exc:
                logger.error(f"模式评估异常: {exc}", exc_info=True)
            await asyncio.sleep(interval)

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        self.deactivate(reason="shutdown")

    def status(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "active_trigger": self.active_trigger.value if self.active_trigger else None,
            "activated_at": self.activated_at,
            "revert_after": self.revert_after,
            "reverts_at": self._reverts_at,
            "thresholds": {
                "volatility": self.volatility_threshold,
                "volume_spike": self.volume_spike_threshold,
            },
            "last_snapshot": asdict(self.last_snapshot) if self.last_snapshot else None,
            "last_error": self.last_error,
        }
