"""
模式控制器单元测试

使用手动推进的调度器模拟时间流逝：
  - 触发条件优先级
  - 轮询 → 实时推送 → 定时回退
  - 实时模式下不延长定时器，手动开启重新计时
  - 推送连接启动失败时保持轮询
  - 订阅 / 取消订阅
"""

import asyncio
import os
import sys

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from acquisition_service.exceptions import TransportActivationFailure
from acquisition_service.layers.mode import (
    AcquisitionMode,
    MarketSnapshot,
    ModeController,
    ScheduledHandle,
    Scheduler,
    Trigger,
)


class _Handle(ScheduledHandle):
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler(Scheduler):
    def __init__(self):
        self.current = 0.0
        self._pending = []

    def now(self) -> float:
        return self.current

    def call_later(self, delay, callback):
        handle = _Handle(self.current + delay, callback)
        self._pending.append(handle)
        return handle

    def advance(self, seconds: float) -> None:
        self.current += seconds
        due = [h for h in self._pending if not h.cancelled and h.when <= self.current]
        self._pending = [h for h in self._pending if not h.cancelled and h not in due]
        for handle in due:
            handle.callback()


class SequenceProvider:
    """按顺序返回快照，最后一个重复使用"""

    def __init__(self, *snapshots):
        self._snapshots = list(snapshots)
        self.calls = 0

    def __call__(self):
        snapshot = self._snapshots[min(self.calls, len(self._snapshots) - 1)]
        self.calls += 1
        return snapshot


class FakeTransport:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.activations = 0
        self.deactivations = 0

    async def activate(self):
        if self.fail:
            raise OSError("connection refused")
        self.activations += 1

    def deactivate(self):
        self.deactivations += 1


def _controller(provider, transport=None, scheduler=None, **kwargs):
    transport = transport or FakeTransport()
    scheduler = scheduler or FakeScheduler()
    mode = ModeController(
        snapshot_provider=provider,
        activate_hook=transport.activate,
        deactivate_hook=transport.deactivate,
        volatility_threshold=3.0,
        volume_spike_threshold=2.0,
        revert_after=1800,
        scheduler=scheduler,
        **kwargs,
    )
    return mode, transport, scheduler


# ─────────────────────────────────────────────────────────
# 1. 触发条件
# ─────────────────────────────────────────────────────────

class TestTriggerSelection:
    def setup_method(self):
        self.mode, _, _ = _controller(SequenceProvider({}))

    def test_major_event_wins(self):
        snapshot = MarketSnapshot(volatility=10, volume_spike=10, major_event=True)
        assert self.mode.select_trigger(snapshot) is Trigger.MAJOR_EVENT

    def test_volatility_before_volume(self):
        snapshot = MarketSnapshot(volatility=4, volume_spike=5)
        assert self.mode.select_trigger(snapshot) is Trigger.HIGH_VOLATILITY

    def test_volume_spike(self):
        snapshot = MarketSnapshot(volatility=1, volume_spike=2.5)
        assert self.mode.select_trigger(snapshot) is Trigger.VOLUME_SPIKE

    def test_thresholds_are_strict(self):
        assert self.mode.select_trigger(MarketSnapshot(volatility=3.0, volume_spike=2.0)) is None

    def test_snapshot_from_camel_case(self):
        snapshot = MarketSnapshot.from_mapping({"volatility": 1.5, "volumeSpike": 3, "majorEvent": True})
        assert snapshot == MarketSnapshot(volatility=1.5, volume_spike=3.0, major_event=True)


# ─────────────────────────────────────────────────────────
# 2. 状态切换
# ─────────────────────────────────────────────────────────

class TestTransitions:
    def test_volatility_spike_switches_and_reverts(self):
        provider = SequenceProvider({"volatility": 1}, {"volatility": 4})
        mode, transport, scheduler = _controller(provider)

        async def scenario():
            return await mode.evaluate(), await mode.evaluate()

        first, second = asyncio.run(scenario())
        assert first is None
        assert second is Trigger.HIGH_VOLATILITY
        assert mode.mode is AcquisitionMode.STREAMING
        assert mode.active_trigger is Trigger.HIGH_VOLATILITY
        assert transport.activations == 1

        scheduler.advance(1799)
        assert mode.mode is AcquisitionMode.STREAMING
        scheduler.advance(1)
        assert mode.mode is AcquisitionMode.POLLING
        assert mode.active_trigger is None
        assert transport.deactivations == 1

    def test_streaming_evaluation_does_not_extend_timer(self):
        provider = SequenceProvider({"volatility": 5})
        mode, transport, scheduler = _controller(provider)

        asyncio.run(mode.evaluate())
        reverts_at = mode.status()["reverts_at"]
        scheduler.advance(1000)
        assert asyncio.run(mode.evaluate()) is Trigger.HIGH_VOLATILITY
        assert mode.status()["reverts_at"] == reverts_at
        assert transport.activations == 1

        scheduler.advance(800)
        assert mode.mode is AcquisitionMode.POLLING

    def test_manual_activation_resets_timer(self):
        provider = SequenceProvider({"volume_spike": 3})
        mode, transport, scheduler = _controller(provider)

        asyncio.run(mode.evaluate())
        scheduler.advance(1000)
        status = asyncio.run(mode.activate())
        assert status["active_trigger"] == "user_manual_activation"
        assert transport.activations == 2

        scheduler.advance(1000)
        assert mode.mode is AcquisitionMode.STREAMING
        scheduler.advance(800)
        assert mode.mode is AcquisitionMode.POLLING

    def test_failed_reactivation_reverts_to_polling(self):
        mode, transport, scheduler = _controller(SequenceProvider({"volatility": 5}))
        asyncio.run(mode.evaluate())
        transport.fail = True

        with pytest.raises(TransportActivationFailure) as exc_info:
            asyncio.run(mode.activate())
        assert exc_info.value.trigger == "user_manual_activation"
        assert mode.mode is AcquisitionMode.POLLING
        assert transport.deactivations == 1
        assert mode.status()["reverts_at"] is None
        assert "connection refused" in mode.last_error

        # 旧定时器已取消
        scheduler.advance(3600)
        assert transport.deactivations == 1

    def test_manual_activation_from_polling(self):
        mode, transport, scheduler = _controller(SequenceProvider({}))
        status = asyncio.run(mode.activate())
        assert status["mode"] == "streaming"
        assert status["active_trigger"] == "user_manual_activation"
        assert status["reverts_at"] == 1800

    def test_activation_failure_stays_polling(self):
        provider = SequenceProvider({"major_event": True})
        mode, transport, scheduler = _controller(provider, transport=FakeTransport(fail=True))

        with pytest.raises(TransportActivationFailure) as exc_info:
            asyncio.run(mode.evaluate())
        assert exc_info.value.trigger == "major_news_event"
        assert mode.mode is AcquisitionMode.POLLING
        assert mode.active_trigger is None
        assert "connection refused" in mode.last_error
        assert mode.status()["reverts_at"] is None

    def test_explicit_deactivate(self):
        mode, transport, scheduler = _controller(SequenceProvider({}))
        asyncio.run(mode.activate())
        mode.deactivate()
        assert mode.mode is AcquisitionMode.POLLING
        # 定时器已取消，到期后不会再次关闭
        scheduler.advance(3600)
        assert transport.deactivations == 1

    def test_deactivate_when_polling_is_noop(self):
        mode, transport, _ = _controller(SequenceProvider({}))
        mode.deactivate()
        assert transport.deactivations == 0

    def test_provider_failure_means_no_trigger(self):
        def broken():
            raise RuntimeError("snapshot unavailable")

        mode, transport, _ = _controller(broken)
        assert asyncio.run(mode.evaluate()) is None
        assert mode.mode is AcquisitionMode.POLLING
        assert transport.activations == 0

    def test_async_provider(self):
        async def provider():
            return MarketSnapshot(major_event=True)

        mode, _, _ = _controller(provider)
        assert asyncio.run(mode.evaluate()) is Trigger.MAJOR_EVENT
        assert mode.status()["last_snapshot"]["major_event"] is True


# ─────────────────────────────────────────────────────────
# 3. 订阅与周期评估
# ─────────────────────────────────────────────────────────

class TestSubscriptionAndLoop:
    def test_listener_receives_transitions_until_disposed(self):
        mode, _, scheduler = _controller(SequenceProvider({"volatility": 9}))
        seen = []
        dispose = mode.subscribe(lambda status: seen.append(status["mode"]))

        asyncio.run(mode.evaluate())
        scheduler.advance(1800)
        assert seen == ["streaming", "polling"]

        dispose()
        asyncio.run(mode.activate())
        assert seen == ["streaming", "polling"]

    def test_failing_listener_does_not_block_others(self):
        mode, _, _ = _controller(SequenceProvider({}))
        seen = []

        def broken(status):
            raise ValueError("listener bug")

        mode.subscribe(broken)
        mode.subscribe(lambda status: seen.append(status["mode"]))
        asyncio.run(mode.activate())
        assert seen == ["streaming"]

    def test_start_and_stop(self):
        provider = SequenceProvider({"volatility": 8})
        mode, transport, _ = _controller(provider)

        async def scenario():
            mode.start(interval=60)
            for _ in range(3):
                await asyncio.sleep(0)
            streaming = mode.is_streaming
            await mode.stop()
            return streaming

        assert asyncio.run(scenario()) is True
        assert provider.calls == 1
        assert mode.mode is AcquisitionMode.POLLING
        assert transport.deactivations == 1
