"""
会话状态持久化单元测试

覆盖范围：
  - 保存：本地与远端各自独立，单侧失败不影响另一侧
  - 恢复：本地优先、过期阈值、版本校验、用户匹配
  - 文件本地存储 / MongoDB 远端存储
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from acquisition_service.exceptions import PersistenceFailure
from acquisition_service.layers.persistence import (
    FileLocalStore,
    MongoRemoteStore,
    StatePersistence,
)

NOW = 1_700_000_000.0
HOUR = 60 * 60


class MemoryLocalStore:
    def __init__(self, fail: bool = False):
        self.data = {}
        self.fail = fail

    def get(self, key):
        if self.fail:
            raise PersistenceFailure("local", "quota exceeded")
        return self.data.get(key)

    def set(self, key, value):
        if self.fail:
            raise PersistenceFailure("local", "quota exceeded")
        self.data[key] = value


class MemoryRemoteStore:
    def __init__(self, fail: bool = False):
        self.records = {}
        self.fail = fail
        self.selects = 0

    async def upsert(self, record):
        if self.fail:
            raise PersistenceFailure("remote", "unreachable")
        self.records[record["user_id"]] = record

    async def select(self, user_id):
        self.selects += 1
        if self.fail:
            raise PersistenceFailure("remote", "unreachable")
        record = self.records.get(user_id)
        return record["state_data"] if record else None


def _state(user_id="trader-1", age=0.0, version="1.0", cash=1_000_000):
    return {
        "user_id": user_id,
        "portfolio_snapshot": {"cash": cash},
        "active_positions": [{"market": "KRW-BTC", "volume": 0.1}],
        "timestamp": NOW - age,
        "schema_version": version,
    }


def _persistence(local=None, remote=None):
    local = local or MemoryLocalStore()
    remote = remote or MemoryRemoteStore()
    return StatePersistence(local, remote, stale_after=24 * HOUR, clock=lambda: NOW), local, remote


# ─────────────────────────────────────────────────────────
# 1. 保存
# ─────────────────────────────────────────────────────────

class TestSave:
    def test_save_writes_both_copies(self):
        persistence, local, remote = _persistence()
        result = asyncio.run(persistence.save("trader-1", {
            "portfolio_snapshot": {"cash": 5},
            "active_positions": [],
        }))
        assert result == {"local": True, "remote": True}

        saved = local.data["trading_state:trader-1"]
        assert saved["timestamp"] == NOW
        assert saved["schema_version"] == "1.0"
        record = remote.records["trader-1"]
        assert record["state_data"] == saved
        assert record["updated_at"] == NOW

    def test_local_failure_still_writes_remote(self):
        persistence, _, remote = _persistence(local=MemoryLocalStore(fail=True))
        result = asyncio.run(persistence.save("trader-1", {"portfolio_snapshot": {}}))
        assert result == {"local": False, "remote": True}
        assert "trader-1" in remote.records

    def test_remote_failure_keeps_local(self):
        persistence, local, _ = _persistence(remote=MemoryRemoteStore(fail=True))
        result = asyncio.run(persistence.save("trader-1", {"portfolio_snapshot": {}}))
        assert result == {"local": True, "remote": False}
        assert "trading_state:trader-1" in local.data


# ─────────────────────────────────────────────────────────
# 2. 恢复
# ─────────────────────────────────────────────────────────

class TestRestore:
    def test_fresh_local_wins_without_remote_read(self):
        persistence, local, remote = _persistence()
        local.data["trading_state:trader-1"] = _state(age=HOUR, cash=1)
        remote.records["trader-1"] = {"user_id": "trader-1", "state_data": _state(age=0, cash=2)}

        state = asyncio.run(persistence.restore("trader-1"))
        assert state.portfolio_snapshot == {"cash": 1}
        assert remote.selects == 0

    def test_stale_local_falls_back_to_remote(self):
        persistence, local, remote = _persistence()
        local.data["trading_state:trader-1"] = _state(age=25 * HOUR, cash=1)
        remote.records["trader-1"] = {"user_id": "trader-1", "state_data": _state(age=HOUR, cash=2)}

        state = asyncio.run(persistence.restore("trader-1"))
        assert state.portfolio_snapshot == {"cash": 2}
        # 远端副本回写本地
        assert local.data["trading_state:trader-1"]["portfolio_snapshot"] == {"cash": 2}

    def test_missing_local_uses_remote(self):
        persistence, _, remote = _persistence()
        remote.records["trader-1"] = {"user_id": "trader-1", "state_data": _state(age=2 * HOUR)}
        state = asyncio.run(persistence.restore("trader-1"))
        assert state is not None
        assert state.active_positions == [{"market": "KRW-BTC", "volume": 0.1}]

    def test_stale_local_newer_than_remote(self):
        persistence, local, remote = _persistence()
        local.data["trading_state:trader-1"] = _state(age=25 * HOUR, cash=1)
        remote.records["trader-1"] = {"user_id": "trader-1", "state_data": _state(age=30 * HOUR, cash=2)}
        state = asyncio.run(persistence.restore("trader-1"))
        assert state.portfolio_snapshot == {"cash": 1}

    def test_unknown_schema_version_is_unusable(self):
        persistence, local, _ = _persistence()
        local.data["trading_state:trader-1"] = _state(version="2.0")
        assert asyncio.run(persistence.restore("trader-1")) is None

    def test_configured_schema_version_roundtrip(self):
        local, remote = MemoryLocalStore(), MemoryRemoteStore()
        persistence = StatePersistence(local, remote, schema_version="2.0", clock=lambda: NOW)
        asyncio.run(persistence.save("trader-1", {"portfolio_snapshot": {"cash": 7}}))
        assert local.data["trading_state:trader-1"]["schema_version"] == "2.0"

        state = asyncio.run(persistence.restore("trader-1"))
        assert state is not None
        assert state.portfolio_snapshot == {"cash": 7}

        # 仅远端副本时同样可恢复
        local.data.clear()
        assert asyncio.run(persistence.restore("trader-1")).schema_version == "2.0"

    def test_user_mismatch_is_ignored(self):
        persistence, local, _ = _persistence()
        local.data["trading_state:trader-1"] = _state(user_id="someone-else")
        assert asyncio.run(persistence.restore("trader-1")) is None

    def test_both_backends_down(self):
        persistence, _, _ = _persistence(
            local=MemoryLocalStore(fail=True),
            remote=MemoryRemoteStore(fail=True),
        )
        assert asyncio.run(persistence.restore("trader-1")) is None

    def test_nothing_saved(self):
        persistence, _, _ = _persistence()
        assert asyncio.run(persistence.restore("new-user")) is None


# ─────────────────────────────────────────────────────────
# 3. 存储实现
# ─────────────────────────────────────────────────────────

class TestFileLocalStore:
    def test_roundtrip(self, tmp_path):
        store = FileLocalStore(str(tmp_path / "state"))
        assert store.get("trading_state:u1") is None
        store.set("trading_state:u1", {"cash": 1})
        assert store.get("trading_state:u1") == {"cash": 1}
        assert not any(name.endswith(".tmp") for name in os.listdir(tmp_path / "state"))

    def test_corrupt_file_raises(self, tmp_path):
        store = FileLocalStore(str(tmp_path))
        (tmp_path / "trading_state_u1.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(PersistenceFailure):
            store.get("trading_state:u1")


class TestMongoRemoteStore:
    def test_unavailable_database(self):
        store = MongoRemoteStore(lambda: None)
        with pytest.raises(PersistenceFailure):
            asyncio.run(store.select("u1"))

    def test_upsert_and_select(self):
        collection = MagicMock()
        collection.update_one = AsyncMock()
        collection.find_one = AsyncMock(return_value={"user_id": "u1", "state_data": {"cash": 3}})
        db = MagicMock()
        db.__getitem__.return_value = collection
        store = MongoRemoteStore(lambda: db)

        asyncio.run(store.upsert({"user_id": "u1", "state_data": {"cash": 3}, "updated_at": NOW}))
        args, kwargs = collection.update_one.call_args
        assert args[0] == {"user_id": "u1"}
        assert kwargs["upsert"] is True
        db.__getitem__.assert_called_with("trading_states")

        assert asyncio.run(store.select("u1")) == {"cash": 3}

    def test_driver_errors_wrapped(self):
        collection = MagicMock()
        collection.find_one = AsyncMock(side_effect=ConnectionError("reset"))
        db = MagicMock()
        db.__getitem__.return_value = collection
        with pytest.raises(PersistenceFailure):
            asyncio.run(MongoRemoteStore(lambda: db).select("u1"))
