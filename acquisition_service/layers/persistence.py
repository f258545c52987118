"""
持久化层 – 会话状态保存与恢复
优先级：本地文件（快速主路径） → MongoDB（远端持久化兜底）

保存：先同步写本地（失败只记录日志），再尝试写远端（失败不影响本地）。
恢复：本地副本存在、用户匹配、版本可识别且未超过过期阈值时直接使用；
      否则读取远端副本。两份副本只选其一，不做字段合并。
"""

import json
import logging
import os
import time
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from pydantic import ValidationError

from acquisition_service.db import STATE_COLLECTION
from acquisition_service.exceptions import PersistenceFailure
from acquisition_service.models.state import SessionState

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSIONS = frozenset({"1.0"})


class LocalStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...


class RemoteStore(Protocol):
    async def upsert(self, record: Dict[str, Any]) -> None: ...

    async def select(self, user_id: str) -> Optional[Dict[str, Any]]: ...


# ── 本地存储：JSON 文件 ───────────────────────────────────

class FileLocalStore:
    """每个键一个 JSON 文件，同步读写"""

    def __init__(self, directory: str):
        self._dir = directory

    def _path(self, key: str) -> str:
        safe = key.replace(":", "_").replace("/", "_")
        return os.path.join(self._dir, f"{safe}.json")

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as exc:
            raise PersistenceFailure("local", str(exc)) from exc

    def set(self, key: str, value: Any) -> None:
        try:
            os.makedirs(self._dir, exist_ok=True)
            path = self._path(key)
            tmp_path = f"{path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as fh:
                json.dump(value, fh, ensure_ascii=False, default=str)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceFailure("local", str(exc)) from exc


# ── 远端存储：MongoDB ─────────────────────────────────────

class MongoRemoteStore:
    """trading_states 集合，按 user_id upsert"""

    def __init__(self, db_getter: Callable[[], Any]):
        self._db_getter = db_getter

    def _collection(self):
        db = self._db_getter()
        if db is None:
            raise PersistenceFailure("remote", "MongoDB 不可用")
        return db[STATE_COLLECTION]

    async def upsert(self, record: Dict[str, Any]) -> None:
        collection = self._collection()
        try:
            await collection.update_one(
                {"user_id": record["user_id"]},
                {"$set": record},
                upsert=True,
            )
        except Exception as exc:
            raise PersistenceFailure("remote", str(exc)) from exc

    async def select(self, user_id: str) -> Optional[Dict[str, Any]]:
        collection = self._collection()
        try:
            doc = await collection.find_one({"user_id": user_id})
        except Exception as exc:
            raise PersistenceFailure("remote", str(exc)) from exc
        if not doc:
            return None
        return doc.get("state_data")


# ── 状态持久化 ────────────────────────────────────────────

class StatePersistence:
    """本地优先、远端兜底的会话状态持久化"""

    def __init__(
        self,
        local_store: LocalStore,
        remote_store: RemoteStore,
        stale_after: float = 24 * 60 * 60,
        schema_version: str = "1.0",
        clock: Callable[[], float] = time.time,
    ):
        self._local = local_store
        self._remote = remote_store
        self.stale_after = stale_after
        self.schema_version = schema_version
        self._recognised_versions = SUPPORTED_SCHEMA_VERSIONS | {schema_version}
        self._clock = clock

    @staticmethod
    def storage_key(user_id: str) -> str:
        return f"trading_state:{user_id}"

    async def save(self, user_id: str, state: Mapping[str, Any]) -> Dict[str, bool]:
        """
        保存会话状态

        Args:
            user_id: 用户 ID
            state: 包含 portfolio_snapshot / active_positions 的字典

        Returns:
            {"local": 是否写入本地, "remote": 是否写入远端}
        """
        snapshot = SessionState(
            user_id=user_id,
            portfolio_snapshot=state.get("portfolio_snapshot") or {},
            active_positions=state.get("active_positions") or [],
            timestamp=self._clock(),
            schema_version=self.schema_version,
        )
        data = snapshot.model_dump()
        result = {"local": False, "remote": False}

        try:
            self._local.set(self.storage_key(user_id), data)
            result["local"] = True
        except Exception as exc:
            logger.warning(f"⚠️ 本地状态保存失败（继续写远端）: {exc}")

        try:
            await self._remote.upsert({
                "user_id": user_id,
                "state_data": data,
                "updated_at": snapshot.timestamp,
            })
            result["remote"] = True
        except Exception as exc:
            logger.warning(f"⚠️ 远端状态备份失败（本地副本不受影响）: {exc}")

        if result["local"] or result["remote"]:
            logger.info(f"💾 会话状态已保存: {user_id} {result}")
        else:
            logger.error(f"❌ 会话状态保存失败（本地与远端均不可用）: {user_id}")
        return result

    async def restore(self, user_id: str) -> Optional[SessionState]:
        """恢复会话状态，两个来源都没有可用副本时返回 None"""
        local = self._load_local(user_id)
        if local is not None and not self._is_stale(local):
            logger.info(f"📱 本地状态恢复完成: {user_id}")
            return local

        remote = await self._load_remote(user_id)
        if remote is not None:
            if local is not None and local.timestamp > remote.timestamp:
                logger.info(f"📱 远端副本早于本地过期副本，使用本地副本: {user_id}")
                return local
            logger.info(f"☁️ 远端状态恢复完成: {user_id}")
            self._write_back(user_id, remote)
            return remote

        if local is not None:
            logger.info(f"本地副本已过期且远端无可用副本: {user_id}")
        return None

    def _is_stale(self, state: SessionState) -> bool:
        return self._clock() - state.timestamp >= self.stale_after

    def _parse(self, raw: Any, user_id: str, source: str) -> Optional[SessionState]:
        if not isinstance(raw, Mapping):
            return None
        version = raw.get("schema_version")
        if version not in self._recognised_versions:
            logger.warning(f"{source} 状态版本无法识别（{version}），视为无可用状态")
            return None
        try:
            state = SessionState.model_validate(raw)
        except ValidationError as exc:
            logger.warning(f"{source} 状态格式无效: {exc}")
            return None
        if state.user_id != user_id:
            logger.debug(f"{source} 状态属于其他用户，忽略")
            return None
        return state

    def _load_local(self, user_id: str) -> Optional[SessionState]:
        try:
            raw = self._local.get(self.storage_key(user_id))
        except Exception as exc:
            logger.warning(f"本地状态读取失败: {exc}")
            return None
        return self._parse(raw, user_id, "本地")

    async def _load_remote(self, user_id: str) -> Optional[SessionState]:
        try:
            raw = await self._remote.select(user_id)
        except Exception as exc:
            logger.warning(f"远端状态读取失败: {exc}")
            return None
        return self._parse(raw, user_id, "远端")

    def _write_back(self, user_id: str, state: SessionState) -> None:
        try:
            self._local.set(self.storage_key(user_id), state.model_dump())
        except Exception as exc:
            logger.debug(f"远端状态回写本地失败: {exc}")
