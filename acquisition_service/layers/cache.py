"""
缓存层 – 按 TTL 等级过期的行情缓存
优先级：进程内存（权威） → Redis 镜像（重启预热）

- 未过期条目直接返回，不发生任何 I/O
- 过期或缺失时调用 fetch 函数刷新，同一个键同时最多一个刷新任务
- 刷新失败且存在旧条目（即使已过期）时返回旧值并标记 degraded
- 过期条目不删除，只在刷新成功后整体替换，或被显式 clear
"""

import asyncio
import hashlib
import inspect
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from acquisition_service.exceptions import ConfigurationError, UpstreamFailure

logger = logging.getLogger(__name__)

_MIRROR_NS = "cache"


def make_key(namespace: str, *parts: str) -> str:
    """生成规范化缓存键"""
    raw = ":".join([namespace] + list(parts))
    if len(raw) > 200:
        raw = namespace + ":" + hashlib.md5(raw.encode()).hexdigest()
    return raw


@dataclass
class CacheEntry:
    key: str
    value: Any
    fetched_at: float
    expires_at: float
    ttl_class: str

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value": self.value,
            "fetched_at": self.fetched_at,
            "expires_at": self.expires_at,
            "ttl_class": self.ttl_class,
        }


@dataclass
class CacheResult:
    """一次读取的结果；degraded=True 表示刷新失败、返回的是旧数据"""
    key: str
    value: Any
    degraded: bool = False
    fetched_at: Optional[float] = None
    error: Optional[str] = None


class TieredCache:
    """按 TTL 等级管理过期时间的缓存，支持旧数据回退与单飞刷新"""

    def __init__(
        self,
        ttl_classes: Dict[str, int],
        clock: Callable[[], float] = time.time,
        redis_getter: Optional[Callable[[], Any]] = None,
        redis_retention: int = 24 * 60 * 60,
    ):
        self._ttl_classes = dict(ttl_classes)
        self._clock = clock
        self._redis_getter = redis_getter
        self._redis_retention = redis_retention
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._inflight: Dict[str, asyncio.Task] = {}
        self._counters = {
            "hits": 0,
            "misses": 0,
            "fetches": 0,
            "fetch_failures": 0,
            "stale_served": 0,
            "pushed": 0,
        }

    # ── TTL 等级 ──────────────────────────────────────────

    def ttl_for(self, ttl_class: str) -> int:
        try:
            return self._ttl_classes[ttl_class]
        except KeyError:
            raise ConfigurationError(f"未知的 TTL 等级: {ttl_class}") from None

    @property
    def ttl_classes(self) -> Dict[str, int]:
        return dict(self._ttl_classes)

    # ── 读取 ──────────────────────────────────────────────

    def peek(self, key: str) -> Optional[CacheEntry]:
        """查看条目（包括已过期条目），不触发刷新"""
        with self._lock:
            return self._entries.get(key)

    async def get(
        self,
        key: str,
        fetch_fn: Callable[[], Any],
        ttl_class: str,
    ) -> CacheResult:
        self.ttl_for(ttl_class)

        entry = self.peek(key)
        if entry is not None and entry.is_fresh(self._clock()):
            self._counters["hits"] += 1
            return CacheResult(key=key, value=entry.value, fetched_at=entry.fetched_at)

        if entry is None and self._redis_getter is not None:
            entry = await self._hydrate(key)
            if entry is not None and entry.is_fresh(self._clock()):
                self._counters["hits"] += 1
                logger.debug(f"缓存命中（Redis）: {key}")
                return CacheResult(key=key, value=entry.value, fetched_at=entry.fetched_at)

        self._counters["misses"] += 1
        task = self._ensure_refresh(key, fetch_fn, ttl_class)
        try:
            fresh = await asyncio.shield(task)
        except Exception as exc:
            prior = self.peek(key)
            if prior is None:
                raise UpstreamFailure(key, str(exc)) from exc
            self._counters["stale_served"] += 1
            logger.warning(f"⚠️ 刷新失败，返回旧数据: {key} ({exc})")
            return CacheResult(
                key=key,
                value=prior.value,
                degraded=True,
                fetched_at=prior.fetched_at,
                error=str(exc),
            )
        return CacheResult(key=key, value=fresh.value, fetched_at=fresh.fetched_at)

    # ── 写入 / 刷新 ───────────────────────────────────────

    def put(self, key: str, value: Any, ttl_class: str) -> CacheEntry:
        """写入推送来的数据（实时模式），作为新鲜条目"""
        entry = self._store(key, value, ttl_class)
        self._counters["pushed"] += 1
        return entry

    def refresh_in_background(
        self,
        key: str,
        fetch_fn: Callable[[], Any],
        ttl_class: str,
    ) -> bool:
        """
        后台刷新，不阻塞读取方

        Returns:
            是否真正调度了新的刷新；同一个键已有刷新在进行时返回 False
        """
        self.ttl_for(ttl_class)
        if key in self._inflight:
            logger.debug(f"后台刷新已在进行，跳过: {key}")
            return False
        task = self._ensure_refresh(key, fetch_fn, ttl_class)
        task.add_done_callback(self._log_background_result)
        return True

    def _ensure_refresh(
        self,
        key: str,
        fetch_fn: Callable[[], Any],
        ttl_class: str,
    ) -> asyncio.Task:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(key, fetch_fn, ttl_class))
            self._inflight[key] = task
            task.add_done_callback(self._consume_exception)
        return task

    async def _refresh(
        self,
        key: str,
        fetch_fn: Callable[[], Any],
        ttl_class: str,
    ) -> CacheEntry:
        try:
            self._counters["fetches"] += 1
            try:
                value = fetch_fn()
                if inspect.isawaitable(value):
                    value = await value
            except Exception:
                self._counters["fetch_failures"] += 1
                raise
            entry = self._store(key, value, ttl_class)
            await self._mirror(entry)
            return entry
        finally:
            self._inflight.pop(key, None)

    def _store(self, key: str, value: Any, ttl_class: str) -> CacheEntry:
        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=value,
            fetched_at=now,
            expires_at=now + self.ttl_for(ttl_class),
            ttl_class=ttl_class,
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    @staticmethod
    def _consume_exception(task: asyncio.Task) -> None:
        if not task.cancelled():
            task.exception()

    @staticmethod
    def _log_background_result(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"后台刷新失败（已忽略）: {exc}")

    # ── 失效 ──────────────────────────────────────────────

    async def clear(self, key: Optional[str] = None) -> int:
        """删除单个条目或全部条目，返回删除数量"""
        with self._lock:
            if key is None:
                removed = list(self._entries)
                self._entries.clear()
            else:
                removed = [key] if self._entries.pop(key, None) is not None else []
        if key is None:
            # 重启后内存为空，镜像键需从 Redis 中扫描
            mirrored = await self._unmirror_all()
            known = {make_key(_MIRROR_NS, k) for k in removed}
            count = len(removed) + len(mirrored - known)
        else:
            await self._unmirror([key])
            count = len(removed)
        logger.info(f"缓存已清理: {key or '全部'}（{count} 条）")
        return count

    # ── Redis 镜像 ────────────────────────────────────────

    def _redis(self):
        if self._redis_getter is None:
            return None
        return self._redis_getter()

    async def _mirror(self, entry: CacheEntry) -> None:
        redis = self._redis()
        if not redis:
            return
        try:
            serialized = json.dumps(entry.to_dict(), ensure_ascii=False, default=str)
            await redis.setex(make_key(_MIRROR_NS, entry.key), self._redis_retention, serialized)
            logger.debug(f"缓存写入（Redis）: {entry.key}")
        except Exception as exc:
            logger.debug(f"Redis 写入失败: {exc}")

    async def _hydrate(self, key: str) -> Optional[CacheEntry]:
        redis = self._redis()
        if not redis:
            return None
        try:
            raw = await redis.get(make_key(_MIRROR_NS, key))
            if not raw:
                return None
            doc = json.loads(raw)
            if doc.get("ttl_class") not in self._ttl_classes:
                return None
            entry = CacheEntry(
                key=key,
                value=doc.get("value"),
                fetched_at=float(doc["fetched_at"]),
                expires_at=float(doc["expires_at"]),
                ttl_class=doc["ttl_class"],
            )
        except Exception as exc:
            logger.debug(f"Redis 读取失败: {exc}")
            return None
        with self._lock:
            # 等待 Redis 期间可能已有更新的条目写入
            return self._entries.setdefault(key, entry)

    async def _unmirror_all(self) -> Set[str]:
        redis = self._redis()
        if not redis:
            return set()
        mirrored: Set[str] = set()
        try:
            async for raw in redis.scan_iter(match=make_key(_MIRROR_NS, "*")):
                mirrored.add(raw.decode() if isinstance(raw, bytes) else raw)
            if mirrored:
                await redis.delete(*mirrored)
        except Exception as exc:
            logger.debug(f"Redis 批量删除失败: {exc}")
        return mirrored

    async def _unmirror(self, keys) -> None:
        redis = self._redis()
        if not redis or not keys:
            return
        try:
            await redis.delete(*[make_key(_MIRROR_NS, k) for k in keys])
        except Exception as exc:
            logger.debug(f"Redis 删除失败: {exc}")

    # ── 统计 ──────────────────────────────────────────────

    def stats(self) -> dict:
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
        fresh = sum(1 for e in entries if e.is_fresh(now))
        by_class: Dict[str, int] = {}
        for e in entries:
            by_class[e.ttl_class] = by_class.get(e.ttl_class, 0) + 1
        return {
            "entries": len(entries),
            "fresh": fresh,
            "stale": len(entries) - fresh,
            "by_class": by_class,
            "inflight": sorted(self._inflight),
            "redis_mirror": self._redis() is not None,
            **self._counters,
        }
