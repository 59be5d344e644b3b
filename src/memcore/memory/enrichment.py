"""
增量提取追踪 (Enrichment)

以 (scope, memory_id, engine_kind, engine_version) 为幂等键:
- 同一引擎版本重复处理同一条记忆是 no-op
- 提升 engine_version 会触发全量重处理

进程内缓存只记录"已处理"的肯定结论 (写入成功 / 仓储重复拒绝 / 仓储命中),
缓存未命中总是回落到仓储查询, 唯一约束才是事实来源。
缓存由读写锁保护: 并发读, 独占写, 写锁只在单次插入期间持有。
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from ..core.errors import ConflictError
from .repository import MemoryRepository
from .types import EngineKind, EnrichmentRecord

logger = logging.getLogger(__name__)

EnrichmentKey = tuple[str, str, str, str]


class ReadWriteLock:
    """读写锁: 多读者并发, 写者独占且优先"""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read_lock(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class EnrichmentCache:
    """
    进程级 enrichment 缓存

    启动时为空, 不持久化; 通过共享引用传给所有调用方。
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._keys: set[EnrichmentKey] = set()

    def contains(self, key: EnrichmentKey) -> bool:
        with self._lock.read_lock():
            return key in self._keys

    def add(self, key: EnrichmentKey) -> None:
        with self._lock.write_lock():
            self._keys.add(key)

    def add_many(self, keys: list[EnrichmentKey]) -> None:
        for key in keys:
            self.add(key)

    def clear(self) -> None:
        with self._lock.write_lock():
            self._keys.clear()

    def __len__(self) -> int:
        with self._lock.read_lock():
            return len(self._keys)


def _engine_value(engine_kind: EngineKind | str) -> str:
    return engine_kind.value if isinstance(engine_kind, EngineKind) else str(engine_kind)


class EnrichmentTracker:
    """增量提取追踪器"""

    def __init__(
        self,
        repository: MemoryRepository,
        cache: EnrichmentCache | None = None,
    ) -> None:
        self.repository = repository
        self.cache = cache if cache is not None else EnrichmentCache()

    async def should_process(
        self,
        scope: str,
        memory_id: str,
        engine_kind: EngineKind | str,
        engine_version: str,
    ) -> bool:
        """该记忆是否尚未被此引擎版本处理"""
        kind = _engine_value(engine_kind)
        key = (scope, memory_id, kind, engine_version)
        if self.cache.contains(key):
            return False
        existing = await self.repository.get_enrichment(scope, memory_id, kind, engine_version)
        if existing is not None:
            self.cache.add(key)
            return False
        return True

    async def record(self, params: EnrichmentRecord) -> bool:
        """
        写入处理记录。

        Returns:
            True 表示新写入; False 表示仓储中已存在同一键 (静默跳过)。
        """
        try:
            await asyncio.shield(self.repository.insert_enrichment(params))
        except ConflictError:
            logger.debug(f"[Enrichment] Duplicate record skipped: {params.key}")
            self.cache.add(params.key)
            return False
        self.cache.add(params.key)
        logger.debug(
            f"[Enrichment] Recorded {params.engine_kind.value}@{params.engine_version} "
            f"for {params.scope}/{params.memory_id} ({len(params.card_ids)} cards)"
        )
        return True

    async def record_success(
        self,
        scope: str,
        memory_id: str,
        engine_kind: EngineKind,
        engine_version: str,
        card_ids: list[str],
    ) -> bool:
        return await self.record(EnrichmentRecord(
            scope=scope,
            memory_id=memory_id,
            engine_kind=engine_kind,
            engine_version=engine_version,
            success=True,
            card_ids=list(card_ids),
        ))

    async def record_failure(
        self,
        scope: str,
        memory_id: str,
        engine_kind: EngineKind,
        engine_version: str,
        error: str,
    ) -> bool:
        return await self.record(EnrichmentRecord(
            scope=scope,
            memory_id=memory_id,
            engine_kind=engine_kind,
            engine_version=engine_version,
            success=False,
            error_message=error[:500],
        ))

    async def unprocessed(
        self,
        scope: str,
        memory_ids: list[str],
        engine_kind: EngineKind | str,
        engine_version: str,
    ) -> list[str]:
        """过滤出尚未被此引擎版本处理的记忆 id, 保持输入顺序"""
        result: list[str] = []
        for memory_id in memory_ids:
            if await self.should_process(scope, memory_id, engine_kind, engine_version):
                result.append(memory_id)
        return result

    async def stamps(self, scope: str, memory_id: str) -> list[EnrichmentRecord]:
        """某条记忆的全部处理记录 (各引擎 / 版本)"""
        return await self.repository.list_enrichments(scope, memory_id)

    async def warm(self, scope: str) -> int:
        """从仓储加载 scope 内已有记录到缓存, 返回加载条数"""
        records = await self.repository.list_enrichments(scope)
        self.cache.add_many([r.key for r in records])
        logger.info(f"[Enrichment] Warmed cache with {len(records)} records for scope {scope}")
        return len(records)

    def clear_cache(self) -> None:
        self.cache.clear()
