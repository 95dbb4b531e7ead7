"""
容量清理管理器

当记录数达到容量阈值时，按保留分数从低到高淘汰未受保护的记录，直到降到目标容量。

保留分数 = 重要性 × 0.5 + 新近度 × 0.3 + 访问频率 × 0.2
- 新近度 = max(0, 1 - 记录天数 / max_age_days)
- 访问频率 = min(1, access_count / access_saturation)

受保护的记录（高重要性、高访问次数、摘要）永远不会被清理。
"""

import asyncio
import logging
import time
from typing import List, Optional

from retention_engine.schemas.config import CleanupSettings
from retention_engine.utils.helpers import Clock, days_between, system_clock

from .memory_vector_store import MemoryVectorStore
from .schemas import CleanupResult, MemoryRecord

logger = logging.getLogger(__name__)


class CleanupManager:
    """
    容量清理管理器

    Args:
        store: 向量存储
        settings: 清理配置
        clock: 时钟函数
    """

    def __init__(
        self,
        store: MemoryVectorStore,
        settings: Optional[CleanupSettings] = None,
        clock: Clock = system_clock
    ):
        self.store = store
        self.settings = settings or CleanupSettings()
        self._clock = clock
        self._guard = asyncio.Lock()
        self._last_result: Optional[CleanupResult] = None

    @property
    def running(self) -> bool:
        return self._guard.locked()

    @property
    def last_result(self) -> Optional[CleanupResult]:
        return self._last_result

    def score(self, record: MemoryRecord, now: Optional[float] = None) -> float:
        """
        计算记录的保留分数

        Args:
            record: 记录
            now: 当前时间

        Returns:
            float: 保留分数，越低越先被清理
        """
        now = self._clock() if now is None else now
        meta = record.metadata
        age_days = days_between(meta.created_at, now)
        recency = max(0.0, 1.0 - age_days / self.settings.max_age_days)
        access = min(1.0, meta.access_count / self.settings.access_saturation)
        return (
            meta.importance * self.settings.importance_weight
            + recency * self.settings.recency_weight
            + access * self.settings.access_weight
        )

    def is_protected(self, record: MemoryRecord) -> bool:
        """高重要性、高访问次数或摘要记录受保护"""
        meta = record.metadata
        return (
            meta.importance >= self.settings.preserve_importance_threshold
            or meta.access_count >= self.settings.min_access_to_preserve
            or meta.is_summary
        )

    def target_size(self) -> int:
        return int(self.store.max_capacity * self.settings.target_capacity_ratio)

    def select_candidates(
        self,
        records: Optional[List[MemoryRecord]] = None,
        now: Optional[float] = None
    ) -> List[MemoryRecord]:
        """
        选出需要清理的记录

        未受保护的记录按保留分数升序排列，取足够多的记录使总数降到目标容量。

        Args:
            records: 待评估记录，默认取存储中的全部记录
            now: 当前时间

        Returns:
            List[MemoryRecord]: 待清理记录
        """
        now = self._clock() if now is None else now
        records = self.store.list_records() if records is None else records
        excess = len(records) - self.target_size()
        if excess <= 0:
            return []

        unprotected = [record for record in records if not self.is_protected(record)]
        unprotected.sort(key=lambda r: (self.score(r, now), r.metadata.created_at, r.id))
        return unprotected[:excess]

    async def run_cleanup(self, reason: str = "capacity", force: bool = False) -> CleanupResult:
        """
        执行容量清理

        未达到清理阈值且未强制时不做任何事；已有清理在运行时直接返回上一次结果。

        Args:
            reason: 触发原因
            force: 是否忽略容量阈值

        Returns:
            CleanupResult: 清理结果
        """
        if self._guard.locked():
            logger.info(f"容量清理正在运行，忽略本次触发: {reason}")
            return self._last_result or CleanupResult(reason=reason, skipped=True)

        async with self._guard:
            start = time.perf_counter()
            result = CleanupResult(reason=reason, before_size=self.store.size)

            if not force and not self.store.needs_cleanup():
                result.skipped = True
                result.after_size = self.store.size
                result.duration_ms = (time.perf_counter() - start) * 1000
                return result

            records = self.store.list_records()
            result.scanned = len(records)
            result.protected_count = sum(1 for record in records if self.is_protected(record))
            candidates = self.select_candidates(records)

            batch_size = self.settings.batch_size
            for offset in range(0, len(candidates), batch_size):
                batch_ids = [record.id for record in candidates[offset:offset + batch_size]]
                try:
                    for deleted in await self.store.delete_batch(batch_ids):
                        if deleted.deleted:
                            result.removed_ids.append(deleted.id)
                except Exception as e:
                    logger.error(f"清理批次失败: {e}")
                    result.errors.extend({"memory_id": rid, "error": str(e)} for rid in batch_ids)
                await asyncio.sleep(0)

            result.after_size = self.store.size
            result.duration_ms = (time.perf_counter() - start) * 1000
            self._last_result = result

        logger.info(
            f"容量清理完成: 原因={reason}, 删除={result.removed_count}, "
            f"受保护={result.protected_count}, {result.before_size} -> {result.after_size}"
        )
        return result
