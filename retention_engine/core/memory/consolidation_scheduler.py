"""
整合调度器

在后台把低价值记忆按主题压缩为摘要：
- 触发方式：周期触发、空闲触发、每日定时触发，由同一个协作式调度循环驱动
- 整合流程：取最近记录 → 评分 → 低分记录按主题分组 → 生成摘要 → 写入摘要、删除原记录
- 整合后容量仍然偏高时触发容量清理
- 同一个调度循环还负责遗忘衰减、语义去重和索引维护
"""

import asyncio
import time
from typing import Dict, List, Optional, Tuple

import numpy as np

from retention_engine.core.embedding.embedding_service import EmbeddingService
from retention_engine.core.embedding.hashing_embedding import FallbackEmbedding, HashingEmbedding
from retention_engine.core.events import EventChannel
from retention_engine.core.scheduler import CooperativeScheduler
from retention_engine.core.vectordb.cleanup_manager import CleanupManager
from retention_engine.core.vectordb.memory_vector_store import MemoryVectorStore
from retention_engine.core.vectordb.schemas import (
    IndexMaintenanceResult,
    MemoryRecord,
    RecordExtensions,
    RecordMetadata,
)
from retention_engine.schemas.config import ConsolidationSettings
from retention_engine.utils.helpers import Clock, system_clock
from retention_engine.utils.logger import get_logger

from .deduplicator import Deduplicator
from .forgetting_mechanism import ForgettingEngine
from .importance_scorer import ImportanceScorer
from .memory_compressor import MemoryCompressor
from .schemas import ConsolidationProgress, ConsolidationResult, ConsolidationStarted, ScoredMemory

logger = get_logger(__name__)

JOB_CONSOLIDATION = "consolidation"
JOB_DECAY = "decay"
JOB_DEDUP = "deduplication"
JOB_INDEX_MAINTENANCE = "index_maintenance"


def group_key(record: MemoryRecord) -> Optional[str]:
    """分组键：第一个主题，没有主题时用第一个标签"""
    if record.metadata.topics:
        return record.metadata.topics[0]
    if record.metadata.tags:
        return record.metadata.tags[0]
    return None


class ConsolidationScheduler:
    """
    整合调度器

    Args:
        store: 向量存储
        scorer: 重要性评分器
        compressor: 记忆压缩器（摘要服务 + 抽取式降级）
        embedding: 向量化服务（摘要向量化）
        cleanup: 容量清理管理器
        settings: 整合配置
        clock: 时钟函数
        forgetting: 遗忘引擎（调度衰减任务、清理派生状态）
        deduplicator: 去重器（调度去重任务）
        scheduler: 协作式调度器，默认新建
    """

    def __init__(
        self,
        store: MemoryVectorStore,
        scorer: ImportanceScorer,
        compressor: MemoryCompressor,
        embedding: EmbeddingService,
        cleanup: CleanupManager,
        settings: Optional[ConsolidationSettings] = None,
        clock: Clock = system_clock,
        forgetting: Optional[ForgettingEngine] = None,
        deduplicator: Optional[Deduplicator] = None,
        scheduler: Optional[CooperativeScheduler] = None
    ):
        self.store = store
        self.scorer = scorer
        self.compressor = compressor
        self.embedding = embedding
        self.cleanup = cleanup
        self.settings = settings or ConsolidationSettings()
        self._clock = clock
        self.forgetting = forgetting
        self.deduplicator = deduplicator
        self.scheduler = scheduler or CooperativeScheduler(clock, self.settings.tick_seconds)
        self._hashing = HashingEmbedding(embedding.dimension)

        self._guard = asyncio.Lock()
        self._last_result: Optional[ConsolidationResult] = None

        self.consolidation_started: EventChannel[ConsolidationStarted] = EventChannel("consolidation_started")
        self.consolidation_progress: EventChannel[ConsolidationProgress] = EventChannel("consolidation_progress")
        self.consolidation_completed: EventChannel[ConsolidationResult] = EventChannel("consolidation_completed")

        self._register_jobs()

    def _register_jobs(self) -> None:
        self.scheduler.add_job(
            JOB_CONSOLIDATION,
            self.run_consolidation,
            interval_seconds=self.settings.interval_seconds,
            idle_seconds=self.settings.idle_timeout_seconds,
            daily_hour=self.settings.daily_hour,
        )
        if self.forgetting is not None:
            self.scheduler.add_job(
                JOB_DECAY,
                self.forgetting.process_decay,
                interval_seconds=self.settings.decay_interval_seconds,
            )
        if self.deduplicator is not None:
            self.scheduler.add_job(
                JOB_DEDUP,
                self.deduplicator.run_deduplication,
                interval_seconds=self.settings.dedup_interval_seconds,
            )
        self.scheduler.add_job(
            JOB_INDEX_MAINTENANCE,
            self.run_index_maintenance,
            interval_seconds=self.settings.index_maintenance_interval_seconds,
        )

    async def run_index_maintenance(self, reason: str = "manual") -> IndexMaintenanceResult:
        """重建过期索引，行数达标时创建默认索引"""
        result = await self.store.run_index_maintenance()
        if result.errors:
            logger.warning("索引维护存在失败项", reason=reason, errors=result.errors)
        return result

    @property
    def running(self) -> bool:
        return self._guard.locked()

    @property
    def last_result(self) -> Optional[ConsolidationResult]:
        return self._last_result

    # ==================== 生命周期 ====================

    def start(self) -> None:
        """启动调度循环（重复调用无副作用）"""
        if self.scheduler.running:
            return
        self.scheduler.start()
        logger.info("整合调度器已启动", jobs=[job.name for job in self.scheduler.jobs])

    async def stop(self) -> None:
        """停止调度循环并等待正在执行的任务"""
        await self.scheduler.stop()
        logger.info("整合调度器已停止")

    def record_activity(self) -> None:
        self.scheduler.record_activity()

    # ==================== 整合 ====================

    async def _embed(self, text: str) -> Tuple[List[float], bool]:
        if isinstance(self.embedding, FallbackEmbedding):
            vector, used_fallback = await self.embedding.embed_text_with_status(text)
        else:
            try:
                vector, used_fallback = await self.embedding.embed_text(text), False
            except Exception as e:
                logger.warning("摘要向量化失败，使用哈希降级", error=str(e))
                vector, used_fallback = self._hashing.encode(text), True
        return [float(v) for v in np.asarray(vector).reshape(-1)], used_fallback

    async def _score(self, records: List[MemoryRecord]) -> List[ScoredMemory]:
        scored: List[ScoredMemory] = []
        batch_size = self.settings.batch_size
        now = self._clock()
        for offset in range(0, len(records), batch_size):
            scored.extend(self.scorer.score_many(records[offset:offset + batch_size], now))
            self.consolidation_progress.publish(ConsolidationProgress(
                stage="scoring", processed=len(scored), total=len(records)
            ))
            await asyncio.sleep(0)
        return scored

    def find_groups(
        self,
        records: List[MemoryRecord],
        scored: List[ScoredMemory]
    ) -> Dict[str, List[MemoryRecord]]:
        """
        把低分且非摘要的记录按主题分组，只保留成员数达到 min_group_size 的分组

        Returns:
            Dict[str, List[MemoryRecord]]: 主题 -> 记录（保持最近优先的顺序）
        """
        groups: Dict[str, List[MemoryRecord]] = {}
        for record, score in zip(records, scored):
            if record.metadata.is_summary or score.final_score >= self.settings.min_importance_to_keep:
                continue
            key = group_key(record)
            if key is None:
                continue
            groups.setdefault(key, []).append(record)
        return {
            key: members for key, members in groups.items()
            if len(members) >= self.settings.min_group_size
        }

    async def _consolidate_group(self, topic: str, members: List[MemoryRecord], result: ConsolidationResult) -> None:
        summary, summary_fallback = await self.compressor.compress(members)
        vector, embed_fallback = await self._embed(summary.summary_text)
        result.used_fallback = result.used_fallback or summary_fallback or embed_fallback

        tags: List[str] = []
        for member in members:
            tags.extend(tag for tag in member.metadata.tags if tag not in tags)

        metadata = RecordMetadata(
            source_type=members[0].metadata.source_type,
            importance=min(max(m.importance for m in members), self.settings.summary_importance),
            topics=summary.topics or [topic],
            tags=tags,
            is_summary=True,
            summarized_ids=[m.id for m in members],
            extensions=RecordExtensions(
                consolidated_from_topic=topic,
                compression_ratio=summary.compression_ratio,
            ),
        )
        summary_record = await self.store.add(summary.summary_text, vector, metadata)
        result.summaries_created += 1
        result.summary_ids.append(summary_record.id)

        for deleted in await self.store.delete_batch([m.id for m in members]):
            if not deleted.deleted:
                continue
            result.records_removed += 1
            if self.forgetting is not None:
                self.forgetting.drop_state(deleted.id)
            else:
                self.scorer.forget_score(deleted.id)

        result.groups_consolidated += 1
        logger.debug(
            "分组已整合",
            topic=topic,
            members=len(members),
            summary_id=summary_record.id,
            used_fallback=summary_fallback or embed_fallback
        )

    async def run_consolidation(self, reason: str = "manual") -> ConsolidationResult:
        """
        执行一次整合

        已有整合在运行时直接返回上一次结果。

        Args:
            reason: 触发原因（manual / interval / idle / daily）

        Returns:
            ConsolidationResult: 整合结果
        """
        if self._guard.locked():
            logger.info("整合正在运行，忽略本次触发", reason=reason)
            return self._last_result or ConsolidationResult(reason=reason, skipped=True)

        async with self._guard:
            start = time.perf_counter()
            result = ConsolidationResult(reason=reason, started_at=self._clock())
            self.consolidation_started.publish(ConsolidationStarted(reason=reason, started_at=result.started_at))
            logger.info("开始整合", reason=reason)

            records = self.store.get_by_recency(self.settings.max_memories_per_run)
            result.scanned = len(records)
            scored = await self._score(records)
            result.scored = len(scored)

            groups = self.find_groups(records, scored)
            result.groups_found = len(groups)

            for index, (topic, members) in enumerate(groups.items()):
                try:
                    await self._consolidate_group(topic, members, result)
                except Exception as e:
                    logger.error("分组整合失败", exc_info=True, topic=topic, error=str(e))
                    result.errors.append({"memory_id": topic, "error": str(e)})
                self.consolidation_progress.publish(ConsolidationProgress(
                    stage="consolidating",
                    processed=index + 1,
                    total=len(groups),
                    details={"topic": topic},
                ))
                await asyncio.sleep(0)

            if self.store.capacity_used() > self.settings.capacity_cleanup_ratio:
                result.cleanup_triggered = True
                result.cleanup = await self.cleanup.run_cleanup(reason="consolidation", force=True)

            result.completed_at = self._clock()
            result.duration_ms = (time.perf_counter() - start) * 1000
            self._last_result = result

        logger.info(
            "整合完成",
            reason=reason,
            scanned=result.scanned,
            groups=result.groups_consolidated,
            summaries=result.summaries_created,
            removed=result.records_removed,
            cleanup=result.cleanup_triggered,
            duration_ms=f"{result.duration_ms:.1f}"
        )
        self.consolidation_completed.publish(result)
        return result

    def get_status(self) -> dict:
        """获取整合状态：是否正在运行、上一次结果、各任务的下一次到期时间"""
        return {
            "running": self.running,
            "scheduler_running": self.scheduler.running,
            "last_result": self._last_result.model_dump() if self._last_result else None,
            "scheduler": self.scheduler.get_status(),
        }
