"""
遗忘机制

该模块实现了基于保留策略的记忆衰减与遗忘：
- 时间衰减：超过基础保留期后按策略的衰减曲线降低重要性
- 访问强化：被访问的记忆重要性提升
- 主动遗忘：低价值且超过最长保留期的记忆自动删除，低分记忆标记为待整合
- 手动遗忘：按ID、内容、标签、时间范围删除，受保护记忆需要 force
- 合规删除：委托给 DeletionRequestProcessor
"""

import asyncio
import math
import re
import time
from typing import Dict, List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError

from retention_engine.core.events import EventChannel
from retention_engine.core.vectordb.memory_vector_store import MemoryVectorStore
from retention_engine.core.vectordb.schemas import DeleteResult, MemoryRecord
from retention_engine.schemas.config import ForgettingSettings
from retention_engine.utils.exceptions import ValidationError
from retention_engine.utils.helpers import Clock, hours_between, system_clock
from retention_engine.utils.logger import get_logger

from .deletion_requests import DeletionRequestProcessor
from .importance_scorer import ImportanceScorer
from .retention_policy import PolicyResolver
from .schemas import (
    DateRange,
    DecayAction,
    DecayCurve,
    DecayResult,
    DecayStarted,
    DeletionRequest,
    DeletionScope,
    ForgetOptions,
    ForgetOutcome,
    ForgetResult,
    ForgetStatus,
    ForgettingBatchResult,
    MemoryForgotten,
    MemoryProtected,
    ReinforcementEvent,
    RetentionPolicy,
)

logger = get_logger(__name__)

# 阶梯衰减的进度分界（占 max - base 的比例）
STEP_BOUNDARIES = (0.25, 0.5, 0.75, 1.0)
RECENT_ACCESS_HOURS = 24.0
SCORE_EPSILON = 1e-9


class ForgettingEngine:
    """
    遗忘引擎

    衰减总是从记录的基线重要性按年龄计算，重复执行不会叠加衰减；
    记录的重要性被其他途径修改（强化、合并）后，基线随之更新。

    Args:
        store: 向量存储
        scorer: 重要性评分器（识别类别）
        deletion_processor: 合规删除处理器
        settings: 遗忘配置
        policies: 保留策略匹配器
        clock: 时钟函数
    """

    def __init__(
        self,
        store: MemoryVectorStore,
        scorer: ImportanceScorer,
        deletion_processor: DeletionRequestProcessor,
        settings: Optional[ForgettingSettings] = None,
        policies: Optional[PolicyResolver] = None,
        clock: Clock = system_clock
    ):
        self.store = store
        self.scorer = scorer
        self.deletion_processor = deletion_processor
        self.settings = settings or ForgettingSettings()
        self.policies = policies or PolicyResolver()
        self._clock = clock

        self._guard = asyncio.Lock()
        self._last_result: Optional[ForgettingBatchResult] = None
        # 记录ID -> (访问次数, 最近访问时间)
        self._access_history: Dict[str, Tuple[int, float]] = {}
        self._baselines: Dict[str, float] = {}
        self._written: Dict[str, float] = {}

        self.decay_started: EventChannel[DecayStarted] = EventChannel("decay_started")
        self.decay_completed: EventChannel[ForgettingBatchResult] = EventChannel("decay_completed")
        self.memory_forgotten: EventChannel[MemoryForgotten] = EventChannel("memory_forgotten")
        self.memory_protected: EventChannel[MemoryProtected] = EventChannel("memory_protected")
        self.memory_reinforced: EventChannel[ReinforcementEvent] = EventChannel("memory_reinforced")

        self._deletion_subscription = deletion_processor.deletion_completed.subscribe(self._on_deletion_completed)

    @property
    def running(self) -> bool:
        return self._guard.locked()

    @property
    def last_result(self) -> Optional[ForgettingBatchResult]:
        return self._last_result

    # ==================== 衰减算法 ====================

    def decay(self, score: float, age_hours: float, policy: RetentionPolicy) -> float:
        """
        按策略的衰减曲线计算衰减后的分数

        Args:
            score: 原始分数
            age_hours: 年龄（小时）
            policy: 保留策略

        Returns:
            float: 衰减后的分数，不低于 deletion_threshold × 0.5
        """
        if age_hours < policy.base_retention_hours:
            return score

        effective = age_hours - policy.base_retention_hours
        span = policy.max_retention_hours - policy.base_retention_hours
        progress = effective / span if span > 0 else math.inf

        if policy.decay_curve == DecayCurve.EXPONENTIAL:
            decayed = score * 0.5 ** (effective / policy.half_life_hours)
        elif policy.decay_curve == DecayCurve.LINEAR:
            decayed = score * (1 - min(1.0, progress))
        elif policy.decay_curve == DecayCurve.STEPPED:
            multipliers = self.settings.stepped_multipliers
            decayed = score * multipliers[-1]
            for boundary, multiplier in zip(STEP_BOUNDARIES, multipliers):
                if progress < boundary:
                    decayed = score * multiplier
                    break
        elif policy.decay_curve == DecayCurve.LOGARITHMIC:
            decayed = score / (1 + math.log2(1 + effective / policy.half_life_hours))
        else:
            decayed = score

        return max(self.settings.deletion_threshold * 0.5, decayed)

    def access_boost(self, access_count: int, hours_since_access: float) -> float:
        """
        访问强化量：访问次数的对数增益（有上限），最近 24 小时内的访问不打折扣
        """
        count_boost = min(
            self.settings.max_access_boost,
            math.log2(1 + access_count) * self.settings.access_boost_factor
        )
        if hours_since_access < RECENT_ACCESS_HOURS:
            recency = 1.0
        else:
            recency = 1 / math.log2(1 + hours_since_access / RECENT_ACCESS_HOURS)
        return count_boost * recency

    # ==================== 策略与保护 ====================

    def resolve_policy(self, record: MemoryRecord) -> Tuple[RetentionPolicy, str]:
        """
        查找记录适用的保留策略

        类别优先取元数据中记录的类别，没有时按内容识别；内容没有命中任何类别规则时
        依次按标签、来源类型匹配。

        Returns:
            Tuple[RetentionPolicy, str]: (策略, 类别，没有类别时为空字符串)
        """
        category = record.metadata.category
        if not category:
            matched = self.scorer.match_category(record.content)
            category = matched.value if matched is not None else ""
        policy = self.policies.resolve(
            category=category or None,
            source_type=record.metadata.source_type.value,
            tags=record.metadata.tags,
        )
        return policy, category

    def is_protected(self, record: MemoryRecord) -> bool:
        policy, _ = self.resolve_policy(record)
        return policy.is_permanent or record.importance >= policy.protection_threshold

    def add_retention_policy(self, policy: RetentionPolicy) -> None:
        self.policies.add_policy(policy)

    # ==================== 访问强化 ====================

    async def record_access(self, record_id: str) -> Optional[ReinforcementEvent]:
        """
        记录一次访问并强化记录

        Returns:
            Optional[ReinforcementEvent]: 强化事件，记录不存在时返回None
        """
        count, _ = self._access_history.get(record_id, (0, 0.0))
        count += 1
        self._access_history[record_id] = (count, self._clock())
        return await self.reinforce(record_id, count)

    async def reinforce(self, record_id: str, access_count: int) -> Optional[ReinforcementEvent]:
        """
        按访问次数提升记录重要性（通过 update_metadata 写回）
        """
        record = await self.store.get(record_id)
        if record is None:
            self._access_history.pop(record_id, None)
            return None

        boost = self.access_boost(access_count, 0.0)
        old_importance = record.importance
        new_importance = min(1.0, old_importance + boost)
        updated = await self.store.update_metadata(record_id, {"importance": new_importance})
        if updated is None:
            return None

        event = ReinforcementEvent(
            record_id=record_id,
            old_importance=old_importance,
            new_importance=new_importance,
            boost=boost,
        )
        logger.debug(
            "记忆已强化",
            memory_id=record_id,
            old_score=f"{old_importance:.2f}",
            new_score=f"{new_importance:.2f}",
            boost=f"{boost:.2f}"
        )
        self.memory_reinforced.publish(event)
        return event

    def access_history(self, record_id: str) -> Optional[Tuple[int, float]]:
        return self._access_history.get(record_id)

    # ==================== 衰减处理 ====================

    def _baseline(self, record: MemoryRecord) -> float:
        written = self._written.get(record.id)
        baseline = self._baselines.get(record.id)
        if baseline is None or written is None or abs(record.importance - written) > SCORE_EPSILON:
            baseline = record.importance
            self._baselines[record.id] = baseline
            self._written.pop(record.id, None)
        return baseline

    def evaluate(self, record: MemoryRecord, now: Optional[float] = None) -> DecayResult:
        """
        计算单条记录的衰减结论（不修改存储）

        判定顺序：永久策略 → 高于保护阈值 → 低于删除阈值且超过最长保留期 →
        低于整合阈值且允许整合 → 衰减（分数未下降时为 kept）。

        Args:
            record: 记录
            now: 当前时间

        Returns:
            DecayResult: 衰减结论
        """
        now = self._clock() if now is None else now
        policy, _ = self.resolve_policy(record)
        age_hours = hours_between(record.created_at, now)
        original = self._baseline(record)

        def result(action: DecayAction, decayed: float, boost: float, reason: str) -> DecayResult:
            return DecayResult(
                record_id=record.id,
                policy=policy.name,
                level=policy.level,
                original_score=original,
                decayed_score=decayed,
                access_boost=boost,
                age_hours=age_hours,
                action=action,
                reason=reason,
            )

        if policy.is_permanent:
            return result(DecayAction.PROTECTED, record.importance, 0.0, "永久保留策略")

        decayed = self.decay(original, age_hours, policy)
        boost = 0.0
        history = self._access_history.get(record.id)
        if history is not None:
            count, last_access = history
            boost = self.access_boost(count, hours_between(last_access, now))
            decayed = min(1.0, decayed + boost)

        if decayed >= policy.protection_threshold:
            return result(
                DecayAction.PROTECTED, decayed, boost,
                f"分数 {decayed:.2f} 不低于保护阈值 {policy.protection_threshold}"
            )

        if decayed <= self.settings.deletion_threshold and age_hours > policy.max_retention_hours:
            return result(
                DecayAction.FLAGGED_FOR_DELETION, decayed, boost,
                f"分数 {decayed:.2f} 低于删除阈值，年龄 {age_hours:.0f}h 超过 {policy.max_retention_hours}h"
            )

        if decayed <= self.settings.consolidation_threshold and policy.allow_consolidation:
            return result(
                DecayAction.FLAGGED_FOR_CONSOLIDATION, decayed, boost,
                f"分数 {decayed:.2f} 低于整合阈值 {self.settings.consolidation_threshold}"
            )

        if decayed < record.importance - SCORE_EPSILON:
            return result(DecayAction.DECAYED, decayed, boost, f"应用 {policy.decay_curve.value} 衰减")

        return result(DecayAction.KEPT, decayed, boost, "分数未下降")

    async def process_decay(self, reason: str = "scheduled") -> ForgettingBatchResult:
        """
        对所有记录执行一次衰减处理

        按 batch_size 分批处理，批次之间让出事件循环；
        已有衰减处理在运行时直接返回上一次结果。

        Args:
            reason: 触发原因

        Returns:
            ForgettingBatchResult: 批处理结果
        """
        if self._guard.locked():
            logger.warning("衰减处理正在运行，忽略本次触发", reason=reason)
            return self._last_result or ForgettingBatchResult(reason=reason, skipped=True)

        async with self._guard:
            start = time.perf_counter()
            records = self.store.list_records()
            self.decay_started.publish(DecayStarted(
                reason=reason, record_count=len(records), started_at=self._clock()
            ))
            logger.info("开始衰减处理", reason=reason, memory_count=len(records))

            batch = ForgettingBatchResult(reason=reason)
            batch_size = self.settings.batch_size
            for offset in range(0, len(records), batch_size):
                now = self._clock()
                for record in records[offset:offset + batch_size]:
                    try:
                        await self._apply(record, now, batch)
                    except Exception as e:
                        logger.error("记录衰减处理失败", memory_id=record.id, error=str(e))
                        batch.errors.append({"memory_id": record.id, "error": str(e)})
                await asyncio.sleep(0)

            batch.processed = len(batch.results)
            batch.duration_ms = (time.perf_counter() - start) * 1000
            self._last_result = batch

        logger.info(
            "衰减处理完成",
            reason=reason,
            processed=batch.processed,
            decayed=batch.decayed,
            deleted=batch.deleted,
            consolidated=batch.consolidated,
            protected=batch.protected,
            duration_ms=f"{batch.duration_ms:.1f}"
        )
        self.decay_completed.publish(batch)
        return batch

    async def _apply(self, record: MemoryRecord, now: float, batch: ForgettingBatchResult) -> None:
        decision = self.evaluate(record, now)

        if decision.action == DecayAction.FLAGGED_FOR_DELETION:
            deleted = await self.delete_memory(record.id, "decay")
            if not deleted.deleted:
                return
            batch.deleted += 1
        elif decision.action == DecayAction.DECAYED:
            updated = await self.store.update_metadata(record.id, {"importance": decision.decayed_score})
            if updated is None:
                return
            self._written[record.id] = updated.importance
            batch.decayed += 1
        elif decision.action == DecayAction.FLAGGED_FOR_CONSOLIDATION:
            batch.consolidated += 1
        elif decision.action == DecayAction.PROTECTED:
            batch.protected += 1
        else:
            batch.kept += 1
        batch.results.append(decision)

    # ==================== 删除 ====================

    def drop_state(self, record_id: str) -> None:
        """清理记录的派生状态（访问历史、衰减基线、评分缓存）"""
        self._access_history.pop(record_id, None)
        self._baselines.pop(record_id, None)
        self._written.pop(record_id, None)
        self.scorer.forget_score(record_id)

    def _on_deletion_completed(self, request: DeletionRequest) -> None:
        for record_id in request.deleted_ids:
            self.drop_state(record_id)

    async def delete_memory(self, record_id: str, reason: str) -> DeleteResult:
        """
        从存储删除记录并清理派生状态

        Returns:
            DeleteResult: deleted 或 not_found
        """
        result = await self.store.delete(record_id)
        self.drop_state(record_id)
        if result.deleted:
            logger.debug("记忆已删除", memory_id=record_id, reason=reason)
            self.memory_forgotten.publish(MemoryForgotten(record_id=record_id, reason=reason))
        return result

    def _collect_targets(self, options: ForgetOptions) -> List[str]:
        targets: List[str] = list(options.memory_ids)
        records = self.store.list_records() if (options.content_pattern or options.date_range) else []

        if options.content_pattern:
            try:
                pattern = re.compile(options.content_pattern, re.IGNORECASE)
            except re.error as e:
                raise ValidationError(f"内容正则不合法: {e}", details={"pattern": options.content_pattern})
            targets.extend(record.id for record in records if pattern.search(record.content))

        if options.tags:
            tagged: Set[str] = set()
            for tag in options.tags:
                tagged.update(self.store.ids_by_tag(tag))
            targets.extend(sorted(tagged))

        if options.date_range:
            targets.extend(
                record.id for record in records if options.date_range.contains(record.created_at)
            )

        return list(dict.fromkeys(targets))

    async def forget(self, options: ForgetOptions) -> ForgetResult:
        """
        手动遗忘

        目标为 memory_ids、content_pattern、tags、date_range 命中记录的并集；
        受保护的记录除非 force 否则跳过，不存在的记录记为 not_found。

        Args:
            options: 遗忘选项

        Returns:
            ForgetResult: 遗忘结果

        Raises:
            ValidationError: 内容正则不合法
        """
        start = time.perf_counter()
        targets = self._collect_targets(options)
        logger.info(
            "收到手动遗忘请求",
            targets=len(targets),
            force=options.force,
            reason=options.reason
        )

        result = ForgetResult(processed=len(targets))
        for record_id in targets:
            try:
                record = await self.store.get(record_id)
                if record is None:
                    result.not_found += 1
                    result.outcomes.append(ForgetOutcome(memory_id=record_id, status=ForgetStatus.NOT_FOUND))
                    continue

                if not options.force and self.is_protected(record):
                    result.protected += 1
                    result.outcomes.append(ForgetOutcome(
                        memory_id=record_id,
                        status=ForgetStatus.PROTECTED,
                        reason="记忆受保护，使用 force=True 强制删除",
                    ))
                    self.memory_protected.publish(MemoryProtected(
                        record_id=record_id, importance=record.importance, reason="forget"
                    ))
                    continue

                deleted = await self.delete_memory(record_id, options.reason)
                if deleted.deleted:
                    result.deleted += 1
                    result.outcomes.append(ForgetOutcome(
                        memory_id=record_id, status=ForgetStatus.DELETED, reason=options.reason
                    ))
                else:
                    result.not_found += 1
                    result.outcomes.append(ForgetOutcome(memory_id=record_id, status=ForgetStatus.NOT_FOUND))
            except Exception as e:
                logger.error("遗忘记录失败", memory_id=record_id, error=str(e))
                result.errors.append({"memory_id": record_id, "error": str(e)})

        result.duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "手动遗忘完成",
            processed=result.processed,
            deleted=result.deleted,
            protected=result.protected,
            errors=len(result.errors)
        )
        return result

    async def submit_deletion_request(
        self,
        scope: DeletionScope,
        memory_ids: Optional[List[str]] = None,
        date_range: Optional[DateRange] = None,
        categories: Optional[List[str]] = None,
        include_vector_store: bool = True
    ) -> DeletionRequest:
        """提交合规删除请求（同步处理完成后返回）"""
        return await self.deletion_processor.submit(
            scope,
            memory_ids=memory_ids,
            date_range=date_range,
            categories=categories,
            include_vector_store=include_vector_store,
        )

    # ==================== 统计与配置 ====================

    def update_settings(self, **changes) -> ForgettingSettings:
        """
        更新遗忘配置（整体校验后替换）

        Raises:
            ValidationError: 配置不合法
        """
        try:
            self.settings = ForgettingSettings(**{**self.settings.model_dump(), **changes})
        except PydanticValidationError as e:
            raise ValidationError(f"遗忘配置不合法: {e}", details={"changes": list(changes)})
        logger.info("遗忘配置已更新", changes=list(changes))
        return self.settings

    def get_stats(self) -> dict:
        return {
            "running": self.running,
            "access_history_size": len(self._access_history),
            "policies": [policy.name for policy in self.policies.policies],
            "deletion_requests": len(self.deletion_processor.list_requests()),
            "last_result": self._last_result.model_dump(exclude={"results"}) if self._last_result else None,
        }
