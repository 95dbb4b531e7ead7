"""
语义去重

该模块负责找出语义上近乎重复的记录并做处理：
- 同来源类型的记录两两比较余弦相似度
- 根据重要性、长度差异、时间间隔决定保留两条、合并或删除旧记录
- 合并时保留评分更高的一条，必要时把另一条中的新句子追加进来
"""

import asyncio
import re
import time
from typing import List, Optional, Set, Tuple

from retention_engine.core.embedding.embedding_service import EmbeddingService, cosine_similarity
from retention_engine.core.events import EventChannel
from retention_engine.core.vectordb.memory_vector_store import MemoryVectorStore
from retention_engine.core.vectordb.schemas import (
    MemoryRecord,
    RecordMetadata,
    SearchOptions,
    SourceType,
)
from retention_engine.schemas.config import DedupSettings
from retention_engine.utils.helpers import Clock, days_between, hours_between, system_clock
from retention_engine.utils.logger import get_logger

from .schemas import (
    DeduplicationResult,
    DuplicateAction,
    DuplicatePair,
    MergeResult,
    MergeStrategy,
)

logger = get_logger(__name__)

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_NON_WORD = re.compile(r"[^\w\s]")

MIN_SENTENCE_LENGTH = 10
MAX_NEW_SENTENCES = 4
LONGER_RATIO = 1.2
ALREADY_LONGER_RATIO = 1.1
SENTENCE_OVERLAP_THRESHOLD = 0.7
CHECK_SEARCH_LIMIT = 5


def extract_sentences(text: str) -> List[str]:
    """按 . ! ? 切分句子，去掉空句"""
    return [s.strip() for s in _SENTENCE_SPLIT.split(text or "") if s.strip()]


def sentences_similar(s1: str, s2: str) -> bool:
    """
    判断两个句子是否相似：互相包含，或词重叠（Dice 系数）超过 0.7
    """
    n1 = _NON_WORD.sub("", s1.lower()).strip()
    n2 = _NON_WORD.sub("", s2.lower()).strip()
    if n1 in n2 or n2 in n1:
        return True

    words1 = set(n1.split())
    words2 = set(n2.split())
    if not words1 and not words2:
        return True
    overlap = 2 * len(words1 & words2) / (len(words1) + len(words2))
    return overlap > SENTENCE_OVERLAP_THRESHOLD


class Deduplicator:
    """
    语义去重器

    Args:
        store: 向量存储
        embedding: 向量化服务（合并内容后重新向量化、检查新文本）
        settings: 去重配置
        clock: 时钟函数
    """

    def __init__(
        self,
        store: MemoryVectorStore,
        embedding: EmbeddingService,
        settings: Optional[DedupSettings] = None,
        clock: Clock = system_clock
    ):
        self.store = store
        self.embedding = embedding
        self.settings = settings or DedupSettings()
        self._clock = clock
        self._guard = asyncio.Lock()
        self._last_result: Optional[DeduplicationResult] = None

        self.deduplication_started: EventChannel[str] = EventChannel("deduplication_started")
        self.deduplication_completed: EventChannel[DeduplicationResult] = EventChannel("deduplication_completed")
        self.duplicate_found: EventChannel[DuplicatePair] = EventChannel("duplicate_found")
        self.memory_merged: EventChannel[MergeResult] = EventChannel("memory_merged")

    @property
    def running(self) -> bool:
        return self._guard.locked()

    @property
    def last_result(self) -> Optional[DeduplicationResult]:
        return self._last_result

    # ==================== 重复检测 ====================

    def find_duplicate_pairs(self, records: List[MemoryRecord]) -> List[DuplicatePair]:
        """
        找出所有重复记录对

        外层按 batch_size 分批，只比较来源类型相同的记录，每个无序对只比较一次。

        Args:
            records: 待比较记录

        Returns:
            List[DuplicatePair]: 按相似度倒序的重复对
        """
        pairs: List[DuplicatePair] = []
        checked: Set[Tuple[str, str]] = set()
        threshold = self.settings.similarity_threshold

        for offset in range(0, len(records), self.settings.batch_size):
            for first in records[offset:offset + self.settings.batch_size]:
                for second in records:
                    if first.id == second.id:
                        continue
                    key = tuple(sorted((first.id, second.id)))
                    if key in checked:
                        continue
                    checked.add(key)

                    if first.metadata.source_type != second.metadata.source_type:
                        continue

                    similarity = cosine_similarity(first.vector, second.vector)
                    if similarity >= threshold:
                        pairs.append(self.analyze_pair(first, second, similarity))

        pairs.sort(key=lambda pair: pair.similarity, reverse=True)
        return pairs

    def analyze_pair(self, first: MemoryRecord, second: MemoryRecord, similarity: float) -> DuplicatePair:
        """
        分析重复对，决定处理动作（按顺序，第一个满足的规则生效）

        Args:
            first: 记录一
            second: 记录二
            similarity: 相似度

        Returns:
            DuplicatePair: 带处理动作的重复对
        """
        settings = self.settings

        def pair(action: DuplicateAction, reason: str) -> DuplicatePair:
            return DuplicatePair(
                memory1=first, memory2=second, similarity=similarity, action=action, reason=reason
            )

        if (
            first.importance >= settings.preserve_importance_threshold
            and second.importance >= settings.preserve_importance_threshold
        ):
            return pair(DuplicateAction.KEEP_BOTH, "两条记录重要性都很高")

        longest = max(len(first.content), len(second.content))
        length_ratio = abs(len(first.content) - len(second.content)) / longest if longest else 0.0
        if length_ratio > settings.content_length_variation_ratio:
            return pair(DuplicateAction.KEEP_BOTH, f"内容长度差异较大 ({length_ratio * 100:.1f}%)")

        if hours_between(min(first.created_at, second.created_at), max(first.created_at, second.created_at)) \
                > settings.max_age_difference_hours:
            return pair(DuplicateAction.KEEP_BOTH, "两条记录时间间隔过大")

        if abs(first.importance - second.importance) > settings.importance_difference_threshold:
            return pair(DuplicateAction.MERGE, "保留更重要的记录")

        if similarity > settings.near_identical_threshold:
            return pair(DuplicateAction.REMOVE_OLDER, "内容几乎相同，保留较新的记录")

        return pair(DuplicateAction.MERGE, "合并语义相似的记录")

    # ==================== 合并 ====================

    def merge_score(self, record: MemoryRecord, now: Optional[float] = None) -> float:
        """
        合并评分（越高越应该保留）

        长度、重要性、访问次数、新近度加权求和，非摘要记录额外加分。
        """
        now = self._clock() if now is None else now
        s = self.settings
        age_days = days_between(record.created_at, now)
        score = len(record.content) * s.length_weight
        score += record.importance * s.importance_weight
        score += min(record.metadata.access_count, s.access_cap) * s.access_weight
        score += max(0.0, s.recency_window_days - age_days) * s.recency_weight
        if not record.metadata.is_summary:
            score += s.original_bonus
        return score

    @staticmethod
    def new_sentences(keep: MemoryRecord, remove: MemoryRecord) -> List[str]:
        """
        找出 remove 中 keep 没有的句子

        keep 已经明显更长时不做句子级合并，返回空列表。
        """
        if len(keep.content) >= len(remove.content) * ALREADY_LONGER_RATIO:
            return []

        existing = extract_sentences(keep.content)
        additions = []
        for sentence in extract_sentences(remove.content):
            if len(sentence) <= MIN_SENTENCE_LENGTH:
                continue
            if any(sentences_similar(sentence, other) for other in existing):
                continue
            additions.append(sentence)
        return additions

    async def _embed_merged(self, content: str, fallback_vector: List[float]) -> Tuple[List[float], bool]:
        try:
            vector = await self.embedding.embed_text(content)
            return [float(v) for v in vector], False
        except Exception as e:
            logger.warning("合并内容向量化失败，沿用原向量", error=str(e))
            return fallback_vector, True

    async def merge(self, first: MemoryRecord, second: MemoryRecord) -> MergeResult:
        """
        合并两条记录

        评分高的一条保留（平局保留 first），被保留记录的访问次数取和、重要性取最大值，
        另一条删除。

        Args:
            first: 记录一
            second: 记录二

        Returns:
            MergeResult: 合并结果
        """
        now = self._clock()
        if self.merge_score(first, now) >= self.merge_score(second, now):
            keep, remove = first, second
        else:
            keep, remove = second, first

        content_merged = False
        used_fallback = False
        added: List[str] = []

        if len(keep.content) > len(remove.content) * LONGER_RATIO:
            strategy = MergeStrategy.KEEP_LONGER
        elif keep.importance > remove.importance:
            strategy = MergeStrategy.KEEP_IMPORTANT
        elif keep.created_at > remove.created_at:
            strategy = MergeStrategy.KEEP_NEWER
        else:
            added = self.new_sentences(keep, remove)
            if 0 < len(added) <= MAX_NEW_SENTENCES:
                merged_content = keep.content + " " + " ".join(added)
                vector, used_fallback = await self._embed_merged(merged_content, keep.vector)
                await self.store.update_content(keep.id, merged_content, vector)
                content_merged = True
                strategy = MergeStrategy.MERGE_CONTENT
            else:
                added = []
                strategy = MergeStrategy.KEEP_NEWER

        await self.store.update_metadata(keep.id, {
            "access_count": keep.metadata.access_count + remove.metadata.access_count,
            "importance": max(keep.importance, remove.importance),
            "extensions": {
                "merged_from": keep.metadata.extensions.merged_from + [remove.id],
                "merged_at": now,
                "merge_strategy": strategy.value,
            },
        })
        await self.store.delete(remove.id)

        result = MergeResult(
            kept_id=keep.id,
            removed_id=remove.id,
            strategy=strategy,
            content_merged=content_merged,
            new_sentences=len(added),
            used_fallback=used_fallback,
        )
        logger.debug(
            "记录已合并",
            kept_id=keep.id,
            removed_id=remove.id,
            strategy=strategy.value,
            content_merged=content_merged
        )
        self.memory_merged.publish(result)
        return result

    # ==================== 去重运行 ====================

    async def _refresh_pair(self, pair: DuplicatePair) -> Optional[DuplicatePair]:
        """
        读取重复对两条记录的当前版本并重新分析

        Returns:
            Optional[DuplicatePair]: 新的重复对；任一记录已不存在或不再相似时返回None
        """
        first = await self.store.get(pair.memory1.id)
        second = await self.store.get(pair.memory2.id)
        if first is None or second is None:
            return None
        similarity = cosine_similarity(first.vector, second.vector)
        if similarity < self.settings.similarity_threshold:
            return None
        return self.analyze_pair(first, second, similarity)

    async def run_deduplication(self, reason: str = "manual") -> DeduplicationResult:
        """
        执行一次去重

        扫描最近的 max_memories_per_run 条记录，按相似度从高到低处理重复对，
        已处理过的记录不再参与后续重复对。已有去重在运行时直接返回上一次结果。

        Args:
            reason: 触发原因

        Returns:
            DeduplicationResult: 去重结果
        """
        if self._guard.locked():
            logger.warning("去重正在运行，忽略本次触发", reason=reason)
            return self._last_result or DeduplicationResult(reason=reason, skipped=True)

        async with self._guard:
            self.deduplication_started.publish(reason)
            start = time.perf_counter()
            result = DeduplicationResult(reason=reason)

            records = self.store.get_by_recency(self.settings.max_memories_per_run)
            result.scanned = len(records)
            pairs = self.find_duplicate_pairs(records)
            result.pairs_found = len(pairs)

            processed: Set[str] = set()
            for index, pair in enumerate(pairs):
                if pair.memory1.id in processed or pair.memory2.id in processed:
                    continue

                try:
                    # 前面的合并可能已经修改了记录，按当前数据重新分析
                    pair = await self._refresh_pair(pair)
                except Exception as e:
                    logger.error("读取重复对失败", pair=f"{pair.memory1.id},{pair.memory2.id}", error=str(e))
                    result.errors.append({"memory_id": f"{pair.memory1.id},{pair.memory2.id}", "error": str(e)})
                    continue
                if pair is None:
                    continue
                first, second = pair.memory1, pair.memory2

                self.duplicate_found.publish(pair)
                try:
                    if pair.action == DuplicateAction.MERGE:
                        merged = await self.merge(first, second)
                        result.merges.append(merged)
                        result.merged += 1
                        result.removed += 1
                        processed.add(merged.removed_id)
                    elif pair.action == DuplicateAction.REMOVE_OLDER:
                        older = first if first.created_at < second.created_at else second
                        await self.store.delete(older.id)
                        result.removed += 1
                        processed.add(older.id)
                    else:
                        result.preserved += 2
                        processed.update((first.id, second.id))
                except Exception as e:
                    logger.error("处理重复对失败", pair=f"{first.id},{second.id}", error=str(e))
                    result.errors.append({"memory_id": f"{first.id},{second.id}", "error": str(e)})

                if (index + 1) % self.settings.batch_size == 0:
                    await asyncio.sleep(0)

            result.duration_ms = (time.perf_counter() - start) * 1000
            self._last_result = result

        logger.info(
            "去重完成",
            reason=reason,
            scanned=result.scanned,
            pairs=result.pairs_found,
            merged=result.merged,
            removed=result.removed,
            preserved=result.preserved
        )
        self.deduplication_completed.publish(result)
        return result

    async def find_duplicates_for(self, record_id: str) -> List[DuplicatePair]:
        """
        查找与指定记录重复的记录

        Returns:
            List[DuplicatePair]: 按相似度倒序的重复对，记录不存在时返回空列表
        """
        record = await self.store.get(record_id)
        if record is None:
            return []

        pairs = []
        for other in self.store.get_by_recency(self.settings.max_memories_per_run):
            if other.id == record_id or other.metadata.source_type != record.metadata.source_type:
                continue
            similarity = cosine_similarity(record.vector, other.vector)
            if similarity >= self.settings.similarity_threshold:
                pairs.append(self.analyze_pair(record, other, similarity))
        pairs.sort(key=lambda pair: pair.similarity, reverse=True)
        return pairs

    async def check_for_duplicate(self, content: str) -> Optional[DuplicatePair]:
        """
        检查一段新文本是否与已有记录重复（不修改存储，也不更新访问统计）

        Args:
            content: 新文本

        Returns:
            Optional[DuplicatePair]: 与最相似记录组成的重复对，没有时返回None
        """
        vector = [float(v) for v in await self.embedding.embed_text(content)]
        results = await self.store.search(vector, SearchOptions(
            limit=CHECK_SEARCH_LIMIT,
            min_score=self.settings.similarity_threshold,
            track_access=False,
        ))
        if not results:
            return None

        now = self._clock()
        candidate = MemoryRecord(
            id="candidate",
            vector=vector,
            content=content,
            metadata=RecordMetadata(
                source_type=SourceType.OTHER,
                importance=0.5,
                created_at=now,
                accessed_at=now,
            ),
        )
        best = results[0]
        return self.analyze_pair(candidate, best.record, best.score)

    def get_stats(self) -> dict:
        return {
            "running": self.running,
            "last_result": self._last_result.model_dump() if self._last_result else None,
            "settings": self.settings.model_dump(),
        }
