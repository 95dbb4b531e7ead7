"""
重要性评分器

该模块负责计算记忆内容的重要性分数，基于以下规则：
- 类别识别：每个类别有一组有序的正则规则和否定规则
- 加成关键词：命中关键词累加加成（上限 0.5）
- 长度和具体性加成：较长文本、包含日期或数字的文本得分更高
- 时间衰减：事实、偏好、指令类不衰减，其余按半衰期指数衰减
- 层级划分：long_term / working / short_term
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from retention_engine.core.events import EventChannel
from retention_engine.core.vectordb.schemas import MemoryRecord
from retention_engine.schemas.config import ScorerSettings
from retention_engine.utils.helpers import Clock, clamp01, hours_between, system_clock

from .schemas import MemoryCategory, MemoryTier, ScoredMemory, TierChange

logger = logging.getLogger(__name__)


def _compile(patterns: Iterable[str]) -> List[Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


@dataclass
class CategoryDefinition:
    """类别定义：权重 + 有序匹配规则 + 否定规则"""
    category: MemoryCategory
    weight: float
    rules: List[Pattern]
    negative_rules: List[Pattern] = field(default_factory=list)


_QUESTION_END = r"\?\s*$"

DEFAULT_CATEGORIES: List[CategoryDefinition] = [
    CategoryDefinition(MemoryCategory.USER_FACT, 0.8, _compile([
        r"\bmy name is\b",
        r"\bi(?: am|'m) (?:a|an|from)\b",
        r"\bi live in\b",
        r"\bi work (?:at|as|for|in)\b",
        r"\bmy (?:wife|husband|partner|son|daughter|mother|father|brother|sister|birthday|email|phone|address)\b",
        r"\bi was born\b",
        r"\bi have (?:a|an|two|three) (?:dog|cat|kid|kids|child|children)\b",
    ]), _compile([_QUESTION_END])),
    CategoryDefinition(MemoryCategory.USER_PREFERENCE, 0.75, _compile([
        r"\bi (?:really )?(?:like|love|enjoy|prefer)\b",
        r"\bi (?:hate|dislike|can't stand|don't like)\b",
        r"\bmy fav(?:ou)?rite\b",
        r"\bi'd rather\b",
    ]), _compile([_QUESTION_END, r"\bwould you like\b"])),
    CategoryDefinition(MemoryCategory.INSTRUCTION, 0.8, _compile([
        r"\bfrom now on\b",
        r"\b(?:always|never)\b",
        r"\bmake sure (?:to|you)\b",
        r"\bremember (?:to|that)\b",
        r"\bplease (?:do not|don't|always|never)\b",
    ]), _compile([_QUESTION_END])),
    CategoryDefinition(MemoryCategory.DECISION, 0.7, _compile([
        r"\bwe(?:'ve| have)? decided\b",
        r"\bi(?:'ve| have)? decided\b",
        r"\blet's go with\b",
        r"\bthe decision is\b",
        r"\b(?:we|i) (?:chose|picked|settled on)\b",
    ]), _compile([_QUESTION_END])),
    CategoryDefinition(MemoryCategory.CORRECTION, 0.7, _compile([
        r"\bactually\b",
        r"\bthat(?:'s| is) (?:not right|wrong|incorrect)\b",
        r"\bi meant\b",
        r"\bcorrection\b",
        r"\bno,? it(?:'s| is)\b",
    ])),
    CategoryDefinition(MemoryCategory.FEEDBACK, 0.6, _compile([
        r"\b(?:great|good|nice|excellent) (?:job|work)\b",
        r"\bthat (?:was|is) (?:very )?(?:helpful|useful|unhelpful|wrong)\b",
        r"\bthank(?:s| you)\b",
        r"\bi (?:didn't|did not) like (?:that|your|the)\b",
    ])),
    CategoryDefinition(MemoryCategory.TASK, 0.55, _compile([
        r"\b(?:todo|to-do|task)\b",
        r"\bi need to\b",
        r"\bremind me\b",
        r"\bdeadline\b",
        r"\b(?:by|before|due) (?:monday|tuesday|wednesday|thursday|friday|saturday|sunday|tomorrow|tonight|next week)\b",
    ])),
    CategoryDefinition(MemoryCategory.AGREEMENT, 0.5, _compile([
        r"\b(?:ok|okay|sure|agreed|deal)\b",
        r"\bsounds good\b",
        r"\blet's do (?:it|that)\b",
        r"\bi agree\b",
    ]), _compile([_QUESTION_END])),
    CategoryDefinition(MemoryCategory.QUESTION, 0.35, _compile([
        _QUESTION_END,
        r"^\s*(?:what|why|how|when|where|who|which|can|could|would|should|is|are|do|does)\b",
    ])),
    CategoryDefinition(MemoryCategory.CASUAL, 0.15, _compile([
        r"\b(?:hi|hello|hey|lol|haha)\b",
        r"\bweather\b",
        r"\bhow are you\b",
        r"\bgood (?:morning|night|evening)\b",
    ])),
]

DEFAULT_BOOSTERS: Dict[str, float] = {
    "important": 0.2,
    "critical": 0.25,
    "urgent": 0.2,
    "remember": 0.15,
    "don't forget": 0.2,
    "must": 0.1,
    "deadline": 0.15,
    "allergic": 0.25,
    "birthday": 0.15,
    "password": 0.1,
    "never": 0.1,
    "always": 0.1,
}

_SPECIFICITY_PATTERN = re.compile(
    r"\d|\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\b",
    re.IGNORECASE
)

LENGTH_BONUS_CAP = 0.1
LENGTH_BONUS_DIVISOR = 2000.0
SPECIFICITY_BONUS = 0.1
# 没有命中任何规则时的置信度（命中规则时置信度不低于 0.5）
UNMATCHED_CONFIDENCE = 0.3


class ImportanceScorer:
    """
    重要性评分器

    评分结果按记录ID缓存，每次 score_record 都会重新计算；
    promote / demote 的调整量单独保存，重新评分时仍然生效。

    Args:
        settings: 评分配置
        clock: 时钟函数
        categories: 类别定义（默认使用内置英文规则）
        boosters: 加成关键词表
    """

    def __init__(
        self,
        settings: Optional[ScorerSettings] = None,
        clock: Clock = system_clock,
        categories: Optional[List[CategoryDefinition]] = None,
        boosters: Optional[Dict[str, float]] = None
    ):
        self.settings = settings or ScorerSettings()
        self._clock = clock
        self.categories = categories or DEFAULT_CATEGORIES
        self._weights = {definition.category: definition.weight for definition in self.categories}
        self._booster_patterns = [
            (keyword, re.compile(r"\b" + re.escape(keyword) + r"\b", re.IGNORECASE), weight)
            for keyword, weight in (boosters or DEFAULT_BOOSTERS).items()
        ]
        self._no_decay = set(self.settings.no_decay_categories)

        self._scores: Dict[str, ScoredMemory] = {}
        self._adjustments: Dict[str, float] = {}

        self.tier_changed: EventChannel[TierChange] = EventChannel("tier_changed")

    # ==================== 文本分析 ====================

    def detect_category(self, text: str) -> Tuple[MemoryCategory, float]:
        """
        识别文本类别

        每命中一条规则 +1，每命中一条否定规则 -0.5，取最高分的类别（平局按声明顺序）。

        Args:
            text: 文本

        Returns:
            Tuple[MemoryCategory, float]: (类别, 置信度)
        """
        text = text or ""
        scores = []
        for definition in self.categories:
            score = sum(1.0 for rule in definition.rules if rule.search(text))
            score -= sum(0.5 for rule in definition.negative_rules if rule.search(text))
            scores.append((definition.category, score))

        # sorted 是稳定排序，平局时保持声明顺序
        ranked = sorted(scores, key=lambda item: item[1], reverse=True)
        top_category, top_score = ranked[0]
        if top_score <= 0:
            return MemoryCategory.CASUAL, UNMATCHED_CONFIDENCE

        second_score = ranked[1][1] if len(ranked) > 1 else 0.0
        return top_category, clamp01(0.5 + 0.25 * (top_score - second_score))

    def match_category(self, text: str) -> Optional[MemoryCategory]:
        """与 detect_category 相同，但没有命中任何规则时返回 None"""
        category, confidence = self.detect_category(text)
        return None if confidence <= UNMATCHED_CONFIDENCE else category

    def find_boosters(self, text: str) -> Tuple[List[str], float]:
        """
        查找加成关键词

        Returns:
            Tuple[List[str], float]: (命中的关键词, 加成总和，上限 booster_cap)
        """
        matched = []
        total = 0.0
        for keyword, pattern, weight in self._booster_patterns:
            if pattern.search(text or ""):
                matched.append(keyword)
                total += weight
        return matched, min(self.settings.booster_cap, total)

    @staticmethod
    def length_bonus(text: str) -> float:
        return min(LENGTH_BONUS_CAP, len(text or "") / LENGTH_BONUS_DIVISOR)

    @staticmethod
    def specificity_bonus(text: str) -> float:
        return SPECIFICITY_BONUS if _SPECIFICITY_PATTERN.search(text or "") else 0.0

    def category_weight(self, category: MemoryCategory) -> float:
        return self._weights.get(category, 0.0)

    def base_score(self, text: str) -> float:
        """
        文本基础分 = 类别权重 + 关键词加成 + 长度加成 + 具体性加成（限制在 0-1）
        """
        category, _ = self.detect_category(text)
        _, boost = self.find_boosters(text)
        return clamp01(
            self.category_weight(category)
            + boost
            + self.length_bonus(text)
            + self.specificity_bonus(text)
        )

    # ==================== 衰减与层级 ====================

    def apply_time_decay(self, score: float, age_hours: float, category: MemoryCategory) -> float:
        """
        按半衰期做指数衰减，不衰减类别原样返回

        Args:
            score: 原始分数
            age_hours: 年龄（小时）
            category: 类别

        Returns:
            float: 衰减后的分数（不低于 min_score）
        """
        if category.value in self._no_decay:
            return score
        decayed = score * 0.5 ** (max(0.0, age_hours) / self.settings.half_life_hours)
        return max(self.settings.min_score, decayed)

    def tier_for(self, final_score: float) -> MemoryTier:
        if final_score >= self.settings.long_term_threshold:
            return MemoryTier.LONG_TERM
        if final_score >= self.settings.working_threshold:
            return MemoryTier.WORKING
        return MemoryTier.SHORT_TERM

    # ==================== 评分 ====================

    def score_text(self, text: str) -> ScoredMemory:
        """
        对一段新文本评分（不进入缓存）
        """
        category, confidence = self.detect_category(text)
        boosters, _ = self.find_boosters(text)
        raw = self.base_score(text)
        return ScoredMemory(
            record_id="",
            category=category,
            confidence=confidence,
            raw_score=raw,
            final_score=raw,
            tier=self.tier_for(raw),
            boosters=boosters,
            scored_at=self._clock(),
        )

    def score_record(self, record: MemoryRecord, now: Optional[float] = None) -> ScoredMemory:
        """
        对存储中的记录评分

        原始分取记录的 importance（加上 promote/demote 的调整量），
        最终分为按类别做时间衰减后的结果。

        Args:
            record: 记录
            now: 当前时间

        Returns:
            ScoredMemory: 评分结果
        """
        now = self._clock() if now is None else now
        category, confidence = self.detect_category(record.content)
        boosters, _ = self.find_boosters(record.content)
        age_hours = hours_between(record.metadata.created_at, now)

        raw = clamp01(record.metadata.importance + self._adjustments.get(record.id, 0.0))
        final = self.apply_time_decay(raw, age_hours, category)
        scored = ScoredMemory(
            record_id=record.id,
            category=category,
            confidence=confidence,
            raw_score=raw,
            final_score=final,
            tier=self.tier_for(final),
            boosters=boosters,
            age_hours=age_hours,
            scored_at=now,
        )

        previous = self._scores.get(record.id)
        self._scores[record.id] = scored
        if previous is not None and previous.tier != scored.tier:
            self._emit_tier_change(previous.tier, scored)
        return scored.model_copy()

    def score_many(self, records: Iterable[MemoryRecord], now: Optional[float] = None) -> List[ScoredMemory]:
        now = self._clock() if now is None else now
        return [self.score_record(record, now) for record in records]

    def get_score(self, record_id: str) -> Optional[ScoredMemory]:
        scored = self._scores.get(record_id)
        return scored.model_copy() if scored else None

    def _emit_tier_change(self, old_tier: MemoryTier, scored: ScoredMemory) -> None:
        change = TierChange(
            record_id=scored.record_id,
            old_tier=old_tier,
            new_tier=scored.tier,
            final_score=scored.final_score,
            changed_at=scored.scored_at,
        )
        logger.debug(f"记忆层级变化: {scored.record_id} {old_tier.value} -> {scored.tier.value}")
        self.tier_changed.publish(change)

    def _adjust(self, record_id: str, delta: float) -> Optional[ScoredMemory]:
        scored = self._scores.get(record_id)
        if scored is None:
            return None

        new_raw = clamp01(scored.raw_score + delta)
        self._adjustments[record_id] = self._adjustments.get(record_id, 0.0) + (new_raw - scored.raw_score)

        now = self._clock()
        final = self.apply_time_decay(new_raw, scored.age_hours, scored.category)
        updated = scored.model_copy(update={
            "raw_score": new_raw,
            "final_score": final,
            "tier": self.tier_for(final),
            "scored_at": now,
        })
        self._scores[record_id] = updated
        if updated.tier != scored.tier:
            self._emit_tier_change(scored.tier, updated)
        return updated.model_copy()

    def promote(self, record_id: str, delta: Optional[float] = None) -> Optional[ScoredMemory]:
        """
        提升记录的原始分

        Returns:
            Optional[ScoredMemory]: 调整后的评分，未评分过的记录返回None
        """
        return self._adjust(record_id, abs(delta if delta is not None else self.settings.default_delta))

    def demote(self, record_id: str, delta: Optional[float] = None) -> Optional[ScoredMemory]:
        """
        降低记录的原始分

        Returns:
            Optional[ScoredMemory]: 调整后的评分，未评分过的记录返回None
        """
        return self._adjust(record_id, -abs(delta if delta is not None else self.settings.default_delta))

    def forget_score(self, record_id: str) -> None:
        """移除记录的缓存评分和调整量（记录被删除时调用）"""
        self._scores.pop(record_id, None)
        self._adjustments.pop(record_id, None)

    def stats(self) -> Dict[str, object]:
        """评分缓存统计：各层级和各类别的数量、平均最终分"""
        by_tier: Dict[str, int] = {tier.value: 0 for tier in MemoryTier}
        by_category: Dict[str, int] = {}
        for scored in self._scores.values():
            by_tier[scored.tier.value] += 1
            by_category[scored.category.value] = by_category.get(scored.category.value, 0) + 1
        total = len(self._scores)
        return {
            "scored": total,
            "by_tier": by_tier,
            "by_category": by_category,
            "average_final_score": (
                sum(s.final_score for s in self._scores.values()) / total if total else 0.0
            ),
            "adjusted": len(self._adjustments),
        }
