"""
记忆保留数据结构

定义类别、层级、保留策略，以及评分、去重、遗忘、删除请求和整合的结果模型
"""

import math
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from retention_engine.core.vectordb.schemas import CleanupResult, MemoryRecord


# ==================== 枚举 ====================

class MemoryCategory(str, Enum):
    """
    记忆内容类别（按声明顺序参与平局判定）
    """
    USER_FACT = "user_fact"
    USER_PREFERENCE = "user_preference"
    INSTRUCTION = "instruction"
    DECISION = "decision"
    CORRECTION = "correction"
    FEEDBACK = "feedback"
    TASK = "task"
    AGREEMENT = "agreement"
    QUESTION = "question"
    CASUAL = "casual"


class MemoryTier(str, Enum):
    """
    记忆层级
    """
    SHORT_TERM = "short_term"
    WORKING = "working"
    LONG_TERM = "long_term"


class RetentionLevel(str, Enum):
    """
    保留级别
    """
    PERMANENT = "permanent"
    LONG_TERM = "long_term"
    MEDIUM_TERM = "medium_term"
    SHORT_TERM = "short_term"
    EPHEMERAL = "ephemeral"


class DecayCurve(str, Enum):
    """
    衰减曲线
    """
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    STEPPED = "stepped"
    LOGARITHMIC = "logarithmic"


class DuplicateAction(str, Enum):
    """
    重复记录处理动作
    """
    MERGE = "merge"
    KEEP_BOTH = "keep_both"
    REMOVE_OLDER = "remove_older"


class MergeStrategy(str, Enum):
    """
    合并策略
    """
    KEEP_LONGER = "keep_longer"
    KEEP_IMPORTANT = "keep_important"
    KEEP_NEWER = "keep_newer"
    MERGE_CONTENT = "merge_content"
    REMOVE_OLDER = "remove_older"


class DecayAction(str, Enum):
    """
    衰减处理结论（每条记录恰好一种）
    """
    PROTECTED = "protected"
    DECAYED = "decayed"
    KEPT = "kept"
    FLAGGED_FOR_DELETION = "flagged_for_deletion"
    FLAGGED_FOR_CONSOLIDATION = "flagged_for_consolidation"


class ForgetStatus(str, Enum):
    """
    手动遗忘的单条结果
    """
    DELETED = "deleted"
    PROTECTED = "protected"
    NOT_FOUND = "not_found"


class DeletionScope(str, Enum):
    """
    合规删除范围
    """
    SPECIFIC = "specific"
    ALL = "all"
    DATE_RANGE = "date_range"
    CATEGORY = "category"


class DeletionStatus(str, Enum):
    """
    合规删除请求状态
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ==================== 保留策略 ====================

class RetentionPolicy(BaseModel):
    """
    保留策略

    匹配规则：类别 → 触发标签 → 记录类型；都不匹配时使用策略表最后一项。
    """
    name: str = Field(..., description="策略名称")
    categories: List[str] = Field(default_factory=list, description="匹配的类别")
    trigger_tags: List[str] = Field(default_factory=list, description="触发标签")
    memory_types: List[str] = Field(default_factory=list, description="匹配的记录类型")
    level: RetentionLevel = Field(..., description="保留级别")
    base_retention_hours: float = Field(..., ge=0.0, description="开始衰减前的保留时长")
    max_retention_hours: float = Field(..., ge=0.0, description="最长保留时长")
    decay_curve: DecayCurve = Field(DecayCurve.EXPONENTIAL, description="衰减曲线")
    half_life_hours: float = Field(168.0, gt=0.0, description="半衰期（小时）")
    protection_threshold: float = Field(0.5, ge=0.0, le=1.0, description="保护阈值")
    allow_consolidation: bool = Field(True, description="是否允许整合")

    @model_validator(mode="after")
    def validate_retention(self) -> "RetentionPolicy":
        both_infinite = math.isinf(self.base_retention_hours) and math.isinf(self.max_retention_hours)
        if not both_infinite and self.base_retention_hours > self.max_retention_hours:
            raise ValueError("base_retention_hours 不能大于 max_retention_hours")
        return self

    @property
    def is_permanent(self) -> bool:
        return self.level == RetentionLevel.PERMANENT


# ==================== 评分 ====================

class ScoredMemory(BaseModel):
    """
    评分结果
    """
    record_id: str
    category: MemoryCategory = MemoryCategory.CASUAL
    confidence: float = Field(0.3, ge=0.0, le=1.0)
    raw_score: float = Field(0.0, ge=0.0, le=1.0)
    final_score: float = Field(0.0, ge=0.0, le=1.0)
    tier: MemoryTier = MemoryTier.SHORT_TERM
    boosters: List[str] = Field(default_factory=list)
    age_hours: float = 0.0
    scored_at: float = 0.0


class TierChange(BaseModel):
    """
    层级变化事件
    """
    record_id: str
    old_tier: MemoryTier
    new_tier: MemoryTier
    final_score: float
    changed_at: float


# ==================== 去重 ====================

class DuplicatePair(BaseModel):
    """
    重复记录对
    """
    memory1: MemoryRecord
    memory2: MemoryRecord
    similarity: float
    action: DuplicateAction
    reason: str = ""


class MergeResult(BaseModel):
    """
    合并结果
    """
    kept_id: str
    removed_id: str
    strategy: MergeStrategy
    content_merged: bool = False
    new_sentences: int = 0
    used_fallback: bool = False


class DeduplicationResult(BaseModel):
    """
    去重运行结果
    """
    reason: str = "manual"
    skipped: bool = False
    scanned: int = 0
    pairs_found: int = 0
    merged: int = 0
    removed: int = 0
    preserved: int = 0
    duration_ms: float = 0.0
    merges: List[MergeResult] = Field(default_factory=list)
    errors: List[Dict[str, str]] = Field(default_factory=list)


# ==================== 遗忘 ====================

class DecayResult(BaseModel):
    """
    单条记录的衰减处理结果
    """
    record_id: str
    policy: str
    level: RetentionLevel
    original_score: float
    decayed_score: float
    access_boost: float = 0.0
    age_hours: float = 0.0
    action: DecayAction
    reason: str = ""


class ForgettingBatchResult(BaseModel):
    """
    衰减批处理结果
    """
    reason: str = "scheduled"
    skipped: bool = False
    processed: int = 0
    decayed: int = 0
    kept: int = 0
    deleted: int = 0
    consolidated: int = 0
    protected: int = 0
    duration_ms: float = 0.0
    results: List[DecayResult] = Field(default_factory=list)
    errors: List[Dict[str, str]] = Field(default_factory=list)


class DateRange(BaseModel):
    """
    时间范围（闭区间，UNIX 秒）
    """
    start: float
    end: float

    @model_validator(mode="after")
    def validate_range(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("start 不能晚于 end")
        return self

    def contains(self, timestamp: float) -> bool:
        return self.start <= timestamp <= self.end


class ForgetOptions(BaseModel):
    """
    手动遗忘选项（各条件取并集）
    """
    memory_ids: List[str] = Field(default_factory=list)
    content_pattern: Optional[str] = Field(None, description="内容正则（忽略大小写）")
    tags: List[str] = Field(default_factory=list)
    date_range: Optional[DateRange] = None
    force: bool = Field(False, description="是否忽略保护")
    reason: str = "manual"


class ForgetOutcome(BaseModel):
    """
    单条遗忘结果
    """
    memory_id: str
    status: ForgetStatus
    reason: str = ""


class ForgetResult(BaseModel):
    """
    手动遗忘结果
    """
    processed: int = 0
    deleted: int = 0
    protected: int = 0
    not_found: int = 0
    outcomes: List[ForgetOutcome] = Field(default_factory=list)
    errors: List[Dict[str, str]] = Field(default_factory=list)
    duration_ms: float = 0.0


class ReinforcementEvent(BaseModel):
    """
    访问强化事件
    """
    record_id: str
    old_importance: float
    new_importance: float
    boost: float


class MemoryForgotten(BaseModel):
    record_id: str
    reason: str


class MemoryProtected(BaseModel):
    record_id: str
    importance: float
    reason: str = ""


class DecayStarted(BaseModel):
    reason: str
    record_count: int
    started_at: float


# ==================== 合规删除 ====================

class DeletionRequest(BaseModel):
    """
    合规删除请求

    状态只能 pending → processing → completed | failed，完成或失败后不再变化。
    """
    request_id: str
    requested_at: float
    scope: DeletionScope
    memory_ids: List[str] = Field(default_factory=list)
    date_range: Optional[DateRange] = None
    categories: List[str] = Field(default_factory=list)
    include_vector_store: bool = True
    status: DeletionStatus = DeletionStatus.PENDING
    deleted_count: int = 0
    deleted_ids: List[str] = Field(default_factory=list)
    not_found_ids: List[str] = Field(default_factory=list)
    completed_at: Optional[float] = None
    certificate_hash: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.status in (DeletionStatus.COMPLETED, DeletionStatus.FAILED)


class AuditEntry(BaseModel):
    """
    审计日志条目（一行 NDJSON）
    """
    timestamp: str
    action: str
    request_id: str
    type: str
    status: str
    deleted_count: Optional[int] = None
    certificate_hash: Optional[str] = None


# ==================== 整合 ====================

class GroupSummary(BaseModel):
    """
    分组摘要
    """
    summary_text: str
    topics: List[str] = Field(default_factory=list)
    compression_ratio: float = Field(1.0, ge=0.0)

    @field_validator("summary_text")
    @classmethod
    def validate_text(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("summary_text 不能为空")
        return v


class ConsolidationResult(BaseModel):
    """
    整合运行结果
    """
    reason: str = "manual"
    skipped: bool = False
    scanned: int = 0
    scored: int = 0
    groups_found: int = 0
    groups_consolidated: int = 0
    summaries_created: int = 0
    records_removed: int = 0
    summary_ids: List[str] = Field(default_factory=list)
    cleanup_triggered: bool = False
    cleanup: Optional[CleanupResult] = None
    used_fallback: bool = False
    duration_ms: float = 0.0
    errors: List[Dict[str, str]] = Field(default_factory=list)
    started_at: float = 0.0
    completed_at: Optional[float] = None


class ConsolidationStarted(BaseModel):
    reason: str
    started_at: float


class ConsolidationProgress(BaseModel):
    stage: str
    processed: int
    total: int
    details: Dict[str, Any] = Field(default_factory=dict)
