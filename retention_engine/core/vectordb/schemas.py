"""
向量存储数据结构

定义记忆记录、元数据、检索选项和结果等数据模型
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SourceType(str, Enum):
    """
    记录来源类型枚举
    """
    CONVERSATION = "conversation"   # 对话片段
    FACT = "fact"                   # 事实
    PREFERENCE = "preference"       # 偏好
    CONTEXT = "context"             # 上下文
    TASK = "task"                   # 任务
    OTHER = "other"                 # 其他


class RecordExtensions(BaseModel):
    """
    记录扩展字段（带版本号的强类型扩展表）

    只允许已知字段，新增字段需要提升 version。
    """
    model_config = ConfigDict(extra="forbid")

    version: int = Field(1, ge=1, description="扩展结构版本")
    merged_from: List[str] = Field(default_factory=list, description="合并进来的记录ID")
    merged_at: Optional[float] = Field(None, description="最近一次合并时间")
    merge_strategy: Optional[str] = Field(None, description="最近一次合并策略")
    consolidated_from_topic: Optional[str] = Field(None, description="摘要来源主题")
    compression_ratio: Optional[float] = Field(None, ge=0.0, description="摘要压缩比")


class RecordMetadata(BaseModel):
    """
    记录元数据
    """
    model_config = ConfigDict(extra="forbid")

    source_type: SourceType = Field(SourceType.OTHER, description="来源类型")
    importance: float = Field(0.5, ge=0.0, le=1.0, description="重要性（0-1）")
    access_count: int = Field(0, ge=0, description="访问次数")
    created_at: float = Field(0.0, description="创建时间戳（秒）")
    accessed_at: float = Field(0.0, description="最近访问时间戳（秒）")
    topics: List[str] = Field(default_factory=list, description="主题标签")
    tags: List[str] = Field(default_factory=list, description="自定义标签")
    is_summary: bool = Field(False, description="是否为整合摘要")
    summarized_ids: List[str] = Field(default_factory=list, description="摘要覆盖的原始记录")
    session_id: Optional[str] = Field(None, description="会话ID")
    category: Optional[str] = Field(None, description="最近一次检测到的类别")
    extensions: RecordExtensions = Field(default_factory=RecordExtensions, description="扩展字段")

    @model_validator(mode="after")
    def validate_timestamps(self) -> "RecordMetadata":
        if self.accessed_at < self.created_at:
            raise ValueError("accessed_at 不能早于 created_at")
        return self


class MemoryRecord(BaseModel):
    """
    记忆记录

    由向量存储独占持有，对外只返回副本。
    """
    id: str = Field(..., description="记录ID")
    vector: List[float] = Field(..., description="向量（长度为 D）")
    content: str = Field(..., description="文本内容")
    metadata: RecordMetadata = Field(default_factory=RecordMetadata, description="元数据")
    row_id: int = Field(-1, description="相似度后端中的行号")

    @property
    def created_at(self) -> float:
        return self.metadata.created_at

    @property
    def accessed_at(self) -> float:
        return self.metadata.accessed_at

    @property
    def importance(self) -> float:
        return self.metadata.importance


class SearchOptions(BaseModel):
    """
    检索选项
    """
    limit: int = Field(10, ge=1, description="返回条数上限")
    min_score: float = Field(0.0, description="最低相似度")
    source_type: Optional[SourceType] = Field(None, description="来源类型过滤")
    min_importance: Optional[float] = Field(None, ge=0.0, le=1.0, description="最低重要性")
    topics: List[str] = Field(default_factory=list, description="命中任一主题")
    tags: List[str] = Field(default_factory=list, description="命中任一标签")
    session_id: Optional[str] = Field(None, description="会话过滤")
    include_summaries: bool = Field(True, description="是否包含摘要记录")
    exclude_ids: List[str] = Field(default_factory=list, description="排除的记录ID")
    track_access: bool = Field(True, description="是否更新访问统计")

    def filter_columns(self) -> List[str]:
        """返回本次检索用到的过滤列（用于查询模式统计）"""
        columns = []
        if self.source_type is not None:
            columns.append("source_type")
        if self.min_importance is not None:
            columns.append("importance")
        if self.topics:
            columns.append("topics")
        if self.tags:
            columns.append("tags")
        if self.session_id is not None:
            columns.append("session_id")
        if not self.include_summaries:
            columns.append("is_summary")
        return columns


class SearchResult(BaseModel):
    """
    检索结果
    """
    record: MemoryRecord = Field(..., description="命中的记录")
    score: float = Field(..., description="相似度分数")


class DeleteStatus(str, Enum):
    """
    删除结果状态
    """
    DELETED = "deleted"
    NOT_FOUND = "not_found"


class DeleteResult(BaseModel):
    """
    删除结果（未找到是一种结果，不是错误）
    """
    id: str = Field(..., description="记录ID")
    status: DeleteStatus = Field(..., description="删除状态")

    @property
    def deleted(self) -> bool:
        return self.status == DeleteStatus.DELETED


class BatchOperationResult(BaseModel):
    """
    批量操作结果
    """
    successful: int = Field(0, description="成功数量")
    failed: int = Field(0, description="失败数量")
    success_ids: List[str] = Field(default_factory=list, description="成功的记录ID")
    errors: Dict[str, str] = Field(default_factory=dict, description="失败原因")


class StoreStats(BaseModel):
    """
    存储统计
    """
    total_records: int = 0
    by_source_type: Dict[str, int] = Field(default_factory=dict)
    average_importance: float = 0.0
    summary_count: int = 0
    total_access_count: int = 0
    capacity_used: float = 0.0
    max_capacity: int = 0
    dimension: int = 0
    needs_cleanup: bool = False
    index_count: int = 0
    oldest_record_at: Optional[float] = None
    newest_record_at: Optional[float] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


# ==================== 索引管理 ====================

class IndexKind(str, Enum):
    """
    索引种类
    """
    VECTOR = "vector"
    SCALAR = "scalar"


class IndexDefinition(BaseModel):
    """
    索引定义及统计
    """
    name: str = Field(..., description="索引名称")
    kind: IndexKind = Field(..., description="索引种类")
    config: Dict[str, Any] = Field(default_factory=dict, description="后端索引配置")
    is_built: bool = Field(False, description="是否已构建")
    last_built_at: Optional[float] = Field(None, description="最近构建时间")
    row_count_at_build: int = Field(0, ge=0, description="构建时的行数")
    build_duration_ms: float = Field(0.0, ge=0.0, description="构建耗时（毫秒）")
    usage_count: int = Field(0, ge=0, description="使用次数")
    last_used_at: Optional[float] = Field(None, description="最近使用时间")

    @property
    def columns(self) -> List[str]:
        column = self.config.get("column")
        return [column] if column else list(self.config.get("columns", []))


class IndexSuggestion(BaseModel):
    """
    基于查询模式的索引建议
    """
    index_name: str = Field(..., description="建议创建的索引名称")
    kind: IndexKind = Field(..., description="索引种类")
    config: Dict[str, Any] = Field(default_factory=dict, description="索引配置")
    reason: str = Field("", description="建议原因")
    priority: int = Field(1, ge=1, le=10, description="优先级（1-10）")
    estimated_improvement: float = Field(1.0, description="预估提升倍数")
    affected_columns: List[str] = Field(default_factory=list, description="涉及的列")
    query_frequency: int = Field(0, ge=0, description="受益查询次数")


class QueryPattern(BaseModel):
    """
    查询模式统计
    """
    filter_columns: List[str] = Field(default_factory=list, description="过滤列")
    uses_vector_search: bool = Field(True, description="是否使用向量检索")
    count: int = Field(0, ge=0, description="执行次数")
    total_time_ms: float = Field(0.0, ge=0.0, description="累计耗时（毫秒）")
    last_used_at: Optional[float] = Field(None, description="最近执行时间")

    @property
    def average_time_ms(self) -> float:
        return self.total_time_ms / self.count if self.count else 0.0


class IndexMaintenanceResult(BaseModel):
    """
    索引维护结果
    """
    rebuilt: List[str] = Field(default_factory=list)
    created: List[str] = Field(default_factory=list)
    dropped: List[str] = Field(default_factory=list)
    duration_ms: float = 0.0
    errors: Dict[str, str] = Field(default_factory=dict)


class QueryPerformanceStats(BaseModel):
    """
    查询耗时统计（毫秒）
    """
    samples: int = 0
    average_ms: float = 0.0
    p50_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0


# ==================== 容量清理 ====================

class CleanupResult(BaseModel):
    """
    容量清理结果
    """
    reason: str = "capacity"
    skipped: bool = Field(False, description="未达到清理条件或已有清理在运行")
    scanned: int = 0
    protected_count: int = 0
    removed_ids: List[str] = Field(default_factory=list)
    before_size: int = 0
    after_size: int = 0
    duration_ms: float = 0.0
    errors: List[Dict[str, str]] = Field(default_factory=list)

    @property
    def removed_count(self) -> int:
        return len(self.removed_ids)
