"""
文件名: config.py
功能: 引擎配置相关的 Pydantic Schema 定义
映射 config.yaml 中 retention 节点的所有配置项，提供类型校验和默认值
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from retention_engine.utils.config import Config
from retention_engine.utils.exceptions import ConfigError


class _SettingsBase(BaseModel):
    """配置模型基类：忽略未知字段，便于配置文件向前兼容"""
    model_config = ConfigDict(extra="ignore")


# ==================== 向量存储配置 ====================
class VectorStoreSettings(_SettingsBase):
    """向量存储配置 Schema"""
    dimension: int = Field(384, ge=1, description="向量维度 D")
    metric: str = Field("cosine", description="相似度度量：cosine / dot")
    max_capacity: int = Field(10000, ge=1, description="最大记录数")
    cleanup_threshold: float = Field(0.8, gt=0.0, le=1.0, description="触发清理的容量比例")
    default_search_limit: int = Field(10, ge=1, description="默认检索条数")
    auto_save_every: int = Field(100, ge=0, description="每写入多少条自动保存（0 表示关闭）")
    index_creation_threshold: int = Field(1000, ge=1, description="自动创建默认索引的最小行数")
    index_rebuild_threshold: float = Field(0.2, gt=0.0, description="索引过期比例")
    slow_vector_search_ms: float = Field(100.0, ge=0.0, description="建议创建向量索引的平均耗时阈值（毫秒）")
    auto_apply_priority: int = Field(8, ge=1, le=10, description="自动应用索引建议的最低优先级")

    @field_validator("metric")
    @classmethod
    def validate_metric(cls, v: str) -> str:
        if v not in ("cosine", "dot"):
            raise ValueError("metric 只支持 cosine 或 dot")
        return v


# ==================== 容量清理配置 ====================
class CleanupSettings(_SettingsBase):
    """容量清理配置 Schema"""
    target_capacity_ratio: float = Field(0.7, gt=0.0, le=1.0, description="清理后的目标容量比例")
    preserve_importance_threshold: float = Field(0.8, ge=0.0, le=1.0, description="重要性保护阈值")
    min_access_to_preserve: int = Field(20, ge=1, description="访问次数保护阈值")
    max_age_days: float = Field(30.0, gt=0.0, description="新近度评分的最大天数")
    importance_weight: float = Field(0.5, ge=0.0, description="重要性权重")
    recency_weight: float = Field(0.3, ge=0.0, description="新近度权重")
    access_weight: float = Field(0.2, ge=0.0, description="访问频率权重")
    access_saturation: int = Field(10, ge=1, description="访问分数饱和的访问次数")
    batch_size: int = Field(100, ge=1, description="每批删除数量")


# ==================== 重要性评分配置 ====================
class ScorerSettings(_SettingsBase):
    """重要性评分配置 Schema"""
    half_life_hours: float = Field(168.0, gt=0.0, description="时间衰减半衰期（小时）")
    min_score: float = Field(0.05, ge=0.0, le=1.0, description="衰减下限")
    no_decay_categories: List[str] = Field(
        default_factory=lambda: ["user_fact", "user_preference", "instruction"],
        description="不参与时间衰减的类别"
    )
    long_term_threshold: float = Field(0.7, ge=0.0, le=1.0, description="长期层级阈值")
    working_threshold: float = Field(0.4, ge=0.0, le=1.0, description="工作层级阈值")
    booster_cap: float = Field(0.5, ge=0.0, description="加成上限")
    default_delta: float = Field(0.1, gt=0.0, le=1.0, description="promote/demote 默认步长")

    @model_validator(mode="after")
    def validate_tiers(self) -> "ScorerSettings":
        if self.working_threshold > self.long_term_threshold:
            raise ValueError("working_threshold 不能大于 long_term_threshold")
        return self


# ==================== 去重配置 ====================
class DedupSettings(_SettingsBase):
    """语义去重配置 Schema"""
    similarity_threshold: float = Field(0.85, ge=0.0, le=1.0, description="判定重复的相似度阈值")
    near_identical_threshold: float = Field(0.95, ge=0.0, le=1.0, description="近乎相同的相似度阈值")
    importance_difference_threshold: float = Field(0.1, ge=0.0, description="重要性差异阈值")
    max_age_difference_hours: float = Field(168.0, ge=0.0, description="最大时间间隔（小时）")
    preserve_importance_threshold: float = Field(0.9, ge=0.0, le=1.0, description="双高重要性保留阈值")
    content_length_variation_ratio: float = Field(0.3, ge=0.0, description="内容长度差异比例")
    batch_size: int = Field(50, ge=1, description="比较批大小")
    max_memories_per_run: int = Field(500, ge=1, description="单次运行最多扫描数量")
    # 合并评分权重
    length_weight: float = Field(0.001, ge=0.0, description="内容长度权重")
    importance_weight: float = Field(10.0, ge=0.0, description="重要性权重")
    access_weight: float = Field(0.1, ge=0.0, description="访问次数权重")
    access_cap: int = Field(100, ge=0, description="访问次数上限")
    recency_weight: float = Field(0.1, ge=0.0, description="新近度权重")
    recency_window_days: float = Field(30.0, ge=0.0, description="新近度窗口（天）")
    original_bonus: float = Field(2.0, ge=0.0, description="非摘要记录加分")


# ==================== 遗忘配置 ====================
class ForgettingSettings(_SettingsBase):
    """遗忘机制配置 Schema"""
    deletion_threshold: float = Field(0.05, ge=0.0, le=1.0, description="删除阈值")
    consolidation_threshold: float = Field(0.2, ge=0.0, le=1.0, description="整合阈值")
    access_boost_factor: float = Field(0.1, ge=0.0, description="访问强化因子")
    max_access_boost: float = Field(0.5, ge=0.0, le=1.0, description="最大访问强化")
    batch_size: int = Field(100, ge=1, description="每批处理数量")
    stepped_multipliers: List[float] = Field(
        default_factory=lambda: [1.0, 0.75, 0.5, 0.25, 0.1],
        description="阶梯衰减各阶段系数（<25%、<50%、<75%、<100%、超出）"
    )
    policies: Optional[List[Dict[str, Any]]] = Field(None, description="自定义保留策略表（覆盖默认表）")

    @field_validator("stepped_multipliers")
    @classmethod
    def validate_steps(cls, v: List[float]) -> List[float]:
        if len(v) != 5:
            raise ValueError("stepped_multipliers 需要 5 个系数")
        if any(b > a for a, b in zip(v, v[1:])):
            raise ValueError("stepped_multipliers 必须单调不增")
        return v


# ==================== 审计日志配置 ====================
class AuditSettings(_SettingsBase):
    """删除请求审计日志配置 Schema"""
    enabled: bool = Field(True, description="是否启用审计日志")
    path: str = Field("data/gdpr-audit.log", description="审计日志路径（NDJSON）")


# ==================== 整合调度配置 ====================
class ConsolidationSettings(_SettingsBase):
    """整合调度配置 Schema"""
    interval_seconds: float = Field(3600.0, gt=0.0, description="周期整合间隔（秒）")
    idle_timeout_seconds: float = Field(300.0, gt=0.0, description="空闲触发阈值（秒）")
    daily_hour: Optional[int] = Field(3, ge=0, le=23, description="每日整合的小时（本地时间），None 关闭")
    decay_interval_seconds: float = Field(3600.0, gt=0.0, description="遗忘衰减间隔（秒）")
    dedup_interval_seconds: float = Field(6 * 3600.0, gt=0.0, description="去重间隔（秒）")
    index_maintenance_interval_seconds: float = Field(300.0, gt=0.0, description="索引维护间隔（秒）")
    tick_seconds: float = Field(1.0, gt=0.0, description="调度循环的最长休眠时间（秒）")
    max_memories_per_run: int = Field(500, ge=1, description="单次整合最多处理数量")
    min_importance_to_keep: float = Field(0.3, ge=0.0, le=1.0, description="低于该分数的记录参与整合")
    min_group_size: int = Field(2, ge=2, description="主题分组的最小成员数")
    capacity_cleanup_ratio: float = Field(0.8, gt=0.0, le=1.0, description="整合后触发清理的容量比例")
    summary_importance: float = Field(0.6, ge=0.0, le=1.0, description="摘要记录的重要性上限")
    batch_size: int = Field(100, ge=1, description="每批评分数量")


# ==================== 总配置 ====================
class EngineSettings(_SettingsBase):
    """记忆保留引擎总配置 Schema"""
    persist_dir: Optional[str] = Field(None, description="持久化目录，None 表示纯内存")
    vector_store: VectorStoreSettings = Field(default_factory=VectorStoreSettings)
    cleanup: CleanupSettings = Field(default_factory=CleanupSettings)
    scorer: ScorerSettings = Field(default_factory=ScorerSettings)
    dedup: DedupSettings = Field(default_factory=DedupSettings)
    forgetting: ForgettingSettings = Field(default_factory=ForgettingSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    consolidation: ConsolidationSettings = Field(default_factory=ConsolidationSettings)

    @classmethod
    def from_config(cls, config: Config, section: str = "retention") -> "EngineSettings":
        """
        从 Config 中读取 retention 节点并校验

        Args:
            config: 配置管理器实例
            section: 配置节点名

        Returns:
            EngineSettings: 校验后的配置
        """
        data = config.get(section, {}) or {}
        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise ConfigError(
                f"引擎配置校验失败: {e}",
                details={"section": section, "errors": str(e)}
            )
