"""
保留策略

默认策略表与策略匹配：
- 先按内容类别匹配
- 再按触发标签匹配
- 再按记录来源类型匹配
- 都不匹配时使用策略表最后一项（默认策略）
"""

import math
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from retention_engine.utils.exceptions import ConfigError, ValidationError
from retention_engine.utils.logger import get_logger

from .schemas import DecayCurve, RetentionLevel, RetentionPolicy

logger = get_logger(__name__)


def default_policies() -> List[RetentionPolicy]:
    """返回一份新的默认策略表（调用方可以随意修改）"""
    return [
        RetentionPolicy(
            name="permanent_facts",
            categories=["user_fact", "user_preference", "instruction"],
            level=RetentionLevel.PERMANENT,
            base_retention_hours=math.inf,
            max_retention_hours=math.inf,
            decay_curve=DecayCurve.LINEAR,
            half_life_hours=math.inf,
            protection_threshold=0.0,
            allow_consolidation=False,
        ),
        RetentionPolicy(
            name="long_term_decisions",
            categories=["decision", "correction", "feedback"],
            level=RetentionLevel.LONG_TERM,
            base_retention_hours=720,       # 30 天
            max_retention_hours=8760,       # 1 年
            decay_curve=DecayCurve.EXPONENTIAL,
            half_life_hours=336,            # 2 周
            protection_threshold=0.7,
        ),
        RetentionPolicy(
            name="medium_term_tasks",
            categories=["task", "agreement"],
            level=RetentionLevel.MEDIUM_TERM,
            base_retention_hours=168,
            max_retention_hours=2160,
            decay_curve=DecayCurve.EXPONENTIAL,
            half_life_hours=168,
            protection_threshold=0.5,
        ),
        RetentionPolicy(
            name="short_term_questions",
            categories=["question"],
            level=RetentionLevel.SHORT_TERM,
            base_retention_hours=24,
            max_retention_hours=720,
            decay_curve=DecayCurve.EXPONENTIAL,
            half_life_hours=72,
            protection_threshold=0.3,
        ),
        RetentionPolicy(
            name="ephemeral_casual",
            categories=["casual"],
            level=RetentionLevel.EPHEMERAL,
            base_retention_hours=1,
            max_retention_hours=168,
            decay_curve=DecayCurve.EXPONENTIAL,
            half_life_hours=24,
            protection_threshold=0.2,
        ),
        RetentionPolicy(
            name="default",
            memory_types=["conversation", "fact", "preference", "context"],
            level=RetentionLevel.MEDIUM_TERM,
            base_retention_hours=72,
            max_retention_hours=1440,
            decay_curve=DecayCurve.EXPONENTIAL,
            half_life_hours=168,
            protection_threshold=0.4,
        ),
    ]


def policies_from_config(data: Optional[Iterable[Dict[str, Any]]]) -> List[RetentionPolicy]:
    """
    从配置构建策略表，未配置时返回默认策略表

    Raises:
        ConfigError: 策略配置不合法或为空
    """
    if data is None:
        return default_policies()
    try:
        policies = [RetentionPolicy(**item) for item in data]
    except PydanticValidationError as e:
        raise ConfigError(f"保留策略配置不合法: {e}")
    if not policies:
        raise ConfigError("保留策略表不能为空")
    return policies


class PolicyResolver:
    """
    保留策略匹配器

    Args:
        policies: 策略表，最后一项为默认策略
    """

    def __init__(self, policies: Optional[List[RetentionPolicy]] = None):
        self._policies = list(policies) if policies else default_policies()

    @property
    def policies(self) -> List[RetentionPolicy]:
        return list(self._policies)

    @property
    def default_policy(self) -> RetentionPolicy:
        return self._policies[-1]

    def get(self, name: str) -> Optional[RetentionPolicy]:
        for policy in self._policies:
            if policy.name == name:
                return policy
        return None

    def resolve(
        self,
        category: Optional[str] = None,
        source_type: Optional[str] = None,
        tags: Optional[Iterable[str]] = None
    ) -> RetentionPolicy:
        """
        查找适用的保留策略

        Args:
            category: 内容类别
            source_type: 记录来源类型
            tags: 记录标签

        Returns:
            RetentionPolicy: 匹配的策略
        """
        if category:
            for policy in self._policies:
                if category in policy.categories:
                    return policy

        tag_set = set(tags or [])
        if tag_set:
            for policy in self._policies:
                if tag_set.intersection(policy.trigger_tags):
                    return policy

        if source_type:
            for policy in self._policies:
                if source_type in policy.memory_types:
                    return policy

        return self.default_policy

    def add_policy(self, policy: RetentionPolicy) -> None:
        """
        添加自定义策略（插入在默认策略之前）

        Raises:
            ValidationError: 策略名称重复
        """
        if self.get(policy.name) is not None:
            raise ValidationError(f"保留策略已存在: {policy.name}", details={"name": policy.name})
        self._policies.insert(len(self._policies) - 1, policy)
        logger.info("已添加自定义保留策略", name=policy.name, level=policy.level.value)
