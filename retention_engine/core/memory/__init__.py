"""
记忆保留模块

该模块实现了记忆的评分、去重、遗忘和整合，包括：
- 重要性评分和层级划分
- 语义去重与合并
- 基于保留策略的衰减与遗忘
- 合规删除请求与审计日志
- 低价值记忆的摘要整合

主要组件：
- ImportanceScorer: 重要性评分器
- Deduplicator: 语义去重器
- ForgettingEngine: 遗忘引擎
- DeletionRequestProcessor: 合规删除处理器
- MemoryCompressor: 记忆压缩器
- ConsolidationScheduler: 整合调度器
"""

from .audit_log import AuditLog
from .consolidation_scheduler import ConsolidationScheduler
from .deduplicator import Deduplicator
from .deletion_requests import DeletionRequestProcessor, certificate_hash
from .forgetting_mechanism import ForgettingEngine
from .importance_scorer import ImportanceScorer
from .memory_compressor import ExtractiveSummarizer, MemoryCompressor, SummarizerPort
from .retention_policy import PolicyResolver, default_policies

__all__ = [
    "AuditLog",
    "ConsolidationScheduler",
    "Deduplicator",
    "DeletionRequestProcessor",
    "certificate_hash",
    "ForgettingEngine",
    "ImportanceScorer",
    "ExtractiveSummarizer",
    "MemoryCompressor",
    "SummarizerPort",
    "PolicyResolver",
    "default_policies",
]
