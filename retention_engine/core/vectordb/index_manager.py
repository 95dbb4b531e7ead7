"""
索引管理器

负责两类索引：
- 二级索引：重要性排序、最近访问排序、主题 / 来源类型 / 标签倒排，随每次写入同步维护
- 索引定义：向量索引与标量索引的定义、过期检测、查询模式统计与索引建议
"""

import bisect
import logging
import time
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from retention_engine.schemas.config import VectorStoreSettings
from retention_engine.utils.exceptions import ValidationError
from retention_engine.utils.helpers import Clock, system_clock

from .schemas import (
    IndexDefinition,
    IndexKind,
    IndexMaintenanceResult,
    IndexSuggestion,
    MemoryRecord,
    QueryPattern,
    QueryPerformanceStats,
    SearchOptions,
)

logger = logging.getLogger(__name__)

VECTOR_INDEX_NAME = "idx_vector_ivf_pq"

DEFAULT_VECTOR_INDEX_CONFIG: Dict[str, Any] = {
    "type": "IVF_PQ",
    "column": "vector",
    "metric": "cosine",
    "num_partitions": 256,
    "num_sub_vectors": 16,
}

DEFAULT_SCALAR_COLUMNS = ["source_type", "importance", "created_at", "accessed_at"]

# 耗时样本超过上限时只保留最近的一半
MAX_EXECUTION_SAMPLES = 1000
TRIMMED_EXECUTION_SAMPLES = 500

# 参与建议分析的查询模式数量
SUGGESTION_PATTERN_LIMIT = 20


def scalar_index_name(column: str, index_type: str = "BTREE") -> str:
    """标量索引命名：idx_{列名}_{类型}"""
    return f"idx_{column}_{index_type.lower()}"


def vector_index_name(index_type: str) -> str:
    return f"idx_vector_{index_type.lower()}"


def _pattern_key(filter_columns: Iterable[str], uses_vector_search: bool) -> str:
    return "|".join(sorted(filter_columns) + ["vector" if uses_vector_search else ""])


def _percentile(sorted_values: List[float], ratio: float) -> float:
    if not sorted_values:
        return 0.0
    position = min(len(sorted_values) - 1, int(len(sorted_values) * ratio))
    return sorted_values[position]


class IndexManager:
    """
    索引管理器

    由向量存储持有，存储的每次插入、更新、删除都会同步调用本类维护二级索引。

    Args:
        settings: 向量存储配置
        clock: 时钟函数
    """

    def __init__(self, settings: Optional[VectorStoreSettings] = None, clock: Clock = system_clock):
        self.settings = settings or VectorStoreSettings()
        self._clock = clock

        # 二级索引
        self._by_importance: List[Tuple[float, str]] = []
        self._by_recency: List[Tuple[float, str]] = []
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._topics: Dict[str, Set[str]] = defaultdict(set)
        self._tags: Dict[str, Set[str]] = defaultdict(set)
        self._source_types: Dict[str, Set[str]] = defaultdict(set)

        # 索引定义与查询统计
        self._indexes: Dict[str, IndexDefinition] = {}
        self._query_patterns: Dict[str, QueryPattern] = {}
        self._execution_times: List[float] = []
        self.last_row_count = 0

    # ==================== 二级索引 ====================

    def index_record(self, record: MemoryRecord) -> None:
        """
        把记录加入二级索引（已存在时先移除旧条目）

        Args:
            record: 记录
        """
        if record.id in self._entries:
            self.unindex_record(record.id)

        meta = record.metadata
        entry = {
            "importance": meta.importance,
            "accessed_at": meta.accessed_at,
            "topics": list(meta.topics),
            "tags": list(meta.tags),
            "source_type": meta.source_type.value,
        }
        self._entries[record.id] = entry

        bisect.insort(self._by_importance, (entry["importance"], record.id))
        bisect.insort(self._by_recency, (entry["accessed_at"], record.id))
        for topic in entry["topics"]:
            self._topics[topic].add(record.id)
        for tag in entry["tags"]:
            self._tags[tag].add(record.id)
        self._source_types[entry["source_type"]].add(record.id)

    def unindex_record(self, record_id: str) -> bool:
        """
        从二级索引中移除记录

        Returns:
            bool: 记录此前是否在索引中
        """
        entry = self._entries.pop(record_id, None)
        if entry is None:
            return False

        self._remove_sorted(self._by_importance, (entry["importance"], record_id))
        self._remove_sorted(self._by_recency, (entry["accessed_at"], record_id))
        for topic in entry["topics"]:
            self._discard(self._topics, topic, record_id)
        for tag in entry["tags"]:
            self._discard(self._tags, tag, record_id)
        self._discard(self._source_types, entry["source_type"], record_id)
        return True

    @staticmethod
    def _remove_sorted(values: List[Tuple[float, str]], item: Tuple[float, str]) -> None:
        position = bisect.bisect_left(values, item)
        if position < len(values) and values[position] == item:
            del values[position]

    @staticmethod
    def _discard(mapping: Dict[str, Set[str]], key: str, record_id: str) -> None:
        ids = mapping.get(key)
        if ids is None:
            return
        ids.discard(record_id)
        if not ids:
            del mapping[key]

    def clear_records(self) -> None:
        """清空二级索引（保留索引定义）"""
        self._by_importance.clear()
        self._by_recency.clear()
        self._entries.clear()
        self._topics.clear()
        self._tags.clear()
        self._source_types.clear()

    @property
    def indexed_count(self) -> int:
        return len(self._entries)

    def ids_by_importance(self, limit: Optional[int] = None, ascending: bool = True) -> List[str]:
        """按重要性排序的记录ID"""
        ordered = self._by_importance if ascending else reversed(self._by_importance)
        ids = [record_id for _, record_id in ordered]
        return ids if limit is None else ids[:limit]

    def ids_by_recency(self, limit: Optional[int] = None) -> List[str]:
        """按最近访问时间倒序的记录ID"""
        ids = [record_id for _, record_id in reversed(self._by_recency)]
        return ids if limit is None else ids[:limit]

    def ids_by_topic(self, topic: str) -> Set[str]:
        return set(self._topics.get(topic, ()))

    def ids_by_tag(self, tag: str) -> Set[str]:
        return set(self._tags.get(tag, ()))

    def ids_by_source_type(self, source_type: str) -> Set[str]:
        return set(self._source_types.get(source_type, ()))

    def topic_counts(self) -> Dict[str, int]:
        return {topic: len(ids) for topic, ids in self._topics.items()}

    def source_type_counts(self) -> Dict[str, int]:
        return {source_type: len(ids) for source_type, ids in self._source_types.items()}

    def candidate_ids(self, options: SearchOptions) -> Optional[Set[str]]:
        """
        根据倒排索引预先筛选候选记录

        Args:
            options: 检索选项

        Returns:
            Optional[Set[str]]: 候选ID集合，没有可用的倒排过滤条件时返回 None
        """
        candidates: Optional[Set[str]] = None

        if options.source_type is not None:
            candidates = self.ids_by_source_type(options.source_type.value)

        if options.topics:
            by_topic: Set[str] = set()
            for topic in options.topics:
                by_topic |= self._topics.get(topic, set())
            candidates = by_topic if candidates is None else candidates & by_topic

        if options.tags:
            by_tag: Set[str] = set()
            for tag in options.tags:
                by_tag |= self._tags.get(tag, set())
            candidates = by_tag if candidates is None else candidates & by_tag

        return candidates

    # ==================== 索引定义 ====================

    def _build(self, definition: IndexDefinition, row_count: int) -> IndexDefinition:
        start = time.perf_counter()
        definition.is_built = True
        definition.last_built_at = self._clock()
        definition.row_count_at_build = row_count
        definition.build_duration_ms = (time.perf_counter() - start) * 1000
        self._indexes[definition.name] = definition
        return definition

    def create_vector_index(
        self,
        config: Optional[Dict[str, Any]] = None,
        row_count: int = 0
    ) -> IndexDefinition:
        """
        创建向量索引定义

        Args:
            config: 覆盖默认配置的字段（type、metric、num_partitions 等）
            row_count: 当前行数

        Returns:
            IndexDefinition: 索引定义
        """
        merged = {**DEFAULT_VECTOR_INDEX_CONFIG, **(config or {})}
        name = vector_index_name(merged["type"])
        definition = IndexDefinition(name=name, kind=IndexKind.VECTOR, config=merged)
        self._build(definition, row_count)
        logger.info(f"向量索引已创建: {name}, 行数={row_count}")
        return definition.model_copy(deep=True)

    def create_scalar_index(
        self,
        column: str,
        index_type: str = "BTREE",
        row_count: int = 0
    ) -> IndexDefinition:
        """
        创建标量索引定义

        Args:
            column: 列名
            index_type: BTREE 或 BITMAP
            row_count: 当前行数

        Returns:
            IndexDefinition: 索引定义
        """
        name = scalar_index_name(column, index_type)
        definition = IndexDefinition(
            name=name,
            kind=IndexKind.SCALAR,
            config={"type": index_type.upper(), "column": column}
        )
        self._build(definition, row_count)
        logger.info(f"标量索引已创建: {name}, 行数={row_count}")
        return definition.model_copy(deep=True)

    def create_default_indexes(self, row_count: int) -> IndexMaintenanceResult:
        """
        创建默认索引（行数不足 index_creation_threshold 时跳过）

        Args:
            row_count: 当前行数

        Returns:
            IndexMaintenanceResult: 创建结果
        """
        start = time.perf_counter()
        result = IndexMaintenanceResult()

        if row_count < self.settings.index_creation_threshold:
            logger.info(f"行数不足，跳过默认索引创建: {row_count}")
            result.duration_ms = (time.perf_counter() - start) * 1000
            return result

        if VECTOR_INDEX_NAME not in self._indexes:
            try:
                self.create_vector_index(row_count=row_count)
                result.created.append(VECTOR_INDEX_NAME)
            except Exception as e:
                result.errors[VECTOR_INDEX_NAME] = str(e)

        for column in DEFAULT_SCALAR_COLUMNS:
            name = scalar_index_name(column)
            if name in self._indexes:
                continue
            try:
                self.create_scalar_index(column, row_count=row_count)
                result.created.append(name)
            except Exception as e:
                result.errors[name] = str(e)

        result.duration_ms = (time.perf_counter() - start) * 1000
        logger.info(f"默认索引创建完成: 新建={len(result.created)}, 失败={len(result.errors)}")
        return result

    def rebuild_index(self, name: str, row_count: int) -> IndexDefinition:
        """
        重建指定索引

        Args:
            name: 索引名称
            row_count: 当前行数

        Returns:
            IndexDefinition: 重建后的索引定义

        Raises:
            ValidationError: 索引不存在
        """
        definition = self._indexes.get(name)
        if definition is None:
            raise ValidationError(f"索引不存在: {name}", details={"index": name})

        self._build(definition, row_count)
        logger.info(f"索引已重建: {name}, 行数={row_count}")
        return definition.model_copy(deep=True)

    def drop_index(self, name: str) -> bool:
        removed = self._indexes.pop(name, None) is not None
        if removed:
            logger.info(f"索引已删除: {name}")
        return removed

    def has_index(self, name: str) -> bool:
        return name in self._indexes

    def get_index(self, name: str) -> Optional[IndexDefinition]:
        definition = self._indexes.get(name)
        return definition.model_copy(deep=True) if definition else None

    def list_indexes(self) -> List[IndexDefinition]:
        return [definition.model_copy(deep=True) for definition in self._indexes.values()]

    def is_stale(self, name: str, row_count: int) -> bool:
        """
        判断索引是否过期：(当前行数 - 构建时行数) / 构建时行数 >= rebuild 阈值
        """
        definition = self._indexes.get(name)
        if definition is None or not definition.is_built or definition.row_count_at_build <= 0:
            return False
        growth = (row_count - definition.row_count_at_build) / definition.row_count_at_build
        return growth >= self.settings.index_rebuild_threshold

    def record_usage(self, filter_columns: Iterable[str], uses_vector_search: bool) -> List[str]:
        """
        更新被本次查询用到的索引的使用统计

        Returns:
            List[str]: 被使用的索引名称
        """
        columns = set(filter_columns)
        now = self._clock()
        used = []
        for definition in self._indexes.values():
            if definition.kind == IndexKind.VECTOR:
                hit = uses_vector_search
            else:
                hit = bool(columns.intersection(definition.columns))
            if hit:
                definition.usage_count += 1
                definition.last_used_at = now
                used.append(definition.name)
        return used

    # ==================== 查询模式 ====================

    def track_query(
        self,
        filter_columns: Iterable[str],
        uses_vector_search: bool,
        duration_ms: float
    ) -> None:
        """
        记录一次查询的模式和耗时

        Args:
            filter_columns: 使用的过滤列
            uses_vector_search: 是否使用了向量检索
            duration_ms: 耗时（毫秒）
        """
        columns = sorted(filter_columns)
        key = _pattern_key(columns, uses_vector_search)
        now = self._clock()

        pattern = self._query_patterns.get(key)
        if pattern is None:
            pattern = QueryPattern(filter_columns=columns, uses_vector_search=uses_vector_search)
            self._query_patterns[key] = pattern
        pattern.count += 1
        pattern.total_time_ms += max(0.0, duration_ms)
        pattern.last_used_at = now

        self._execution_times.append(max(0.0, duration_ms))
        if len(self._execution_times) > MAX_EXECUTION_SAMPLES:
            self._execution_times = self._execution_times[-TRIMMED_EXECUTION_SAMPLES:]

        self.record_usage(columns, uses_vector_search)

    def get_top_query_patterns(self, limit: int = 10) -> List[QueryPattern]:
        patterns = sorted(self._query_patterns.values(), key=lambda p: p.count, reverse=True)
        return [pattern.model_copy(deep=True) for pattern in patterns[:limit]]

    def query_performance_stats(self) -> QueryPerformanceStats:
        """查询耗时统计（平均值与 p50/p95/p99）"""
        if not self._execution_times:
            return QueryPerformanceStats()
        values = sorted(self._execution_times)
        return QueryPerformanceStats(
            samples=len(values),
            average_ms=sum(values) / len(values),
            p50_ms=_percentile(values, 0.5),
            p95_ms=_percentile(values, 0.95),
            p99_ms=_percentile(values, 0.99),
        )

    def get_suggestions(self) -> List[IndexSuggestion]:
        """
        根据查询模式生成索引建议

        - 向量检索平均耗时超过阈值时建议创建向量索引
        - 频繁过滤的列建议创建 BTREE 索引
        - source_type 这类低基数列额外建议 BITMAP 索引
        相同列的建议只保留优先级最高的一条。

        Returns:
            List[IndexSuggestion]: 按优先级倒序的建议
        """
        suggestions: List[IndexSuggestion] = []
        patterns = sorted(self._query_patterns.values(), key=lambda p: p.count, reverse=True)

        for pattern in patterns[:SUGGESTION_PATTERN_LIMIT]:
            if pattern.uses_vector_search and VECTOR_INDEX_NAME not in self._indexes:
                average = pattern.average_time_ms
                if average > self.settings.slow_vector_search_ms:
                    suggestions.append(IndexSuggestion(
                        index_name=VECTOR_INDEX_NAME,
                        kind=IndexKind.VECTOR,
                        config=dict(DEFAULT_VECTOR_INDEX_CONFIG),
                        reason=f"向量检索频繁（{pattern.count} 次，平均 {average:.0f}ms）",
                        priority=min(10, pattern.count // 10 + 5),
                        estimated_improvement=3.0,
                        affected_columns=["vector"],
                        query_frequency=pattern.count,
                    ))

            for column in pattern.filter_columns:
                name = scalar_index_name(column)
                if name in self._indexes:
                    continue
                suggestions.append(IndexSuggestion(
                    index_name=name,
                    kind=IndexKind.SCALAR,
                    config={"type": "BTREE", "column": column},
                    reason=f"频繁过滤的列（{pattern.count} 次）",
                    priority=min(10, pattern.count // 20 + 3),
                    estimated_improvement=2.0,
                    affected_columns=[column],
                    query_frequency=pattern.count,
                ))

            bitmap_name = scalar_index_name("source_type", "BITMAP")
            if "source_type" in pattern.filter_columns and bitmap_name not in self._indexes:
                suggestions.append(IndexSuggestion(
                    index_name=bitmap_name,
                    kind=IndexKind.SCALAR,
                    config={"type": "BITMAP", "column": "source_type"},
                    reason="低基数列频繁过滤",
                    priority=6,
                    estimated_improvement=2.5,
                    affected_columns=["source_type"],
                    query_frequency=pattern.count,
                ))

        seen: Set[str] = set()
        unique: List[IndexSuggestion] = []
        for suggestion in sorted(suggestions, key=lambda s: s.priority, reverse=True):
            key = ",".join(sorted(suggestion.affected_columns))
            if key in seen:
                continue
            seen.add(key)
            unique.append(suggestion)
        return unique

    # ==================== 维护 ====================

    def run_maintenance(self, row_count: int) -> IndexMaintenanceResult:
        """
        索引维护：重建过期索引、行数达标时创建默认索引、应用高优先级建议

        Args:
            row_count: 当前行数

        Returns:
            IndexMaintenanceResult: 维护结果
        """
        start = time.perf_counter()
        result = IndexMaintenanceResult()

        for name in list(self._indexes.keys()):
            if not self.is_stale(name, row_count):
                continue
            try:
                self.rebuild_index(name, row_count)
                result.rebuilt.append(name)
            except Exception as e:
                result.errors[name] = str(e)

        if row_count >= self.settings.index_creation_threshold and not self._indexes:
            created = self.create_default_indexes(row_count)
            result.created.extend(created.created)
            result.errors.update(created.errors)

        for suggestion in self.get_suggestions():
            if suggestion.priority < self.settings.auto_apply_priority:
                continue
            if suggestion.index_name in self._indexes:
                continue
            try:
                if suggestion.kind == IndexKind.VECTOR:
                    self.create_vector_index(suggestion.config, row_count=row_count)
                else:
                    self.create_scalar_index(
                        suggestion.config["column"],
                        suggestion.config.get("type", "BTREE"),
                        row_count=row_count
                    )
                result.created.append(suggestion.index_name)
            except Exception as e:
                result.errors[suggestion.index_name] = str(e)

        self.last_row_count = row_count
        result.duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"索引维护完成: 重建={len(result.rebuilt)}, 新建={len(result.created)}, "
            f"失败={len(result.errors)}"
        )
        return result

    # ==================== 持久化 ====================

    def to_dict(self) -> Dict[str, Any]:
        """导出索引定义、查询模式等（写入 index_metadata.json）"""
        return {
            "indexes": [definition.model_dump(mode="json") for definition in self._indexes.values()],
            "query_patterns": {
                key: pattern.model_dump(mode="json") for key, pattern in self._query_patterns.items()
            },
            "execution_times": list(self._execution_times),
            "last_row_count": self.last_row_count,
            "saved_at": self._clock(),
        }

    def load_dict(self, data: Dict[str, Any]) -> None:
        """从 to_dict() 的结果恢复索引定义和查询模式"""
        self._indexes = {}
        for item in data.get("indexes", []):
            definition = IndexDefinition(**item)
            self._indexes[definition.name] = definition
        self._query_patterns = {
            key: QueryPattern(**item) for key, item in data.get("query_patterns", {}).items()
        }
        self._execution_times = [float(v) for v in data.get("execution_times", [])][-MAX_EXECUTION_SAMPLES:]
        self.last_row_count = int(data.get("last_row_count", 0))
        logger.info(f"索引元数据已恢复: 索引数={len(self._indexes)}")
