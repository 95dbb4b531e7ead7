"""
记忆向量存储

基于FAISS实现的记忆记录存储和相似度检索
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Set

import numpy as np
from pydantic import ValidationError as PydanticValidationError

try:
    import faiss
except ImportError:
    faiss = None

from retention_engine.schemas.config import VectorStoreSettings
from retention_engine.utils.exceptions import (
    DimensionMismatchError,
    NotInitializedError,
    PersistenceFailureError,
    RetentionException,
    ValidationError,
)
from retention_engine.utils.helpers import Clock, generate_id, system_clock

from .base_store import BaseVectorStore
from .index_manager import IndexManager
from .persistence.faiss_persister import FAISSPersister
from .persistence.metadata_manager import MetadataManager
from .schemas import (
    BatchOperationResult,
    DeleteResult,
    DeleteStatus,
    IndexMaintenanceResult,
    MemoryRecord,
    RecordExtensions,
    RecordMetadata,
    SearchOptions,
    SearchResult,
    StoreStats,
)

logger = logging.getLogger(__name__)


class MemoryVectorStore(BaseVectorStore):
    """
    记忆向量存储

    - 相似度后端为 FAISS IndexIDMap2(IndexFlatIP)，cosine 度量时向量先做 L2 归一化
    - 记录表以字符串ID为键，FAISS 中使用自增的 int64 行号
    - 所有写操作在同一把 asyncio.Lock 下完成，记录整体替换，不做原地修改
    - 读取返回深拷贝
    """

    def __init__(
        self,
        settings: Optional[VectorStoreSettings] = None,
        persist_dir: Optional[str] = None,
        clock: Clock = system_clock,
        dimension: Optional[int] = None
    ):
        """
        初始化记忆向量存储

        Args:
            settings: 向量存储配置
            persist_dir: 持久化目录，None 表示纯内存
            clock: 时钟函数
            dimension: 向量维度，默认取 settings.dimension
        """
        if faiss is None:
            raise ImportError(
                "faiss-cpu库未安装。请运行: pip install faiss-cpu"
            )

        self.settings = settings or VectorStoreSettings()
        self._dimension = dimension or self.settings.dimension
        self.persist_dir = persist_dir
        self._clock = clock

        self.index_manager = IndexManager(self.settings, clock)

        # 持久化管理器
        self.persister: Optional[FAISSPersister] = None
        self.metadata_manager: Optional[MetadataManager] = None

        self._records: Dict[str, MemoryRecord] = {}
        self._row_to_id: Dict[int, str] = {}
        self._next_row_id = 0
        self._index = None
        self._lock = asyncio.Lock()
        self._initialized = False
        self._writes_since_save = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def size(self) -> int:
        return len(self._records)

    @property
    def max_capacity(self) -> int:
        return self.settings.max_capacity

    # ==================== 初始化 ====================

    def _new_index(self) -> "faiss.Index":
        return faiss.IndexIDMap2(faiss.IndexFlatIP(self._dimension))

    async def initialize(self) -> None:
        """
        构建FAISS索引，存在持久化目录时加载已保存的数据

        Raises:
            PersistenceFailureError: 持久化文件无法读取
        """
        if self._initialized:
            return

        self._index = self._new_index()

        if self.persist_dir:
            self.persister = FAISSPersister(self.persist_dir)
            self.metadata_manager = MetadataManager(self.persist_dir)
            await self.load()

        self._initialized = True
        logger.info(
            f"记忆向量存储初始化完成: 维度={self._dimension}, 度量={self.settings.metric}, "
            f"记录数={self.size}"
        )

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("MemoryVectorStore")

    def _prepare_vector(self, vector: Sequence[float]) -> np.ndarray:
        """校验维度并转换为 float32，cosine 度量下做 L2 归一化"""
        arr = np.asarray(vector, dtype=np.float32).reshape(-1)
        if arr.shape[0] != self._dimension:
            raise DimensionMismatchError(self._dimension, int(arr.shape[0]))
        if not np.all(np.isfinite(arr)):
            raise ValidationError("向量包含非有限数值")
        if self.settings.metric == "cosine":
            norm = float(np.linalg.norm(arr))
            if norm > 0:
                arr = arr / norm
        return arr

    # ==================== 写入 ====================

    def _insert_locked(self, record: MemoryRecord, arr: np.ndarray) -> None:
        self._index.add_with_ids(arr.reshape(1, -1), np.array([record.row_id], dtype=np.int64))
        self._records[record.id] = record
        self._row_to_id[record.row_id] = record.id
        self.index_manager.index_record(record)
        self._writes_since_save += 1

    def _replace_locked(self, record: MemoryRecord) -> None:
        self._records[record.id] = record
        self.index_manager.index_record(record)
        self._writes_since_save += 1

    async def add(
        self,
        content: str,
        vector: Sequence[float],
        metadata: Optional[RecordMetadata] = None,
        record_id: Optional[str] = None
    ) -> MemoryRecord:
        """
        添加记录，created_at 与 accessed_at 设为当前时间

        Args:
            content: 文本内容
            vector: 向量（长度必须为 D）
            metadata: 元数据
            record_id: 指定记录ID

        Returns:
            MemoryRecord: 新记录的副本

        Raises:
            DimensionMismatchError: 向量长度不等于 D
            ValidationError: 记录ID已存在
        """
        self._require_initialized()
        arr = self._prepare_vector(vector)
        now = self._clock()
        base_meta = metadata if metadata is not None else RecordMetadata()

        async with self._lock:
            rid = record_id or generate_id("mem")
            if rid in self._records:
                raise ValidationError(f"记录ID已存在: {rid}", details={"id": rid})

            record = MemoryRecord(
                id=rid,
                vector=[float(v) for v in np.asarray(vector, dtype=np.float64).reshape(-1)],
                content=content,
                metadata=base_meta.model_copy(deep=True, update={"created_at": now, "accessed_at": now}),
                row_id=self._next_row_id,
            )
            self._next_row_id += 1
            self._insert_locked(record, arr)
            result = record.model_copy(deep=True)

        logger.debug(f"记录已添加: ID={rid}, 类型={result.metadata.source_type.value}")
        await self._maybe_auto_save()
        return result

    async def add_batch(self, items: List[Dict[str, Any]]) -> BatchOperationResult:
        """
        批量添加记录，单条失败不影响其他记录

        Args:
            items: 每项包含 content、vector，可选 metadata、record_id

        Returns:
            BatchOperationResult: 批量结果
        """
        result = BatchOperationResult()
        for position, item in enumerate(items):
            key = item.get("record_id") or f"#{position}"
            try:
                record = await self.add(
                    content=item["content"],
                    vector=item["vector"],
                    metadata=item.get("metadata"),
                    record_id=item.get("record_id"),
                )
                result.successful += 1
                result.success_ids.append(record.id)
            except (KeyError, RetentionException, PydanticValidationError) as e:
                result.failed += 1
                result.errors[key] = str(e)
        return result

    async def update_metadata(self, record_id: str, patch: Dict[str, Any]) -> Optional[MemoryRecord]:
        """
        更新元数据（整体校验后替换记录）

        extensions 字段按键合并，其余字段直接覆盖。

        Args:
            record_id: 记录ID
            patch: 要更新的字段

        Returns:
            Optional[MemoryRecord]: 更新后的副本，未找到时返回None

        Raises:
            ValidationError: 更新后的元数据不合法
        """
        self._require_initialized()
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return None

            merged = record.metadata.model_dump()
            fields = dict(patch)
            extensions = fields.pop("extensions", None)
            if isinstance(extensions, RecordExtensions):
                merged["extensions"] = extensions.model_dump()
            elif extensions:
                merged["extensions"] = {**merged["extensions"], **extensions}
            merged.update(fields)

            try:
                new_meta = RecordMetadata(**merged)
            except PydanticValidationError as e:
                raise ValidationError(
                    f"元数据校验失败: {record_id}",
                    details={"id": record_id, "errors": str(e)}
                )

            updated = record.model_copy(update={"metadata": new_meta})
            self._replace_locked(updated)
            return updated.model_copy(deep=True)

    async def update_content(
        self,
        record_id: str,
        content: str,
        vector: Optional[Sequence[float]] = None
    ) -> Optional[MemoryRecord]:
        """
        替换记录内容（可同时替换向量）

        Returns:
            Optional[MemoryRecord]: 更新后的副本，未找到时返回None
        """
        self._require_initialized()
        arr = self._prepare_vector(vector) if vector is not None else None

        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return None

            update: Dict[str, Any] = {"content": content}
            if arr is not None:
                row_ids = np.array([record.row_id], dtype=np.int64)
                self._index.remove_ids(row_ids)
                self._index.add_with_ids(arr.reshape(1, -1), row_ids)
                update["vector"] = [float(v) for v in np.asarray(vector, dtype=np.float64).reshape(-1)]

            updated = record.model_copy(update=update)
            self._replace_locked(updated)
            return updated.model_copy(deep=True)

    def _delete_locked(self, record_id: str) -> DeleteResult:
        record = self._records.pop(record_id, None)
        if record is None:
            return DeleteResult(id=record_id, status=DeleteStatus.NOT_FOUND)

        self._index.remove_ids(np.array([record.row_id], dtype=np.int64))
        self._row_to_id.pop(record.row_id, None)
        self.index_manager.unindex_record(record_id)
        self._writes_since_save += 1
        return DeleteResult(id=record_id, status=DeleteStatus.DELETED)

    async def delete(self, record_id: str) -> DeleteResult:
        """
        删除记录

        Returns:
            DeleteResult: deleted 或 not_found
        """
        self._require_initialized()
        async with self._lock:
            result = self._delete_locked(record_id)
        if result.deleted:
            logger.debug(f"记录已删除: ID={record_id}")
        return result

    async def delete_batch(self, record_ids: List[str]) -> List[DeleteResult]:
        self._require_initialized()
        async with self._lock:
            results = [self._delete_locked(record_id) for record_id in record_ids]
        logger.debug(f"批量删除完成: 删除={sum(1 for r in results if r.deleted)}, 请求={len(record_ids)}")
        return results

    async def clear(self) -> None:
        """清空所有记录（保留索引定义），有持久化目录时同步写盘"""
        self._require_initialized()
        async with self._lock:
            self._records.clear()
            self._row_to_id.clear()
            self._index.reset()
            self.index_manager.clear_records()
            self._writes_since_save += 1
        logger.info("向量存储已清空")
        if self.persist_dir:
            await self.save()

    # ==================== 检索 ====================

    @staticmethod
    def _matches(record: MemoryRecord, options: SearchOptions, candidates: Optional[Set[str]]) -> bool:
        meta = record.metadata
        if candidates is not None and record.id not in candidates:
            return False
        if record.id in options.exclude_ids:
            return False
        if options.source_type is not None and meta.source_type != options.source_type:
            return False
        if options.min_importance is not None and meta.importance < options.min_importance:
            return False
        if options.session_id is not None and meta.session_id != options.session_id:
            return False
        if not options.include_summaries and meta.is_summary:
            return False
        if options.topics and not set(options.topics).intersection(meta.topics):
            return False
        if options.tags and not set(options.tags).intersection(meta.tags):
            return False
        return True

    async def search(
        self,
        query_vector: Sequence[float],
        options: Optional[SearchOptions] = None
    ) -> List[SearchResult]:
        """
        相似度检索

        命中的记录 access_count 加 1、accessed_at 更新为当前时间（track_access=False 时跳过）。
        候选记录在取回前被删除的直接跳过。

        Args:
            query_vector: 查询向量
            options: 检索选项

        Returns:
            List[SearchResult]: 按相似度倒序的结果
        """
        self._require_initialized()
        options = options or SearchOptions(limit=self.settings.default_search_limit)
        arr = self._prepare_vector(query_vector)
        start = time.perf_counter()

        hits: List[SearchResult] = []
        ntotal = self._index.ntotal
        if ntotal > 0:
            candidates = self.index_manager.candidate_ids(options)
            filtered = bool(options.filter_columns() or options.exclude_ids)
            k = ntotal if filtered else min(ntotal, options.limit)
            scores, rows = self._index.search(arr.reshape(1, -1), k)

            for score, row in zip(scores[0], rows[0]):
                if row == -1:
                    continue
                if float(score) < options.min_score:
                    break
                record_id = self._row_to_id.get(int(row))
                record = self._records.get(record_id) if record_id is not None else None
                if record is None:
                    continue
                if not self._matches(record, options, candidates):
                    continue
                hits.append(SearchResult(record=record, score=float(score)))
                if len(hits) >= options.limit:
                    break

        results: List[SearchResult] = []
        if hits and options.track_access:
            now = self._clock()
            async with self._lock:
                for hit in hits:
                    current = self._records.get(hit.record.id)
                    if current is None:
                        continue
                    meta = current.metadata.model_copy(update={
                        "access_count": current.metadata.access_count + 1,
                        "accessed_at": max(now, current.metadata.created_at),
                    })
                    touched = current.model_copy(update={"metadata": meta})
                    self._replace_locked(touched)
                    results.append(SearchResult(record=touched.model_copy(deep=True), score=hit.score))
        else:
            results = [
                SearchResult(record=hit.record.model_copy(deep=True), score=hit.score)
                for hit in hits
            ]

        duration_ms = (time.perf_counter() - start) * 1000
        self.index_manager.track_query(options.filter_columns(), True, duration_ms)
        return results

    async def get(self, record_id: str) -> Optional[MemoryRecord]:
        self._require_initialized()
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record else None

    def contains(self, record_id: str) -> bool:
        return record_id in self._records

    def all_ids(self) -> List[str]:
        return list(self._records.keys())

    def list_records(self) -> List[MemoryRecord]:
        """返回所有记录的副本"""
        return [record.model_copy(deep=True) for record in list(self._records.values())]

    def _copies(self, record_ids: List[str]) -> List[MemoryRecord]:
        copies = []
        for record_id in record_ids:
            record = self._records.get(record_id)
            if record is not None:
                copies.append(record.model_copy(deep=True))
        return copies

    def get_by_recency(self, limit: Optional[int] = None) -> List[MemoryRecord]:
        """按最近访问时间倒序返回记录"""
        return self._copies(self.index_manager.ids_by_recency(limit))

    def get_by_importance(self, limit: Optional[int] = None, ascending: bool = True) -> List[MemoryRecord]:
        """按重要性排序返回记录"""
        return self._copies(self.index_manager.ids_by_importance(limit, ascending))

    def ids_by_topic(self, topic: str) -> Set[str]:
        return self.index_manager.ids_by_topic(topic)

    def ids_by_tag(self, tag: str) -> Set[str]:
        return self.index_manager.ids_by_tag(tag)

    def ids_by_source_type(self, source_type: str) -> Set[str]:
        return self.index_manager.ids_by_source_type(source_type)

    # ==================== 容量 ====================

    def capacity_used(self) -> float:
        """已用容量比例"""
        return self.size / self.settings.max_capacity

    def needs_cleanup(self) -> bool:
        """记录数达到 max_capacity × cleanup_threshold 时需要清理"""
        return self.size >= self.settings.max_capacity * self.settings.cleanup_threshold

    async def run_index_maintenance(self) -> IndexMaintenanceResult:
        self._require_initialized()
        return self.index_manager.run_maintenance(self.size)

    async def get_stats(self) -> StoreStats:
        """
        获取存储统计信息

        Returns:
            StoreStats: 统计信息
        """
        records = list(self._records.values())
        total = len(records)
        stats = StoreStats(
            total_records=total,
            by_source_type=self.index_manager.source_type_counts(),
            max_capacity=self.settings.max_capacity,
            dimension=self._dimension,
            capacity_used=total / self.settings.max_capacity,
            needs_cleanup=self.needs_cleanup(),
            index_count=len(self.index_manager.list_indexes()),
        )
        if records:
            stats.average_importance = sum(r.metadata.importance for r in records) / total
            stats.summary_count = sum(1 for r in records if r.metadata.is_summary)
            stats.total_access_count = sum(r.metadata.access_count for r in records)
            stats.oldest_record_at = min(r.metadata.created_at for r in records)
            stats.newest_record_at = max(r.metadata.created_at for r in records)
        if self.metadata_manager is not None:
            stats.extra["storage_size_bytes"] = self.metadata_manager.storage_size_bytes()
        stats.extra["query_performance"] = self.index_manager.query_performance_stats().model_dump()
        return stats

    # ==================== 持久化 ====================

    async def _maybe_auto_save(self) -> None:
        every = self.settings.auto_save_every
        if not self.persist_dir or every <= 0 or self._writes_since_save < every:
            return
        try:
            await self.save()
        except PersistenceFailureError as e:
            logger.error(f"自动保存失败: {e}")

    async def save(self) -> None:
        """
        保存FAISS索引、文档表和索引元数据

        Raises:
            PersistenceFailureError: 写盘失败
        """
        if not self.persist_dir or self.persister is None:
            logger.debug("未配置持久化目录，跳过保存")
            return

        async with self._lock:
            await self.persister.save_index(self._index)
            count = self.metadata_manager.save_documents(
                self._records.values(), self._next_row_id, self._clock()
            )
            self.metadata_manager.save_index_metadata(self.index_manager.to_dict())
            self._writes_since_save = 0

        logger.info(f"向量存储已保存到磁盘: {count} 条记录")

    async def load(self) -> None:
        """
        从磁盘加载存储，FAISS索引缺失或与文档表不一致时按文档表重建

        Raises:
            PersistenceFailureError: 文件无法读取
        """
        if not self.persist_dir or self.persister is None:
            return

        records, next_row_id = self.metadata_manager.load_documents()
        index = await self.persister.load_index()
        index_metadata = self.metadata_manager.load_index_metadata()

        async with self._lock:
            self._records.clear()
            self._row_to_id.clear()
            self.index_manager.clear_records()

            if index is None or index.ntotal != len(records) or index.d != self._dimension:
                if records:
                    logger.warning("FAISS索引与文档表不一致，按文档表重建索引")
                index = self._new_index()
                for record in records:
                    arr = self._prepare_vector(record.vector)
                    index.add_with_ids(arr.reshape(1, -1), np.array([record.row_id], dtype=np.int64))

            self._index = index
            for record in records:
                self._records[record.id] = record
                self._row_to_id[record.row_id] = record.id
                self.index_manager.index_record(record)
            self._next_row_id = next_row_id

            if index_metadata:
                self.index_manager.load_dict(index_metadata)
            self._writes_since_save = 0

        logger.info(f"向量存储已从磁盘加载: {len(records)} 条记录")
