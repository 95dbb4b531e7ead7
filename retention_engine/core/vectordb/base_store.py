"""
向量存储基类

定义了记忆向量存储的标准接口
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from .schemas import (
    BatchOperationResult,
    DeleteResult,
    MemoryRecord,
    RecordMetadata,
    SearchOptions,
    SearchResult,
    StoreStats,
)


class BaseVectorStore(ABC):
    """
    向量存储基类

    定义了记录存储和相似度检索的标准接口。
    所有读取操作返回副本，写入只能通过本接口完成。
    """

    @property
    @abstractmethod
    def dimension(self) -> int:
        """
        获取向量维度

        Returns:
            int: 向量维度
        """

    @property
    @abstractmethod
    def size(self) -> int:
        """当前记录数"""

    @abstractmethod
    async def initialize(self) -> None:
        """
        初始化存储（构建索引，加载持久化数据）
        """

    @abstractmethod
    async def add(
        self,
        content: str,
        vector: Sequence[float],
        metadata: Optional[RecordMetadata] = None,
        record_id: Optional[str] = None
    ) -> MemoryRecord:
        """
        添加记录

        Args:
            content: 文本内容
            vector: 向量
            metadata: 元数据
            record_id: 指定记录ID，默认自动生成

        Returns:
            MemoryRecord: 新记录的副本
        """

    @abstractmethod
    async def add_batch(self, items: List[Dict[str, Any]]) -> BatchOperationResult:
        """
        批量添加记录

        Args:
            items: 每项包含 content、vector，可选 metadata、record_id

        Returns:
            BatchOperationResult: 批量结果
        """

    @abstractmethod
    async def search(
        self,
        query_vector: Sequence[float],
        options: Optional[SearchOptions] = None
    ) -> List[SearchResult]:
        """
        相似度检索

        Args:
            query_vector: 查询向量
            options: 检索选项

        Returns:
            List[SearchResult]: 按相似度倒序的结果
        """

    @abstractmethod
    async def get(self, record_id: str) -> Optional[MemoryRecord]:
        """
        获取记录（不更新访问统计）
        """

    @abstractmethod
    async def delete(self, record_id: str) -> DeleteResult:
        """
        删除记录，未找到时返回 not_found 而不是抛出异常
        """

    @abstractmethod
    async def delete_batch(self, record_ids: List[str]) -> List[DeleteResult]:
        """
        批量删除记录
        """

    @abstractmethod
    async def update_metadata(self, record_id: str, patch: Dict[str, Any]) -> Optional[MemoryRecord]:
        """
        更新元数据

        Args:
            record_id: 记录ID
            patch: 要更新的元数据字段

        Returns:
            Optional[MemoryRecord]: 更新后的副本，未找到时返回None
        """

    @abstractmethod
    async def get_stats(self) -> StoreStats:
        """
        获取存储统计信息
        """

    @abstractmethod
    async def save(self) -> None:
        """
        保存存储到磁盘
        """

    @abstractmethod
    async def load(self) -> None:
        """
        从磁盘加载存储
        """

    @abstractmethod
    async def clear(self) -> None:
        """
        清空所有记录
        """
