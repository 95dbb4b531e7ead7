"""
向量数据库模块

该模块实现了基于FAISS的记忆存储和检索功能，包括：
- 向量存储基类
- 记忆向量存储
- 索引管理（二级索引与索引定义）
- 容量清理
- FAISS持久化与文档表管理
"""

from .base_store import BaseVectorStore
from .cleanup_manager import CleanupManager
from .index_manager import IndexManager
from .memory_vector_store import MemoryVectorStore
from .persistence.faiss_persister import FAISSPersister
from .persistence.metadata_manager import MetadataManager
from .schemas import (
    CleanupResult,
    DeleteResult,
    DeleteStatus,
    MemoryRecord,
    RecordExtensions,
    RecordMetadata,
    SearchOptions,
    SearchResult,
    SourceType,
)

__all__ = [
    "BaseVectorStore",
    "MemoryVectorStore",
    "IndexManager",
    "CleanupManager",
    "FAISSPersister",
    "MetadataManager",
    "CleanupResult",
    "DeleteResult",
    "DeleteStatus",
    "MemoryRecord",
    "RecordExtensions",
    "RecordMetadata",
    "SearchOptions",
    "SearchResult",
    "SourceType",
]
