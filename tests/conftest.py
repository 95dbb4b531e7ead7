"""
测试配置文件
提供测试用的 fixtures 和替身实现（手动时钟、确定性向量化、可编排的摘要服务）
"""

from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest

from retention_engine.core.embedding.embedding_service import EmbeddingService
from retention_engine.core.embedding.hashing_embedding import HashingEmbedding
from retention_engine.core.memory.memory_compressor import SummarizerPort
from retention_engine.core.memory.schemas import GroupSummary
from retention_engine.core.vectordb.memory_vector_store import MemoryVectorStore
from retention_engine.core.vectordb.schemas import MemoryRecord, RecordMetadata, SourceType
from retention_engine.schemas.config import EngineSettings, VectorStoreSettings
from retention_engine.utils.helpers import SECONDS_PER_HOUR

TEST_DIMENSION = 8

# 2023-11-14 22:13:20 UTC
START_TIME = 1_700_000_000.0


class ManualClock:
    """手动推进的时钟"""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float = 0.0, hours: float = 0.0) -> float:
        self.now += seconds + hours * SECONDS_PER_HOUR
        return self.now

    def set(self, timestamp: float) -> None:
        self.now = timestamp


def unit_vector(axis: int, dimension: int = TEST_DIMENSION) -> List[float]:
    """第 axis 维为 1 的单位向量"""
    vector = [0.0] * dimension
    vector[axis % dimension] = 1.0
    return vector


def vector_with_similarity(similarity: float, axis: int = 0, other: int = 1,
                           dimension: int = TEST_DIMENSION) -> List[float]:
    """与 unit_vector(axis) 的余弦相似度恰好为 similarity 的单位向量"""
    vector = [0.0] * dimension
    vector[axis] = similarity
    vector[other] = float(np.sqrt(max(0.0, 1.0 - similarity ** 2)))
    return vector


class KeywordEmbedding(EmbeddingService):
    """
    确定性向量化替身

    命中预设文本时返回预设向量，否则使用哈希向量化。
    """

    def __init__(self, dimension: int = TEST_DIMENSION, presets: Optional[Dict[str, List[float]]] = None):
        self._dimension = dimension
        self.presets = dict(presets or {})
        self.hashing = HashingEmbedding(dimension)
        self.calls: List[str] = []

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed_text(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if text in self.presets:
            return np.asarray(self.presets[text], dtype=np.float32)
        return self.hashing.encode(text)

    async def embed_batch(self, texts: List[str]) -> np.ndarray:
        return np.vstack([await self.embed_text(text) for text in texts])


class FailingEmbedding(EmbeddingService):
    """总是失败的向量化服务"""

    def __init__(self, dimension: int = TEST_DIMENSION):
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed_text(self, text: str) -> np.ndarray:
        raise RuntimeError("embedding provider down")

    async def embed_batch(self, texts: List[str]) -> np.ndarray:
        raise RuntimeError("embedding provider down")


class ScriptedSummarizer(SummarizerPort):
    """记录调用次数的摘要服务替身"""

    def __init__(self, text: str = "Summary: weather small talk", fail: bool = False):
        self.text = text
        self.fail = fail
        self.calls: List[List[str]] = []

    async def summarize_group(self, records: Sequence[MemoryRecord]) -> GroupSummary:
        self.calls.append([record.id for record in records])
        if self.fail:
            raise RuntimeError("summarizer unavailable")
        total = sum(len(record.content) for record in records)
        return GroupSummary(
            summary_text=self.text,
            topics=[],
            compression_ratio=len(self.text) / total if total else 1.0,
        )


def make_metadata(**kwargs) -> RecordMetadata:
    kwargs.setdefault("source_type", SourceType.CONVERSATION)
    return RecordMetadata(**kwargs)


def make_record(record_id: str, content: str, importance: float = 0.5, created_at: float = START_TIME,
                vector: Optional[List[float]] = None, **meta) -> MemoryRecord:
    """构造不经过存储的记录（用于纯计算的单元测试）"""
    meta.setdefault("accessed_at", created_at)
    return MemoryRecord(
        id=record_id,
        vector=vector or unit_vector(0),
        content=content,
        metadata=make_metadata(importance=importance, created_at=created_at, **meta),
    )


@pytest.fixture
def clock():
    """手动时钟"""
    return ManualClock()


@pytest.fixture
def store_settings():
    return VectorStoreSettings(dimension=TEST_DIMENSION, max_capacity=100, auto_save_every=0)


@pytest.fixture
async def store(store_settings, clock):
    """已初始化的纯内存向量存储"""
    vector_store = MemoryVectorStore(settings=store_settings, clock=clock)
    await vector_store.initialize()
    return vector_store


@pytest.fixture
def engine_settings(tmp_path):
    """引擎配置：小维度、审计日志写入临时目录"""
    return EngineSettings(
        vector_store=VectorStoreSettings(dimension=TEST_DIMENSION, max_capacity=100, auto_save_every=0),
        audit={"enabled": True, "path": str(tmp_path / "gdpr-audit.log")},
    )
