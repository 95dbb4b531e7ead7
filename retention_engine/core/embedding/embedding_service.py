"""
向量化服务抽象基类

定义了向量化服务（EmbeddingPort）的标准接口
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


def cosine_similarity(vector1: Sequence[float], vector2: Sequence[float]) -> float:
    """
    计算余弦相似度

    Args:
        vector1: 第一个向量
        vector2: 第二个向量

    Returns:
        float: 余弦相似度，范围 [-1, 1]；任一向量为零向量时返回 0
    """
    a = np.asarray(vector1, dtype=np.float64)
    b = np.asarray(vector2, dtype=np.float64)
    norm1 = np.linalg.norm(a)
    norm2 = np.linalg.norm(b)
    if norm1 == 0 or norm2 == 0:
        return 0.0
    similarity = float(np.dot(a, b) / (norm1 * norm2))
    return max(-1.0, min(1.0, similarity))


class EmbeddingService(ABC):
    """
    向量化服务抽象基类

    实现方需要保证返回向量的长度恒为 dimension；
    外部服务失败时抛出 ProviderUnavailableError，由调用方决定降级路径。
    """

    @property
    @abstractmethod
    def dimension(self) -> int:
        """
        获取向量维度

        Returns:
            int: 向量维度
        """

    @abstractmethod
    async def embed_text(self, text: str) -> np.ndarray:
        """
        向量化单个文本

        Args:
            text: 要向量化的文本

        Returns:
            np.ndarray: 向量表示，形状为 (dimension,)
        """

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> np.ndarray:
        """
        批量向量化文本

        Args:
            texts: 要向量化的文本列表

        Returns:
            np.ndarray: 向量矩阵，形状为 (len(texts), dimension)
        """

    @staticmethod
    def cosine_similarity(vector1: Sequence[float], vector2: Sequence[float]) -> float:
        return cosine_similarity(vector1, vector2)

    async def similarity(self, text1: str, text2: str) -> float:
        """
        计算两个文本的相似度

        Args:
            text1: 第一个文本
            text2: 第二个文本

        Returns:
            float: 余弦相似度
        """
        vectors = await self.embed_batch([text1, text2])
        return cosine_similarity(vectors[0], vectors[1])

    async def most_similar(
        self,
        query_text: str,
        candidate_texts: List[str],
        top_k: int = 5
    ) -> List[Tuple[str, float]]:
        """
        找到与查询文本最相似的候选文本

        Args:
            query_text: 查询文本
            candidate_texts: 候选文本列表
            top_k: 返回前k个最相似的结果

        Returns:
            List[Tuple[str, float]]: [(text, similarity_score), ...] 按相似度降序排列
        """
        if not candidate_texts:
            return []

        query_vector = await self.embed_text(query_text)
        candidate_vectors = await self.embed_batch(candidate_texts)

        similarities = [
            (text, cosine_similarity(query_vector, vector))
            for text, vector in zip(candidate_texts, candidate_vectors)
        ]
        similarities.sort(key=lambda x: x[1], reverse=True)
        return similarities[:top_k]
