"""
哈希向量化实现

确定性的本地向量化：对词和相邻词对做带符号的特征哈希，再做 L2 归一化。
不依赖模型和网络，用作外部向量化服务不可用时的降级方案，也可用于离线环境。
"""

import hashlib
import logging
import re
from typing import List, Optional, Tuple

import numpy as np

from retention_engine.utils.exceptions import ProviderUnavailableError

from .embedding_service import EmbeddingService

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


class HashingEmbedding(EmbeddingService):
    """
    带符号特征哈希向量化

    同一文本在任何进程中得到的向量都相同。

    Args:
        dimension: 向量维度
        use_bigrams: 是否加入相邻词对特征
    """

    def __init__(self, dimension: int = 384, use_bigrams: bool = True):
        if dimension < 1:
            raise ValueError("dimension 必须为正数")
        self._dimension = dimension
        self.use_bigrams = use_bigrams

    @property
    def dimension(self) -> int:
        return self._dimension

    @staticmethod
    def tokenize(text: str) -> List[str]:
        return _TOKEN_PATTERN.findall((text or "").lower())

    def _features(self, text: str) -> List[str]:
        tokens = self.tokenize(text)
        features = list(tokens)
        if self.use_bigrams:
            features.extend(f"{a} {b}" for a, b in zip(tokens, tokens[1:]))
        return features

    def _bucket(self, feature: str) -> Tuple[int, float]:
        digest = hashlib.md5(feature.encode("utf-8")).digest()
        index = int.from_bytes(digest[:4], "little") % self._dimension
        sign = 1.0 if digest[4] & 1 else -1.0
        return index, sign

    def encode(self, text: str) -> np.ndarray:
        """
        同步编码单个文本

        Returns:
            np.ndarray: L2 归一化后的向量；没有任何词时返回零向量
        """
        vector = np.zeros(self._dimension, dtype=np.float32)
        for feature in self._features(text):
            index, sign = self._bucket(feature)
            vector[index] += sign
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector

    async def embed_text(self, text: str) -> np.ndarray:
        return self.encode(text)

    async def embed_batch(self, texts: List[str]) -> np.ndarray:
        if not texts:
            return np.empty((0, self._dimension), dtype=np.float32)
        return np.stack([self.encode(text) for text in texts])


class FallbackEmbedding(EmbeddingService):
    """
    带降级的向量化服务

    优先调用主服务，主服务抛出异常时改用哈希向量化，并记录降级次数。

    Args:
        primary: 主向量化服务
        fallback: 降级服务，默认为同维度的 HashingEmbedding
    """

    def __init__(self, primary: EmbeddingService, fallback: Optional[EmbeddingService] = None):
        self.primary = primary
        self.fallback = fallback or HashingEmbedding(primary.dimension)
        if self.fallback.dimension != primary.dimension:
            raise ValueError("降级服务的维度必须与主服务一致")
        self.fallback_count = 0

    @property
    def dimension(self) -> int:
        return self.primary.dimension

    async def embed_text_with_status(self, text: str) -> Tuple[np.ndarray, bool]:
        """
        向量化单个文本，并返回是否走了降级路径

        Returns:
            Tuple[np.ndarray, bool]: (向量, 是否降级)
        """
        try:
            return await self.primary.embed_text(text), False
        except Exception as e:
            self.fallback_count += 1
            provider = e.provider if isinstance(e, ProviderUnavailableError) else type(self.primary).__name__
            logger.warning(f"向量化服务不可用，使用哈希降级: provider={provider}, error={e}")
            return await self.fallback.embed_text(text), True

    async def embed_text(self, text: str) -> np.ndarray:
        vector, _ = await self.embed_text_with_status(text)
        return vector

    async def embed_batch(self, texts: List[str]) -> np.ndarray:
        try:
            return await self.primary.embed_batch(texts)
        except Exception as e:
            self.fallback_count += 1
            logger.warning(f"批量向量化失败，使用哈希降级: {e}")
            return await self.fallback.embed_batch(texts)
