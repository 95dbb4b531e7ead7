"""
SentenceTransformer向量化实现

基于sentence-transformers库的向量化服务实现
"""

import asyncio
import logging
from typing import List, Optional

import numpy as np

try:
    from sentence_transformers import SentenceTransformer
except ImportError:
    SentenceTransformer = None

from retention_engine.utils.exceptions import ProviderUnavailableError

from .embedding_cache import EmbeddingCache
from .embedding_service import EmbeddingService

logger = logging.getLogger(__name__)

PROVIDER_NAME = "sentence-transformers"
MAX_TEXT_LENGTH = 512


class SentenceTransformerEmbedding(EmbeddingService):
    """
    基于SentenceTransformer的向量化实现

    模型: paraphrase-multilingual-MiniLM-L12-v2
    维度: 384
    支持: 多语言

    模型推理在线程池中执行，不阻塞事件循环。
    推理失败时抛出 ProviderUnavailableError。
    """

    def __init__(
        self,
        model_name: str = "paraphrase-multilingual-MiniLM-L12-v2",
        cache_dir: Optional[str] = None,
        device: str = "cpu",
        cache_size: int = 10000
    ):
        """
        初始化SentenceTransformer向量化服务

        Args:
            model_name: 模型名称
            cache_dir: 磁盘缓存目录，None 表示只用内存缓存
            device: 计算设备 (cpu/cuda)
            cache_size: 内存缓存条目数
        """
        if SentenceTransformer is None:
            raise ImportError(
                "sentence-transformers库未安装。请运行: pip install sentence-transformers"
            )

        self.model_name = model_name
        self.device = device

        try:
            self.model = SentenceTransformer(model_name, device=device)
            self._dimension = self.model.get_sentence_embedding_dimension()
        except Exception as e:
            logger.error(f"加载SentenceTransformer模型失败: {e}")
            raise ProviderUnavailableError(f"加载模型失败: {e}", provider=PROVIDER_NAME)

        self.cache = EmbeddingCache(cache_dir, max_size=cache_size)

        logger.info(f"SentenceTransformer向量化服务初始化完成: 模型={model_name}, 维度={self._dimension}")

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed_text(self, text: str) -> np.ndarray:
        """
        向量化单个文本

        Args:
            text: 要向量化的文本

        Returns:
            np.ndarray: 向量表示

        Raises:
            ProviderUnavailableError: 模型推理失败
        """
        cached_vector = await self.cache.get(text)
        if cached_vector is not None:
            return cached_vector

        loop = asyncio.get_running_loop()
        try:
            vector = await loop.run_in_executor(None, self._encode_text, text)
        except Exception as e:
            logger.error(f"文本向量化失败: {e}")
            raise ProviderUnavailableError(f"文本向量化失败: {e}", provider=PROVIDER_NAME)

        await self.cache.set(text, vector)
        return vector

    async def embed_batch(self, texts: List[str]) -> np.ndarray:
        """
        批量向量化文本，已缓存的文本不会重复推理

        Args:
            texts: 要向量化的文本列表

        Returns:
            np.ndarray: 向量矩阵，形状为 (len(texts), dimension)

        Raises:
            ProviderUnavailableError: 模型推理失败
        """
        if not texts:
            return np.empty((0, self._dimension), dtype=np.float32)

        result = np.zeros((len(texts), self._dimension), dtype=np.float32)
        uncached_texts = []
        uncached_indices = []

        for i, text in enumerate(texts):
            cached_vector = await self.cache.get(text)
            if cached_vector is not None:
                result[i] = cached_vector
            else:
                uncached_texts.append(text)
                uncached_indices.append(i)

        if uncached_texts:
            loop = asyncio.get_running_loop()
            try:
                vectors = await loop.run_in_executor(None, self._encode_batch, uncached_texts)
            except Exception as e:
                logger.error(f"批量文本向量化失败: {e}")
                raise ProviderUnavailableError(f"批量文本向量化失败: {e}", provider=PROVIDER_NAME)

            for i, text, vector in zip(uncached_indices, uncached_texts, vectors):
                result[i] = vector
                await self.cache.set(text, vector)

        return result

    def _encode_text(self, text: str) -> np.ndarray:
        vector = self.model.encode(self._preprocess_text(text), convert_to_numpy=True)
        return vector.astype(np.float32)

    def _encode_batch(self, texts: List[str]) -> np.ndarray:
        processed_texts = [self._preprocess_text(text) for text in texts]
        vectors = self.model.encode(processed_texts, convert_to_numpy=True)
        return vectors.astype(np.float32)

    @staticmethod
    def _preprocess_text(text: str) -> str:
        """
        预处理文本：去除首尾空白并限制长度
        """
        if not text or not isinstance(text, str):
            return ""
        return text.strip()[:MAX_TEXT_LENGTH]
