"""
向量缓存

实现向量化结果的缓存机制，提高性能
"""

import hashlib
import logging
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

logger = logging.getLogger(__name__)


class EmbeddingCache:
    """
    向量缓存类

    以文本的 md5 为键，内存层按 LRU 淘汰；配置了目录时同时写入磁盘（.npy）。
    """

    def __init__(self, cache_dir: Optional[str] = None, max_size: int = 10000):
        """
        初始化向量缓存

        Args:
            cache_dir: 缓存目录路径，None 表示只用内存
            max_size: 内存中最多缓存的条目数
        """
        self.cache_dir = Path(cache_dir) if cache_dir else None
        if self.cache_dir is not None:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.max_size = max_size

        self._memory_cache: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self.hits = 0
        self.misses = 0

        logger.info(f"向量缓存初始化完成: 目录={cache_dir}, 最大大小={max_size}")

    @staticmethod
    def _get_text_hash(text: str) -> str:
        return hashlib.md5(text.encode("utf-8")).hexdigest()

    def _get_cache_file_path(self, text_hash: str) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        return self.cache_dir / f"{text_hash}.npy"

    def _remember(self, text_hash: str, vector: np.ndarray) -> None:
        self._memory_cache[text_hash] = vector
        self._memory_cache.move_to_end(text_hash)
        while len(self._memory_cache) > self.max_size:
            self._memory_cache.popitem(last=False)

    async def get(self, text: str) -> Optional[np.ndarray]:
        """
        从缓存中获取向量

        Args:
            text: 输入文本

        Returns:
            Optional[np.ndarray]: 缓存向量的副本，如果不存在则返回None
        """
        text_hash = self._get_text_hash(text)

        if text_hash in self._memory_cache:
            self._memory_cache.move_to_end(text_hash)
            self.hits += 1
            return self._memory_cache[text_hash].copy()

        cache_file = self._get_cache_file_path(text_hash)
        if cache_file is not None and cache_file.exists():
            try:
                vector = np.load(cache_file, allow_pickle=False)
            except (OSError, ValueError) as e:
                logger.warning(f"读取磁盘缓存失败，忽略: {cache_file}, {e}")
            else:
                self._remember(text_hash, vector)
                self.hits += 1
                return vector.copy()

        self.misses += 1
        return None

    async def set(self, text: str, vector: np.ndarray) -> None:
        """
        将向量存储到缓存

        Args:
            text: 输入文本
            vector: 向量数据
        """
        text_hash = self._get_text_hash(text)
        stored = np.asarray(vector, dtype=np.float32).copy()
        self._remember(text_hash, stored)

        cache_file = self._get_cache_file_path(text_hash)
        if cache_file is not None:
            try:
                np.save(cache_file, stored, allow_pickle=False)
            except OSError as e:
                logger.warning(f"写入磁盘缓存失败: {cache_file}, {e}")

    async def clear(self) -> None:
        """清空所有缓存"""
        self._memory_cache.clear()
        if self.cache_dir is not None:
            for cache_file in self.cache_dir.glob("*.npy"):
                cache_file.unlink()
        logger.info("向量缓存已清空")

    def get_cache_stats(self) -> Dict[str, Any]:
        """
        获取缓存统计信息

        Returns:
            Dict[str, Any]: 缓存统计信息
        """
        lookups = self.hits + self.misses
        return {
            "memory_cache_count": len(self._memory_cache),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
        }
