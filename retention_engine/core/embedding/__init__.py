"""
向量化模块

该模块实现了文本向量化功能，包括：
- 向量化服务抽象
- SentenceTransformer实现
- 哈希向量化（本地降级）
- 向量缓存机制
"""

from .embedding_cache import EmbeddingCache
from .embedding_service import EmbeddingService, cosine_similarity
from .hashing_embedding import FallbackEmbedding, HashingEmbedding
from .sentence_transformer import SentenceTransformerEmbedding

__all__ = [
    "EmbeddingService",
    "SentenceTransformerEmbedding",
    "HashingEmbedding",
    "FallbackEmbedding",
    "EmbeddingCache",
    "cosine_similarity"
]
