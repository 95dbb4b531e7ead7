"""
向量化服务单元测试

测试哈希向量化、降级包装、向量缓存和 SentenceTransformer 封装
"""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from retention_engine.core.embedding.embedding_cache import EmbeddingCache
from retention_engine.core.embedding.embedding_service import cosine_similarity
from retention_engine.core.embedding.hashing_embedding import FallbackEmbedding, HashingEmbedding
from retention_engine.core.embedding.sentence_transformer import SentenceTransformerEmbedding
from retention_engine.utils.exceptions import ProviderUnavailableError

from tests.conftest import FailingEmbedding


class TestCosineSimilarity:
    """测试余弦相似度"""

    def test_values(self):
        """测试相同、正交、相反和零向量"""
        assert cosine_similarity([1, 0], [2, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)
        assert cosine_similarity([1, 0], [-1, 0]) == pytest.approx(-1.0)
        assert cosine_similarity([0, 0], [1, 0]) == 0.0


class TestHashingEmbedding:
    """测试哈希向量化"""

    @pytest.mark.asyncio
    async def test_deterministic_and_normalized(self):
        """测试同一文本得到相同的单位向量"""
        embedding = HashingEmbedding(16)
        first = await embedding.embed_text("I moved to Berlin")
        second = HashingEmbedding(16).encode("i moved to berlin")

        assert first.shape == (16,)
        assert np.allclose(first, second)
        assert np.linalg.norm(first) == pytest.approx(1.0, abs=1e-5)

    def test_empty_text(self):
        """测试没有词时返回零向量"""
        assert not HashingEmbedding(8).encode("   ").any()

    @pytest.mark.asyncio
    async def test_batch(self):
        """测试批量向量化的形状"""
        embedding = HashingEmbedding(8)
        assert (await embedding.embed_batch(["a", "b c"])).shape == (2, 8)
        assert (await embedding.embed_batch([])).shape == (0, 8)

    @pytest.mark.asyncio
    async def test_similar_texts_closer(self):
        """测试共享词越多相似度越高"""
        embedding = HashingEmbedding(256)
        base = "the quarterly report is due friday"
        close = await embedding.similarity(base, "the quarterly report is due monday")
        far = await embedding.similarity(base, "my cat enjoys sleeping in the sun")
        assert close > far

    def test_invalid_dimension(self):
        """测试非法维度"""
        with pytest.raises(ValueError):
            HashingEmbedding(0)


class TestFallbackEmbedding:
    """测试降级包装"""

    @pytest.mark.asyncio
    async def test_primary_used(self):
        """测试主服务可用时不降级"""
        embedding = FallbackEmbedding(HashingEmbedding(8))
        vector, used_fallback = await embedding.embed_text_with_status("hello")
        assert not used_fallback
        assert embedding.fallback_count == 0
        assert vector.shape == (8,)

    @pytest.mark.asyncio
    async def test_fallback_on_failure(self):
        """测试主服务失败时使用哈希向量并计数"""
        embedding = FallbackEmbedding(FailingEmbedding(8))

        vector, used_fallback = await embedding.embed_text_with_status("hello")
        batch = await embedding.embed_batch(["a", "b"])

        assert used_fallback
        assert np.allclose(vector, HashingEmbedding(8).encode("hello"))
        assert batch.shape == (2, 8)
        assert embedding.fallback_count == 2

    def test_dimension_mismatch(self):
        """测试降级服务维度不一致时报错"""
        with pytest.raises(ValueError):
            FallbackEmbedding(HashingEmbedding(8), HashingEmbedding(16))


class TestEmbeddingCache:
    """测试向量缓存"""

    @pytest.mark.asyncio
    async def test_lru_eviction(self):
        """测试超过容量时淘汰最久未使用的条目"""
        cache = EmbeddingCache(max_size=2)
        await cache.set("a", np.ones(4))
        await cache.set("b", np.zeros(4))
        await cache.get("a")
        await cache.set("c", np.ones(4))

        assert await cache.get("b") is None
        assert await cache.get("a") is not None
        stats = cache.get_cache_stats()
        assert stats["memory_cache_count"] == 2
        assert stats["hits"] == 2
        assert stats["misses"] == 1

    @pytest.mark.asyncio
    async def test_disk_cache(self, tmp_path):
        """测试磁盘缓存在新实例中可读"""
        await EmbeddingCache(str(tmp_path)).set("hello", np.arange(4, dtype=np.float32))

        restored = await EmbeddingCache(str(tmp_path)).get("hello")

        assert np.allclose(restored, [0, 1, 2, 3])

    @pytest.mark.asyncio
    async def test_clear(self, tmp_path):
        """测试清空内存和磁盘缓存"""
        cache = EmbeddingCache(str(tmp_path))
        await cache.set("hello", np.ones(4))
        await cache.clear()

        assert list(tmp_path.glob("*.npy")) == []
        assert await cache.get("hello") is None


class TestSentenceTransformerEmbedding:
    """测试 SentenceTransformer 封装（模型使用 mock）"""

    @pytest.fixture
    def model(self):
        model = MagicMock()
        model.get_sentence_embedding_dimension.return_value = 4
        model.encode.side_effect = lambda texts, convert_to_numpy=True: (
            np.ones((len(texts), 4)) if isinstance(texts, list) else np.ones(4)
        )
        return model

    @pytest.mark.asyncio
    async def test_embed_with_cache(self, model):
        """测试向量化结果被缓存，重复文本不再推理"""
        with patch("retention_engine.core.embedding.sentence_transformer.SentenceTransformer",
                   return_value=model):
            embedding = SentenceTransformerEmbedding("test-model")

        first = await embedding.embed_text("  hello  ")
        await embedding.embed_text("  hello  ")
        batch = await embedding.embed_batch(["  hello  ", "world"])

        assert embedding.dimension == 4
        assert first.dtype == np.float32
        assert batch.shape == (2, 4)
        assert model.encode.call_count == 2
        model.encode.assert_any_call("hello", convert_to_numpy=True)

    @pytest.mark.asyncio
    async def test_inference_failure(self, model):
        """测试推理失败时抛出 ProviderUnavailableError"""
        model.encode.side_effect = RuntimeError("cuda error")
        with patch("retention_engine.core.embedding.sentence_transformer.SentenceTransformer",
                   return_value=model):
            embedding = SentenceTransformerEmbedding("test-model")

        with pytest.raises(ProviderUnavailableError):
            await embedding.embed_text("hello")

    def test_load_failure(self):
        """测试模型加载失败时抛出 ProviderUnavailableError"""
        with patch("retention_engine.core.embedding.sentence_transformer.SentenceTransformer",
                   side_effect=OSError("model not found")):
            with pytest.raises(ProviderUnavailableError):
                SentenceTransformerEmbedding("missing-model")
