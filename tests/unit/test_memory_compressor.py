"""
记忆压缩器单元测试
"""

import pytest

from retention_engine.core.memory.memory_compressor import ExtractiveSummarizer, MemoryCompressor

from tests.conftest import ScriptedSummarizer, make_record


class TestExtractiveSummarizer:
    """测试抽取式摘要"""

    def test_leads_by_importance(self):
        """测试按重要性取每条记录的第一句话"""
        records = [
            make_record("a", "We talked about the weather forecast. It may rain.", importance=0.2,
                        topics=["weather"]),
            make_record("b", "The heat wave lasts until Friday evening. Stay hydrated.", importance=0.6,
                        topics=["weather", "health"]),
        ]

        summary = ExtractiveSummarizer().summarize(records)

        assert summary.summary_text == (
            "The heat wave lasts until Friday evening; We talked about the weather forecast"
        )
        assert summary.topics == ["weather", "health"]
        assert 0 < summary.compression_ratio < 1

    def test_short_lead_uses_content(self):
        """测试第一句话太短时改用整条内容"""
        summary = ExtractiveSummarizer().summarize([make_record("a", "Hi. How are you doing today")])
        assert summary.summary_text == "Hi. How are you doing today"

    def test_truncated(self):
        """测试摘要长度不超过上限"""
        records = [make_record(str(i), f"Sentence number {i} is reasonably long") for i in range(10)]
        summary = ExtractiveSummarizer(max_chars=50).summarize(records)
        assert len(summary.summary_text) <= 50
        assert summary.summary_text.endswith("...")

    def test_tags_as_topics(self):
        """测试没有主题时用第一个标签作为主题"""
        records = [make_record("a", "note", tags=["scratch", "misc"])]
        assert ExtractiveSummarizer.collect_topics(records) == ["scratch"]


class TestMemoryCompressor:
    """测试带降级的压缩入口"""

    @pytest.mark.asyncio
    async def test_summarizer_used(self):
        """测试摘要服务正常时不降级，缺失的主题从记录补全"""
        summarizer = ScriptedSummarizer("short summary")
        compressor = MemoryCompressor(summarizer)
        records = [make_record("a", "weather talk", topics=["weather"])]

        summary, used_fallback = await compressor.compress(records)

        assert not used_fallback
        assert summary.summary_text == "short summary"
        assert summary.topics == ["weather"]
        assert summarizer.calls == [["a"]]

    @pytest.mark.asyncio
    async def test_fallback_on_failure(self):
        """测试摘要服务失败时使用抽取式摘要"""
        compressor = MemoryCompressor(ScriptedSummarizer(fail=True))

        summary, used_fallback = await compressor.compress([make_record("a", "Remember the milk on the way home")])

        assert used_fallback
        assert summary.summary_text == "Remember the milk on the way home"
        assert compressor.fallback_count == 1

    @pytest.mark.asyncio
    async def test_no_summarizer(self):
        """测试没有摘要服务时直接使用抽取式摘要，不算降级也不计数"""
        compressor = MemoryCompressor()
        _, used_fallback = await compressor.compress([make_record("a", "Remember the milk on the way home")])
        assert not used_fallback
        assert compressor.fallback_count == 0

    @pytest.mark.asyncio
    async def test_empty_records(self):
        """测试空列表报错"""
        with pytest.raises(ValueError):
            await MemoryCompressor().compress([])
