"""
记忆压缩器

该模块负责把一组低价值记忆压缩为一条摘要，包括：
- 摘要服务抽象（SummarizerPort，可接入大语言模型）
- 抽取式摘要（不依赖外部服务，用作降级方案）
- 带降级的压缩入口
"""

import re
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence, Tuple

from retention_engine.core.vectordb.schemas import MemoryRecord
from retention_engine.utils.helpers import truncate_text
from retention_engine.utils.logger import get_logger

from .schemas import GroupSummary

logger = get_logger(__name__)

_SENTENCE_PATTERN = re.compile(r"[.!?。！？]")


class SummarizerPort(ABC):
    """
    摘要服务抽象基类

    实现方失败时直接抛出异常，由 MemoryCompressor 决定降级路径。
    """

    @abstractmethod
    async def summarize_group(self, records: Sequence[MemoryRecord]) -> GroupSummary:
        """
        为一组记录生成摘要

        Args:
            records: 同一主题下的记录

        Returns:
            GroupSummary: 摘要文本、主题和压缩比
        """


class ExtractiveSummarizer(SummarizerPort):
    """
    抽取式摘要

    按重要性从高到低取每条记录的第一句话，拼接后截断到 max_chars。

    Args:
        max_chars: 摘要最大长度
        min_sentence_length: 第一句话的最小长度，太短时改用整条内容
        max_records: 最多取多少条记录
    """

    def __init__(self, max_chars: int = 500, min_sentence_length: int = 20, max_records: int = 10):
        self.max_chars = max_chars
        self.min_sentence_length = min_sentence_length
        self.max_records = max_records

    def _lead(self, content: str) -> str:
        content = (content or "").strip()
        first = _SENTENCE_PATTERN.split(content, maxsplit=1)[0].strip()
        if len(first) >= self.min_sentence_length:
            return first
        return truncate_text(content, self.min_sentence_length * 4)

    @staticmethod
    def collect_topics(records: Sequence[MemoryRecord]) -> List[str]:
        topics: List[str] = []
        for record in records:
            for topic in record.metadata.topics or record.metadata.tags[:1]:
                if topic not in topics:
                    topics.append(topic)
        return topics

    def summarize(self, records: Sequence[MemoryRecord]) -> GroupSummary:
        """同步生成抽取式摘要"""
        ranked = sorted(records, key=lambda r: r.importance, reverse=True)
        parts: List[str] = []
        for record in ranked[:self.max_records]:
            lead = self._lead(record.content)
            if lead and lead not in parts:
                parts.append(lead)

        text = truncate_text("; ".join(parts), self.max_chars)
        if not text.strip():
            text = f"Summary of {len(records)} memories"

        total = sum(len(record.content) for record in records)
        return GroupSummary(
            summary_text=text,
            topics=self.collect_topics(records),
            compression_ratio=len(text) / total if total else 1.0,
        )

    async def summarize_group(self, records: Sequence[MemoryRecord]) -> GroupSummary:
        return self.summarize(records)


class MemoryCompressor:
    """
    记忆压缩器

    优先调用外部摘要服务，失败或返回空摘要时使用抽取式摘要。

    Args:
        summarizer: 摘要服务，None 表示只用抽取式摘要
        fallback: 降级摘要器
    """

    def __init__(
        self,
        summarizer: Optional[SummarizerPort] = None,
        fallback: Optional[ExtractiveSummarizer] = None
    ):
        self.summarizer = summarizer
        self.fallback = fallback or ExtractiveSummarizer()
        self.fallback_count = 0

    async def compress(self, records: Sequence[MemoryRecord]) -> Tuple[GroupSummary, bool]:
        """
        压缩一组记录

        Args:
            records: 记录列表（不能为空）

        Returns:
            Tuple[GroupSummary, bool]: (摘要, 是否使用了降级方案)
        """
        if not records:
            raise ValueError("记录列表不能为空")

        if self.summarizer is not None:
            try:
                summary = await self.summarizer.summarize_group(list(records))
                if isinstance(summary, GroupSummary):
                    if not summary.topics:
                        summary = summary.model_copy(
                            update={"topics": ExtractiveSummarizer.collect_topics(records)}
                        )
                    return summary, False
                logger.warning("摘要服务返回了无效结果，使用抽取式摘要", result_type=type(summary).__name__)
            except Exception as e:
                logger.warning("摘要服务失败，使用抽取式摘要", error=str(e), records=len(records))

        if self.summarizer is not None:
            self.fallback_count += 1
        return self.fallback.summarize(records), self.summarizer is not None
