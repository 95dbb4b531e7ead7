"""
记忆服务层

该模块提供记忆保留引擎的对外接口，包括：
- 记忆的写入、检索、遗忘
- 合规删除请求
- 整合、去重、衰减、容量清理等维护任务
- 后台调度的启动与停止
- 统计信息与事件通道

所有组件在构造时通过依赖注入组装，不使用全局单例。
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from retention_engine.core.embedding.embedding_service import EmbeddingService
from retention_engine.core.embedding.hashing_embedding import FallbackEmbedding, HashingEmbedding
from retention_engine.core.embedding.sentence_transformer import SentenceTransformerEmbedding
from retention_engine.core.events import EventChannel
from retention_engine.core.memory.audit_log import AuditLog
from retention_engine.core.memory.consolidation_scheduler import ConsolidationScheduler
from retention_engine.core.memory.deduplicator import Deduplicator
from retention_engine.core.memory.deletion_requests import DeletionRequestProcessor
from retention_engine.core.memory.forgetting_mechanism import ForgettingEngine
from retention_engine.core.memory.importance_scorer import ImportanceScorer
from retention_engine.core.memory.memory_compressor import MemoryCompressor, SummarizerPort
from retention_engine.core.memory.retention_policy import PolicyResolver, policies_from_config
from retention_engine.core.memory.schemas import (
    ConsolidationResult,
    DateRange,
    DeduplicationResult,
    DeletionRequest,
    DeletionScope,
    DuplicatePair,
    ForgetOptions,
    ForgetResult,
    ForgettingBatchResult,
    RetentionPolicy,
)
from retention_engine.core.vectordb.cleanup_manager import CleanupManager
from retention_engine.core.vectordb.memory_vector_store import MemoryVectorStore
from retention_engine.core.vectordb.schemas import (
    CleanupResult,
    MemoryRecord,
    RecordMetadata,
    SearchOptions,
    SearchResult,
    SourceType,
)
from retention_engine.schemas.config import EngineSettings
from retention_engine.utils.config import Config
from retention_engine.utils.exceptions import AlreadyRunningError, ConfigError, NotInitializedError, ValidationError
from retention_engine.utils.helpers import Clock, system_clock, truncate_text
from retention_engine.utils.logger import get_logger

logger = get_logger(__name__)

# recall 支持的过滤条件（对应 SearchOptions 字段）
RECALL_FILTERS = {
    "min_score",
    "source_type",
    "min_importance",
    "topics",
    "tags",
    "session_id",
    "include_summaries",
    "exclude_ids",
}


def build_embedding(config: Config) -> EmbeddingService:
    """
    根据配置构建向量化服务

    embedding.provider 为 sentence-transformers 时加载模型（外面包一层哈希降级），
    为 hashing 时直接使用哈希向量化。

    Raises:
        ConfigError: provider 不支持
    """
    provider = config.get("embedding.provider", "hashing")
    dimension = config.get("retention.vector_store.dimension", 384)
    if provider == "hashing":
        return HashingEmbedding(dimension)
    if provider == "sentence-transformers":
        primary = SentenceTransformerEmbedding(
            model_name=config.get("embedding.model_name", "paraphrase-multilingual-MiniLM-L12-v2"),
            cache_dir=config.get("embedding.cache_dir"),
            device=config.get("embedding.device", "cpu"),
            cache_size=config.get("embedding.cache_size", 10000),
        )
        return FallbackEmbedding(primary)

    raise ConfigError(f"不支持的向量化服务: {provider}", details={"provider": provider})


class MemoryService:
    """
    记忆服务层

    Args:
        settings: 引擎配置
        embedding: 向量化服务，默认使用哈希向量化；非哈希实现会自动包一层降级
        summarizer: 摘要服务，None 表示只用抽取式摘要
        clock: 时钟函数
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        embedding: Optional[EmbeddingService] = None,
        summarizer: Optional[SummarizerPort] = None,
        clock: Clock = system_clock
    ):
        self.settings = settings or EngineSettings()
        self._clock = clock

        if embedding is None:
            embedding = HashingEmbedding(self.settings.vector_store.dimension)
        elif not isinstance(embedding, (HashingEmbedding, FallbackEmbedding)):
            embedding = FallbackEmbedding(embedding)
        self.embedding = embedding

        if embedding.dimension != self.settings.vector_store.dimension:
            logger.warning(
                "向量化服务维度与配置不一致，使用向量化服务的维度",
                configured=self.settings.vector_store.dimension,
                actual=embedding.dimension
            )

        s = self.settings
        self.store = MemoryVectorStore(
            settings=s.vector_store,
            persist_dir=s.persist_dir,
            clock=clock,
            dimension=embedding.dimension,
        )
        self.cleanup = CleanupManager(self.store, s.cleanup, clock)
        self.scorer = ImportanceScorer(s.scorer, clock)
        self.deduplicator = Deduplicator(self.store, embedding, s.dedup, clock)
        self.audit_log = AuditLog(s.audit.path, enabled=s.audit.enabled, clock=clock)
        self.deletion_processor = DeletionRequestProcessor(self.store, self.scorer, self.audit_log, clock)
        self.forgetting = ForgettingEngine(
            self.store,
            self.scorer,
            self.deletion_processor,
            settings=s.forgetting,
            policies=PolicyResolver(policies_from_config(s.forgetting.policies)),
            clock=clock,
        )
        self.compressor = MemoryCompressor(summarizer)
        self.consolidation = ConsolidationScheduler(
            self.store,
            self.scorer,
            self.compressor,
            embedding,
            self.cleanup,
            settings=s.consolidation,
            clock=clock,
            forgetting=self.forgetting,
            deduplicator=self.deduplicator,
        )

        self._initialized = False
        self._started = False

        self.events: Dict[str, EventChannel] = self._collect_events()
        logger.info("记忆服务初始化完成", dimension=embedding.dimension, persist_dir=s.persist_dir)

    @classmethod
    def from_config(
        cls,
        config: Config,
        embedding: Optional[EmbeddingService] = None,
        summarizer: Optional[SummarizerPort] = None,
        clock: Clock = system_clock
    ) -> "MemoryService":
        """
        从配置管理器构建服务

        Args:
            config: 配置管理器
            embedding: 向量化服务，None 时按 embedding 配置构建
            summarizer: 摘要服务
            clock: 时钟函数
        """
        settings = EngineSettings.from_config(config)
        return cls(settings, embedding or build_embedding(config), summarizer, clock)

    def _collect_events(self) -> Dict[str, EventChannel]:
        components = [
            self.scorer,
            self.deduplicator,
            self.forgetting,
            self.deletion_processor,
            self.consolidation,
        ]
        events: Dict[str, EventChannel] = {}
        for component in components:
            for value in vars(component).values():
                if isinstance(value, EventChannel):
                    events[value.name] = value
        return events

    # ==================== 生命周期 ====================

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def started(self) -> bool:
        return self._started

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("MemoryService")

    async def initialize(self) -> None:
        """初始化存储（加载持久化数据），重复调用无副作用"""
        if self._initialized:
            return
        await self.store.initialize()
        self._initialized = True
        logger.info("记忆服务已就绪", records=self.store.size)

    def start(self) -> None:
        """
        启动后台调度

        Raises:
            NotInitializedError: 尚未初始化
            AlreadyRunningError: 已经启动
        """
        self._require_initialized()
        if self._started:
            raise AlreadyRunningError("MemoryService")
        self.consolidation.start()
        self._started = True

    async def stop(self) -> None:
        """停止后台调度，等待正在执行的任务；有持久化目录时保存数据"""
        await self.consolidation.stop()
        self._started = False
        if self._initialized and self.store.persist_dir:
            await self.store.save()
        logger.info("记忆服务已停止")

    def record_activity(self) -> None:
        """记录一次用户活动（用于空闲触发）"""
        self.consolidation.record_activity()

    # ==================== 记忆读写 ====================

    async def remember(
        self,
        content: str,
        type: Union[SourceType, str] = SourceType.CONVERSATION,
        importance: Optional[float] = None,
        tags: Optional[List[str]] = None,
        topics: Optional[List[str]] = None,
        session_id: Optional[str] = None
    ) -> MemoryRecord:
        """
        写入一条记忆

        未指定重要性时按内容评分；写入后达到容量阈值会触发容量清理。

        Args:
            content: 内容
            type: 来源类型
            importance: 重要性（0-1）
            tags: 标签
            topics: 主题
            session_id: 会话ID

        Returns:
            MemoryRecord: 新记录

        Raises:
            ValidationError: 内容为空或参数不合法
        """
        self._require_initialized()
        if not content or not content.strip():
            raise ValidationError("记忆内容不能为空")

        scored = self.scorer.score_text(content)
        matched = self.scorer.match_category(content)
        try:
            metadata = RecordMetadata(
                source_type=SourceType(type),
                importance=scored.raw_score if importance is None else importance,
                tags=list(tags or []),
                topics=list(topics or []),
                session_id=session_id,
                category=matched.value if matched is not None else None,
            )
        except (PydanticValidationError, ValueError) as e:
            raise ValidationError(f"记忆参数不合法: {e}", details={"content": truncate_text(content, 50)})

        vector = await self.embedding.embed_text(content)
        record = await self.store.add(content, vector, metadata)
        self.record_activity()
        logger.debug(
            "记忆已写入",
            memory_id=record.id,
            category=scored.category.value,
            importance=f"{record.importance:.2f}"
        )

        if self.store.needs_cleanup():
            await self.cleanup.run_cleanup(reason="capacity")
        return record

    async def recall(self, query: str, limit: int = 5, **filters: Any) -> List[SearchResult]:
        """
        检索相关记忆

        命中的记录会记录一次访问并得到强化。

        Args:
            query: 查询文本
            limit: 返回条数
            **filters: 过滤条件（source_type、min_importance、topics、tags、session_id、
                include_summaries、exclude_ids、min_score）

        Returns:
            List[SearchResult]: 按相似度倒序的结果

        Raises:
            ValidationError: 过滤条件不支持或不合法
        """
        self._require_initialized()
        unknown = set(filters) - RECALL_FILTERS
        if unknown:
            raise ValidationError(f"不支持的过滤条件: {sorted(unknown)}", details={"filters": sorted(unknown)})
        try:
            options = SearchOptions(limit=limit, **filters)
        except PydanticValidationError as e:
            raise ValidationError(f"检索参数不合法: {e}")

        vector = await self.embedding.embed_text(query)
        results = await self.store.search(vector, options)
        for result in results:
            await self.forgetting.record_access(result.record.id)
        self.record_activity()
        return results

    async def get(self, record_id: str) -> Optional[MemoryRecord]:
        self._require_initialized()
        return await self.store.get(record_id)

    async def forget(self, target: Union[str, List[str], ForgetOptions], force: bool = False) -> ForgetResult:
        """
        遗忘记忆

        Args:
            target: 记录ID、ID列表或完整的遗忘选项
            force: 是否忽略保护（target 为 ForgetOptions 时以其 force 为准）

        Returns:
            ForgetResult: 遗忘结果
        """
        self._require_initialized()
        if isinstance(target, ForgetOptions):
            options = target
        elif isinstance(target, str):
            options = ForgetOptions(memory_ids=[target], force=force)
        else:
            options = ForgetOptions(memory_ids=list(target), force=force)
        self.record_activity()
        return await self.forgetting.forget(options)

    async def submit_deletion_request(
        self,
        scope: Union[DeletionScope, str],
        memory_ids: Optional[List[str]] = None,
        date_range: Optional[DateRange] = None,
        categories: Optional[List[str]] = None,
        include_vector_store: bool = True
    ) -> DeletionRequest:
        """
        提交合规删除请求（处理完成后返回）

        Raises:
            ValidationError: 请求参数不完整
        """
        self._require_initialized()
        try:
            scope = DeletionScope(scope)
        except ValueError:
            raise ValidationError(f"不支持的删除范围: {scope}", details={"scope": str(scope)})
        return await self.forgetting.submit_deletion_request(
            scope,
            memory_ids=memory_ids,
            date_range=date_range,
            categories=categories,
            include_vector_store=include_vector_store,
        )

    def get_deletion_request(self, request_id: str) -> Optional[DeletionRequest]:
        return self.deletion_processor.get_request(request_id)

    def list_deletion_requests(self) -> List[DeletionRequest]:
        return self.deletion_processor.list_requests()

    async def export_audit_log(self) -> str:
        return await self.deletion_processor.export_audit_log()

    def add_retention_policy(self, policy: RetentionPolicy) -> None:
        self.forgetting.add_retention_policy(policy)

    # ==================== 维护任务 ====================

    async def run_consolidation(self, reason: str = "manual") -> ConsolidationResult:
        self._require_initialized()
        return await self.consolidation.run_consolidation(reason)

    async def run_deduplication(self, reason: str = "manual") -> DeduplicationResult:
        self._require_initialized()
        return await self.deduplicator.run_deduplication(reason)

    async def run_cleanup(self, force: bool = False) -> CleanupResult:
        self._require_initialized()
        return await self.cleanup.run_cleanup(reason="manual", force=force)

    async def run_decay(self, reason: str = "manual") -> ForgettingBatchResult:
        self._require_initialized()
        return await self.forgetting.process_decay(reason)

    async def check_for_duplicate(self, content: str) -> Optional[DuplicatePair]:
        self._require_initialized()
        return await self.deduplicator.check_for_duplicate(content)

    # ==================== 统计 ====================

    async def get_stats(self) -> Dict[str, Any]:
        """
        获取引擎统计信息

        Returns:
            Dict[str, Any]: 存储、评分、遗忘、去重、整合和向量化的统计
        """
        self._require_initialized()
        store_stats = await self.store.get_stats()
        return {
            "store": store_stats.model_dump(),
            "scorer": self.scorer.stats(),
            "forgetting": self.forgetting.get_stats(),
            "deduplication": self.deduplicator.get_stats(),
            "consolidation": self.consolidation.get_status(),
            "cleanup": {
                "running": self.cleanup.running,
                "last_result": self.cleanup.last_result.model_dump() if self.cleanup.last_result else None,
            },
            "embedding": {
                "dimension": self.embedding.dimension,
                "fallback_count": getattr(self.embedding, "fallback_count", 0),
                "summary_fallback_count": self.compressor.fallback_count,
            },
            "started": self._started,
        }
