"""
合规删除请求

处理用户发起的数据删除请求（按ID、全部、时间范围、类别），
每次状态变化写入审计日志，完成时生成删除凭证哈希。
"""

import hashlib
import json
import secrets
from typing import Dict, Iterable, List, Optional

from retention_engine.core.events import EventChannel
from retention_engine.core.vectordb.memory_vector_store import MemoryVectorStore
from retention_engine.utils.exceptions import PersistenceFailureError, ValidationError
from retention_engine.utils.helpers import Clock, system_clock
from retention_engine.utils.logger import get_logger

from .audit_log import AuditLog
from .importance_scorer import ImportanceScorer
from .schemas import DateRange, DeletionRequest, DeletionScope, DeletionStatus

logger = get_logger(__name__)


def certificate_hash(request_id: str, deleted_ids: Iterable[str], timestamp: float, scope: str) -> str:
    """
    生成删除凭证哈希

    对 {request_id, deleted_ids(排序), timestamp, type} 的规范化 JSON 做 SHA-256，
    相同输入总是得到相同结果。
    """
    payload = json.dumps(
        {
            "request_id": request_id,
            "deleted_ids": sorted(deleted_ids),
            "timestamp": timestamp,
            "type": scope,
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class DeletionRequestProcessor:
    """
    合规删除请求处理器

    状态转换：pending → processing → completed | failed，完成或失败后不再变化。

    Args:
        store: 向量存储
        scorer: 重要性评分器（按类别删除时识别类别）
        audit_log: 审计日志
        clock: 时钟函数
    """

    # 定义有效的状态转换
    VALID_TRANSITIONS = {
        DeletionStatus.PENDING: [DeletionStatus.PROCESSING, DeletionStatus.FAILED],
        DeletionStatus.PROCESSING: [DeletionStatus.COMPLETED, DeletionStatus.FAILED],
        DeletionStatus.COMPLETED: [],
        DeletionStatus.FAILED: [],
    }

    def __init__(
        self,
        store: MemoryVectorStore,
        scorer: ImportanceScorer,
        audit_log: AuditLog,
        clock: Clock = system_clock
    ):
        self.store = store
        self.scorer = scorer
        self.audit_log = audit_log
        self._clock = clock
        self._requests: Dict[str, DeletionRequest] = {}

        self.deletion_requested: EventChannel[DeletionRequest] = EventChannel("deletion_requested")
        self.deletion_completed: EventChannel[DeletionRequest] = EventChannel("deletion_completed")

    def can_transition(self, current: DeletionStatus, target: DeletionStatus) -> bool:
        return target in self.VALID_TRANSITIONS.get(current, [])

    def _transition(self, request: DeletionRequest, target: DeletionStatus, **changes) -> DeletionRequest:
        if not self.can_transition(request.status, target):
            raise ValidationError(
                f"无效的状态转换: {request.status.value} -> {target.value}",
                details={"request_id": request.request_id}
            )
        updated = request.model_copy(update={"status": target, **changes})
        self._requests[request.request_id] = updated
        logger.debug(
            f"删除请求状态转换: {request.status.value} -> {target.value}",
            request_id=request.request_id
        )
        return updated

    def _new_request_id(self) -> str:
        return f"gdpr-{int(self._clock() * 1000)}-{secrets.token_hex(5)}"

    @staticmethod
    def _validate(
        scope: DeletionScope,
        date_range: Optional[DateRange],
        categories: List[str]
    ) -> None:
        if scope == DeletionScope.DATE_RANGE and date_range is None:
            raise ValidationError("date_range 范围的删除请求需要提供 date_range")
        if scope == DeletionScope.CATEGORY and not categories:
            raise ValidationError("category 范围的删除请求需要提供 categories")

    async def submit(
        self,
        scope: DeletionScope,
        memory_ids: Optional[List[str]] = None,
        date_range: Optional[DateRange] = None,
        categories: Optional[List[str]] = None,
        include_vector_store: bool = True
    ) -> DeletionRequest:
        """
        提交并立即处理删除请求

        Args:
            scope: 删除范围
            memory_ids: 记录ID（specific）
            date_range: 时间范围（date_range）
            categories: 类别（category）
            include_vector_store: 是否包含向量存储数据

        Returns:
            DeletionRequest: 处理完成（或失败）后的请求

        Raises:
            ValidationError: 请求参数不完整
        """
        scope = DeletionScope(scope)
        memory_ids = list(memory_ids or [])
        categories = [c.value if hasattr(c, "value") else str(c) for c in (categories or [])]
        self._validate(scope, date_range, categories)

        request = DeletionRequest(
            request_id=self._new_request_id(),
            requested_at=self._clock(),
            scope=scope,
            memory_ids=memory_ids,
            date_range=date_range,
            categories=categories,
            include_vector_store=include_vector_store,
        )
        self._requests[request.request_id] = request
        try:
            await self.audit_log.record("request_submitted", request)
        except (PersistenceFailureError, OSError) as e:
            # 无法留下审计记录时不执行删除
            logger.error("删除请求审计写入失败，拒绝处理", request_id=request.request_id, error=str(e))
            failed = self._transition(request, DeletionStatus.FAILED, error=str(e), completed_at=self._clock())
            self.deletion_completed.publish(failed.model_copy())
            return failed.model_copy()
        self.deletion_requested.publish(request.model_copy())
        logger.info("删除请求已提交", request_id=request.request_id, type=scope.value)

        return await self._process(request.request_id)

    def _select_ids(self, request: DeletionRequest) -> List[str]:
        if request.scope == DeletionScope.SPECIFIC:
            return list(dict.fromkeys(request.memory_ids))
        if request.scope == DeletionScope.DATE_RANGE:
            return [
                record.id for record in self.store.list_records()
                if request.date_range.contains(record.created_at)
            ]
        if request.scope == DeletionScope.CATEGORY:
            wanted = set(request.categories)
            return [
                record.id for record in self.store.list_records()
                if (record.metadata.category or self.scorer.detect_category(record.content)[0].value) in wanted
            ]
        return self.store.all_ids()

    async def _process(self, request_id: str) -> DeletionRequest:
        request = self._transition(self._requests[request_id], DeletionStatus.PROCESSING)

        try:
            await self.audit_log.record("processing_started", request)
            deleted_ids: List[str] = []
            not_found_ids: List[str] = []
            target_ids = self._select_ids(request)

            if request.scope == DeletionScope.ALL:
                await self.store.clear()
                deleted_ids = target_ids
            else:
                for result in await self.store.delete_batch(target_ids):
                    if result.deleted:
                        deleted_ids.append(result.id)
                    else:
                        not_found_ids.append(result.id)

            completed_at = self._clock()
            request = self._transition(
                request,
                DeletionStatus.COMPLETED,
                deleted_ids=deleted_ids,
                not_found_ids=not_found_ids,
                deleted_count=len(deleted_ids),
                completed_at=completed_at,
                certificate_hash=certificate_hash(
                    request.request_id, deleted_ids, completed_at, request.scope.value
                ),
            )
            logger.info(
                "删除请求已完成",
                request_id=request.request_id,
                deleted_count=request.deleted_count,
                certificate_hash=request.certificate_hash
            )
        except Exception as e:
            logger.error("删除请求处理失败", exc_info=True, request_id=request.request_id, error=str(e))
            request = self._transition(
                request,
                DeletionStatus.FAILED,
                error=str(e),
                completed_at=self._clock(),
            )

        # 终态已确定，审计写入失败只记录，不改变状态
        try:
            await self.audit_log.record(request.status.value, request)
        except (PersistenceFailureError, OSError) as e:
            logger.error(
                "删除请求终态审计写入失败",
                request_id=request.request_id,
                status=request.status.value,
                error=str(e)
            )

        self.deletion_completed.publish(request.model_copy())
        return request.model_copy()

    def get_request(self, request_id: str) -> Optional[DeletionRequest]:
        request = self._requests.get(request_id)
        return request.model_copy() if request else None

    def list_requests(self) -> List[DeletionRequest]:
        return [request.model_copy() for request in self._requests.values()]

    async def export_audit_log(self) -> str:
        return await self.audit_log.export()
