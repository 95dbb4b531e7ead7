"""
合规删除请求单元测试

测试删除范围、状态转换、删除凭证哈希和审计日志
"""

import json
from unittest.mock import AsyncMock

import pytest

from retention_engine.core.memory.audit_log import AuditLog
from retention_engine.core.memory.deletion_requests import DeletionRequestProcessor, certificate_hash
from retention_engine.core.memory.importance_scorer import ImportanceScorer
from retention_engine.core.memory.schemas import DateRange, DeletionScope, DeletionStatus
from retention_engine.utils.exceptions import PersistenceFailureError, ValidationError

from tests.conftest import START_TIME, make_metadata, unit_vector


class FlakyAuditLog(AuditLog):
    """指定动作写入失败的审计日志"""

    def __init__(self, path, fail_on, **kwargs):
        super().__init__(path, **kwargs)
        self.fail_on = fail_on

    async def record(self, action, request):
        if action == self.fail_on:
            raise PersistenceFailureError("audit disk full", path=self.path)
        return await super().record(action, request)


@pytest.fixture
def audit_log(tmp_path, clock):
    return AuditLog(str(tmp_path / "logs" / "gdpr-audit.log"), clock=clock)


@pytest.fixture
def processor(store, audit_log, clock):
    return DeletionRequestProcessor(store, ImportanceScorer(clock=clock), audit_log, clock=clock)


class TestCertificateHash:
    """测试删除凭证哈希"""

    def test_deterministic(self):
        """测试相同输入得到相同哈希，ID顺序不影响结果"""
        first = certificate_hash("gdpr-1", ["b", "a"], START_TIME, "specific")
        second = certificate_hash("gdpr-1", ["a", "b"], START_TIME, "specific")
        assert first == second
        assert len(first) == 64

    def test_inputs_change_hash(self):
        """测试任一输入变化时哈希变化"""
        base = certificate_hash("gdpr-1", ["a"], START_TIME, "specific")
        assert certificate_hash("gdpr-2", ["a"], START_TIME, "specific") != base
        assert certificate_hash("gdpr-1", ["a"], START_TIME + 1, "specific") != base
        assert certificate_hash("gdpr-1", ["a"], START_TIME, "all") != base


class TestSubmit:
    """测试删除请求提交与处理"""

    @pytest.mark.asyncio
    async def test_specific_request(self, processor, store, audit_log):
        """测试按ID删除三条记录：状态依次变化，审计日志三行"""
        ids = [(await store.add(f"note {i}", unit_vector(i))).id for i in range(3)]

        request = await processor.submit(DeletionScope.SPECIFIC, memory_ids=ids)

        assert request.status == DeletionStatus.COMPLETED
        assert request.deleted_count == 3
        assert sorted(request.deleted_ids) == sorted(ids)
        assert request.certificate_hash == certificate_hash(
            request.request_id, ids, request.completed_at, "specific"
        )
        assert store.size == 0

        entries = await audit_log.entries()
        assert [e.action for e in entries] == ["request_submitted", "processing_started", "completed"]
        assert [e.status for e in entries] == ["pending", "processing", "completed"]
        assert entries[0].deleted_count is None
        assert entries[-1].deleted_count == 3
        assert entries[-1].certificate_hash == request.certificate_hash

    @pytest.mark.asyncio
    async def test_missing_ids_reported(self, processor, store):
        """测试不存在的ID记入 not_found_ids，不计入删除数"""
        record = await store.add("note", unit_vector(0))

        request = await processor.submit(DeletionScope.SPECIFIC, memory_ids=[record.id, "missing", record.id])

        assert request.deleted_count == 1
        assert request.not_found_ids == ["missing"]

    @pytest.mark.asyncio
    async def test_scope_all(self, processor, store):
        """测试删除全部记录"""
        for i in range(4):
            await store.add(f"note {i}", unit_vector(i))

        request = await processor.submit("all")

        assert request.scope == DeletionScope.ALL
        assert request.deleted_count == 4
        assert store.size == 0

    @pytest.mark.asyncio
    async def test_scope_date_range(self, processor, store, clock):
        """测试按创建时间范围删除"""
        old = await store.add("old note", unit_vector(0))
        clock.advance(hours=48)
        new = await store.add("new note", unit_vector(1))

        request = await processor.submit(
            DeletionScope.DATE_RANGE,
            date_range=DateRange(start=START_TIME - 10, end=START_TIME + 10),
        )

        assert request.deleted_ids == [old.id]
        assert store.contains(new.id)

    @pytest.mark.asyncio
    async def test_scope_category(self, processor, store):
        """测试按类别删除：优先使用元数据中的类别，否则按内容识别"""
        fact = await store.add("My name is Alice", unit_vector(0))
        question = await store.add("What time is it?", unit_vector(1))
        tagged = await store.add("My name is Bob", unit_vector(2), make_metadata(category="question"))

        request = await processor.submit(DeletionScope.CATEGORY, categories=["question"])

        assert sorted(request.deleted_ids) == sorted([question.id, tagged.id])
        assert store.contains(fact.id)

    @pytest.mark.asyncio
    async def test_validation(self, processor):
        """测试缺少范围参数时报错"""
        with pytest.raises(ValidationError):
            await processor.submit(DeletionScope.DATE_RANGE)
        with pytest.raises(ValidationError):
            await processor.submit(DeletionScope.CATEGORY, categories=[])
        with pytest.raises(ValueError):
            await processor.submit("everything")

    @pytest.mark.asyncio
    async def test_failure_marks_request_failed(self, processor, store, audit_log):
        """测试存储删除失败时请求进入 failed 状态"""
        record = await store.add("note", unit_vector(0))
        store.delete_batch = AsyncMock(side_effect=RuntimeError("disk unavailable"))

        request = await processor.submit(DeletionScope.SPECIFIC, memory_ids=[record.id])

        assert request.status == DeletionStatus.FAILED
        assert request.error == "disk unavailable"
        assert request.certificate_hash is None
        entries = await audit_log.entries()
        assert entries[-1].action == "failed"

    @pytest.mark.asyncio
    async def test_completed_audit_failure_keeps_result(self, store, tmp_path, clock):
        """测试完成状态的审计写入失败时，请求保持 completed 并返回结果"""
        audit = FlakyAuditLog(str(tmp_path / "audit.log"), fail_on="completed", clock=clock)
        processor = DeletionRequestProcessor(store, ImportanceScorer(clock=clock), audit, clock=clock)
        ids = [(await store.add(f"note {i}", unit_vector(i))).id for i in range(3)]

        request = await processor.submit(DeletionScope.SPECIFIC, memory_ids=ids)

        assert request.status == DeletionStatus.COMPLETED
        assert request.deleted_count == 3
        assert request.certificate_hash is not None
        assert store.size == 0
        assert processor.get_request(request.request_id).status == DeletionStatus.COMPLETED
        assert [e.action for e in await audit.entries()] == ["request_submitted", "processing_started"]

    @pytest.mark.asyncio
    async def test_processing_audit_failure_marks_failed(self, store, tmp_path, clock):
        """测试开始处理的审计写入失败时请求进入 failed，记录不被删除"""
        audit = FlakyAuditLog(str(tmp_path / "audit.log"), fail_on="processing_started", clock=clock)
        processor = DeletionRequestProcessor(store, ImportanceScorer(clock=clock), audit, clock=clock)
        record = await store.add("note", unit_vector(0))

        request = await processor.submit(DeletionScope.SPECIFIC, memory_ids=[record.id])

        assert request.status == DeletionStatus.FAILED
        assert store.contains(record.id)
        assert [e.action for e in await audit.entries()] == ["request_submitted", "failed"]

    @pytest.mark.asyncio
    async def test_submit_audit_failure_rejects_request(self, store, tmp_path, clock):
        """测试提交时审计写入失败则不执行删除"""
        audit = FlakyAuditLog(str(tmp_path / "audit.log"), fail_on="request_submitted", clock=clock)
        processor = DeletionRequestProcessor(store, ImportanceScorer(clock=clock), audit, clock=clock)
        record = await store.add("note", unit_vector(0))

        request = await processor.submit(DeletionScope.SPECIFIC, memory_ids=[record.id])

        assert request.status == DeletionStatus.FAILED
        assert store.contains(record.id)

    @pytest.mark.asyncio
    async def test_events_and_lookup(self, processor, store):
        """测试请求事件和查询"""
        requested, completed = [], []
        processor.deletion_requested.subscribe(requested.append)
        processor.deletion_completed.subscribe(completed.append)
        record = await store.add("note", unit_vector(0))

        request = await processor.submit(DeletionScope.SPECIFIC, memory_ids=[record.id])

        assert requested[0].status == DeletionStatus.PENDING
        assert completed[0].status == DeletionStatus.COMPLETED
        assert processor.get_request(request.request_id).deleted_count == 1
        assert processor.get_request("missing") is None
        assert [r.request_id for r in processor.list_requests()] == [request.request_id]
        assert request.request_id.startswith(f"gdpr-{int(START_TIME * 1000)}-")


class TestTransitions:
    """测试状态转换"""

    def test_valid_transitions(self, processor):
        """测试有效与无效的状态转换"""
        assert processor.can_transition(DeletionStatus.PENDING, DeletionStatus.PROCESSING)
        assert processor.can_transition(DeletionStatus.PROCESSING, DeletionStatus.COMPLETED)
        assert processor.can_transition(DeletionStatus.PROCESSING, DeletionStatus.FAILED)
        assert not processor.can_transition(DeletionStatus.PENDING, DeletionStatus.COMPLETED)
        assert not processor.can_transition(DeletionStatus.COMPLETED, DeletionStatus.PROCESSING)
        assert not processor.can_transition(DeletionStatus.FAILED, DeletionStatus.PENDING)

    @pytest.mark.asyncio
    async def test_final_request_cannot_change(self, processor):
        """测试完成的请求不能再转换状态"""
        request = await processor.submit(DeletionScope.SPECIFIC, memory_ids=["missing"])
        with pytest.raises(ValidationError):
            processor._transition(request, DeletionStatus.PROCESSING)


class TestAuditLog:
    """测试审计日志"""

    @pytest.mark.asyncio
    async def test_export_is_ndjson(self, processor, audit_log):
        """测试导出内容每行一个 JSON 对象"""
        await processor.submit(DeletionScope.SPECIFIC, memory_ids=["missing"])

        exported = await processor.export_audit_log()

        lines = exported.strip().splitlines()
        assert len(lines) == 3
        assert json.loads(lines[-1])["type"] == "specific"

    @pytest.mark.asyncio
    async def test_disabled(self, tmp_path, processor):
        """测试关闭审计日志时不写文件"""
        log = AuditLog(str(tmp_path / "off.log"), enabled=False)
        request = await processor.submit(DeletionScope.SPECIFIC, memory_ids=["missing"])

        assert await log.record("completed", request) is None
        assert await log.export() == ""
        assert not (tmp_path / "off.log").exists()

    @pytest.mark.asyncio
    async def test_write_failure(self, tmp_path, processor):
        """测试写入失败时抛出持久化异常"""
        request = await processor.submit(DeletionScope.SPECIFIC, memory_ids=["missing"])
        log = AuditLog(str(tmp_path))

        with pytest.raises(PersistenceFailureError):
            await log.record("completed", request)
