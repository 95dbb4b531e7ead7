"""
遗忘机制单元测试

测试衰减曲线、访问强化、策略匹配、衰减处理和手动遗忘
"""

import math

import pytest

from retention_engine.core.memory.audit_log import AuditLog
from retention_engine.core.memory.deletion_requests import DeletionRequestProcessor
from retention_engine.core.memory.forgetting_mechanism import ForgettingEngine
from retention_engine.core.memory.importance_scorer import ImportanceScorer
from retention_engine.core.memory.schemas import (
    DateRange,
    DecayAction,
    DecayCurve,
    DeletionScope,
    ForgetOptions,
    ForgetStatus,
    RetentionLevel,
    RetentionPolicy,
)
from retention_engine.utils.exceptions import ValidationError

from tests.conftest import START_TIME, make_metadata, unit_vector


def custom_policy(curve: DecayCurve, base: float = 0.0, maximum: float = 100.0, **kwargs) -> RetentionPolicy:
    return RetentionPolicy(
        name=f"custom_{curve.value}",
        level=RetentionLevel.MEDIUM_TERM,
        base_retention_hours=base,
        max_retention_hours=maximum,
        decay_curve=curve,
        **kwargs,
    )


@pytest.fixture
def scorer(clock):
    return ImportanceScorer(clock=clock)


@pytest.fixture
def processor(store, scorer, clock, tmp_path):
    audit = AuditLog(str(tmp_path / "audit.log"), clock=clock)
    return DeletionRequestProcessor(store, scorer, audit, clock=clock)


@pytest.fixture
def engine(store, scorer, processor, clock):
    return ForgettingEngine(store, scorer, processor, clock=clock)


class TestDecayCurves:
    """测试衰减曲线"""

    def test_stepped(self, engine):
        """测试阶梯衰减各阶段系数"""
        policy = custom_policy(DecayCurve.STEPPED)
        expected = {10: 0.8, 30: 0.6, 60: 0.4, 80: 0.2, 150: 0.08}
        for age, value in expected.items():
            assert engine.decay(0.8, age, policy) == pytest.approx(value)

    def test_linear(self, engine):
        """测试线性衰减在区间中点减半，超出后落到下限"""
        policy = custom_policy(DecayCurve.LINEAR)
        assert engine.decay(0.8, 50, policy) == pytest.approx(0.4)
        assert engine.decay(0.8, 200, policy) == pytest.approx(0.025)

    def test_logarithmic(self, engine):
        """测试对数衰减在一个半衰期时减半"""
        policy = custom_policy(DecayCurve.LOGARITHMIC, maximum=1000, half_life_hours=168)
        assert engine.decay(0.8, 168, policy) == pytest.approx(0.4)

    def test_exponential(self, engine):
        """测试指数衰减从基础保留期之后开始计算"""
        policy = custom_policy(DecayCurve.EXPONENTIAL, base=24, maximum=1000, half_life_hours=72)
        assert engine.decay(0.8, 96, policy) == pytest.approx(0.4)

    def test_unchanged_before_base_retention(self, engine):
        """测试基础保留期内不衰减"""
        policy = custom_policy(DecayCurve.EXPONENTIAL, base=10)
        assert engine.decay(0.8, 5, policy) == 0.8

    @pytest.mark.parametrize("curve", list(DecayCurve))
    def test_monotonic(self, engine, curve):
        """测试所有曲线随年龄单调不增且不低于下限"""
        policy = custom_policy(curve, base=5, maximum=500, half_life_hours=48)
        values = [engine.decay(0.9, age, policy) for age in range(0, 1000, 10)]
        assert all(b <= a + 1e-12 for a, b in zip(values, values[1:]))
        assert min(values) >= 0.025


class TestAccessBoost:
    """测试访问强化"""

    def test_single_access(self, engine):
        """测试一次访问的强化量"""
        assert engine.access_boost(1, 0) == pytest.approx(0.1)

    def test_capped(self, engine):
        """测试强化量不超过上限"""
        assert engine.access_boost(10_000, 0) == pytest.approx(0.5)

    def test_recency_discount(self, engine):
        """测试超过 24 小时的访问按对数打折"""
        assert engine.access_boost(1, 48) == pytest.approx(0.1 / math.log2(3))

    @pytest.mark.asyncio
    async def test_record_access_reinforces(self, engine, store):
        """测试访问后重要性提升并发布强化事件"""
        events = []
        engine.memory_reinforced.subscribe(events.append)
        record = await store.add("I need to finish the report", unit_vector(0), make_metadata(importance=0.5))

        event = await engine.record_access(record.id)

        assert event.new_importance == pytest.approx(0.6)
        assert (await store.get(record.id)).importance == pytest.approx(0.6)
        assert engine.access_history(record.id)[0] == 1
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_record_access_missing(self, engine):
        """测试访问不存在的记录返回None"""
        assert await engine.record_access("missing") is None
        assert engine.access_history("missing") is None


class TestPolicyResolution:
    """测试策略匹配"""

    @pytest.mark.asyncio
    async def test_category_from_content(self, engine, store):
        """测试按内容识别的类别匹配策略"""
        record = await store.add("My name is Alice", unit_vector(0))
        policy, category = engine.resolve_policy(record)
        assert policy.name == "permanent_facts"
        assert category == "user_fact"

    @pytest.mark.asyncio
    async def test_stored_category_wins(self, engine, store):
        """测试元数据中记录的类别优先"""
        record = await store.add("My name is Alice", unit_vector(0), make_metadata(category="question"))
        policy, _ = engine.resolve_policy(record)
        assert policy.name == "short_term_questions"

    @pytest.mark.asyncio
    async def test_unmatched_content_uses_source_type(self, engine, store):
        """测试内容没有命中类别规则时按来源类型匹配"""
        record = await store.add("zzz qqq", unit_vector(0))
        policy, category = engine.resolve_policy(record)
        assert policy.name == "default"
        assert category == ""

    @pytest.mark.asyncio
    async def test_custom_tag_policy(self, engine, store):
        """测试自定义触发标签策略"""
        engine.add_retention_policy(RetentionPolicy(
            name="project_notes",
            trigger_tags=["project"],
            level=RetentionLevel.LONG_TERM,
            base_retention_hours=1000,
            max_retention_hours=5000,
            protection_threshold=0.9,
        ))
        tagged = await store.add("zzz qqq", unit_vector(0), make_metadata(tags=["project"]))
        casual = await store.add("hello there", unit_vector(1), make_metadata(tags=["project"]))

        assert engine.resolve_policy(tagged)[0].name == "project_notes"
        assert engine.resolve_policy(casual)[0].name == "ephemeral_casual"
        assert engine.policies.default_policy.name == "default"

    def test_duplicate_policy_name(self, engine):
        """测试策略名称重复时报错"""
        with pytest.raises(ValidationError):
            engine.add_retention_policy(custom_policy(DecayCurve.LINEAR).model_copy(update={"name": "default"}))


class TestProcessDecay:
    """测试衰减处理"""

    @pytest.mark.asyncio
    async def test_permanent_fact_protected(self, engine, store, clock):
        """测试永久策略的记录不衰减"""
        record = await store.add("My name is Alice", unit_vector(0), make_metadata(importance=0.9))
        clock.advance(hours=1000)

        decision = engine.evaluate(await store.get(record.id))

        assert decision.action == DecayAction.PROTECTED
        assert decision.decayed_score == pytest.approx(0.9)
        assert decision.policy == "permanent_facts"

        batch = await engine.process_decay()
        assert batch.protected == 1
        assert (await store.get(record.id)).importance == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_casual_flagged_and_deleted(self, engine, store, clock):
        """测试低价值且超过最长保留期的闲聊被删除"""
        forgotten = []
        engine.memory_forgotten.subscribe(forgotten.append)
        record = await store.add("nice weather today", unit_vector(0), make_metadata(importance=0.3))
        clock.advance(hours=200)

        decision = engine.evaluate(await store.get(record.id))
        assert decision.action == DecayAction.FLAGGED_FOR_DELETION
        assert decision.decayed_score == pytest.approx(max(0.025, 0.3 * 0.5 ** (199 / 24)))

        batch = await engine.process_decay()

        assert batch.deleted == 1
        assert not store.contains(record.id)
        assert [event.record_id for event in forgotten] == [record.id]

    @pytest.mark.asyncio
    async def test_decay_does_not_compound(self, engine, store, clock):
        """测试重复执行衰减不会叠加"""
        record = await store.add("I need to finish the report", unit_vector(0), make_metadata(importance=0.45))
        clock.advance(hours=336)

        first = await engine.process_decay()
        assert first.decayed == 1
        assert (await store.get(record.id)).importance == pytest.approx(0.225)

        second = await engine.process_decay()
        assert second.kept == 1
        assert second.decayed == 0
        assert (await store.get(record.id)).importance == pytest.approx(0.225)

    @pytest.mark.asyncio
    async def test_low_score_flagged_for_consolidation(self, engine, store, clock):
        """测试低分记录标记为待整合且不删除"""
        record = await store.add("What is the capital of France?", unit_vector(0), make_metadata(importance=0.25))
        clock.advance(hours=96)

        batch = await engine.process_decay()

        assert batch.consolidated == 1
        assert batch.results[0].action == DecayAction.FLAGGED_FOR_CONSOLIDATION
        assert batch.results[0].decayed_score == pytest.approx(0.125)
        assert store.contains(record.id)

    @pytest.mark.asyncio
    async def test_recent_record_kept(self, engine, store):
        """测试基础保留期内的记录保持不变"""
        await store.add("I need to finish the report", unit_vector(0), make_metadata(importance=0.45))

        batch = await engine.process_decay("manual")

        assert batch.kept == 1
        assert batch.reason == "manual"
        assert batch.processed == 1

    @pytest.mark.asyncio
    async def test_overlapping_run_skipped(self, engine):
        """测试已有衰减处理在运行时直接返回"""
        async with engine._guard:
            batch = await engine.process_decay()
        assert batch.skipped

    @pytest.mark.asyncio
    async def test_events(self, engine, store):
        """测试开始和完成事件"""
        started, completed = [], []
        engine.decay_started.subscribe(started.append)
        engine.decay_completed.subscribe(completed.append)
        await store.add("hello", unit_vector(0))

        await engine.process_decay("interval")

        assert started[0].record_count == 1
        assert completed[0].reason == "interval"


class TestForget:
    """测试手动遗忘"""

    @pytest.mark.asyncio
    async def test_forget_by_id(self, engine, store):
        """测试按ID删除"""
        record = await store.add("hello there", unit_vector(0), make_metadata(importance=0.1))

        result = await engine.forget(ForgetOptions(memory_ids=[record.id, "missing"]))

        assert result.processed == 2
        assert result.deleted == 1
        assert result.not_found == 1
        assert [o.status for o in result.outcomes] == [ForgetStatus.DELETED, ForgetStatus.NOT_FOUND]
        assert not store.contains(record.id)

    @pytest.mark.asyncio
    async def test_protected_requires_force(self, engine, store):
        """测试受保护记录需要 force"""
        protected = []
        engine.memory_protected.subscribe(protected.append)
        record = await store.add("My name is Alice", unit_vector(0), make_metadata(importance=0.9))

        result = await engine.forget(ForgetOptions(memory_ids=[record.id]))
        assert result.protected == 1
        assert store.contains(record.id)
        assert protected[0].record_id == record.id

        forced = await engine.forget(ForgetOptions(memory_ids=[record.id], force=True))
        assert forced.deleted == 1
        assert not store.contains(record.id)

    @pytest.mark.asyncio
    async def test_content_pattern_and_tags(self, engine, store):
        """测试按内容正则和标签删除（取并集、去重）"""
        a = await store.add("hello WEATHER", unit_vector(0), make_metadata(importance=0.1))
        b = await store.add("hello there", unit_vector(1), make_metadata(importance=0.1, tags=["scratch"]))
        c = await store.add("hello weather again", unit_vector(2), make_metadata(importance=0.1, tags=["scratch"]))

        result = await engine.forget(ForgetOptions(content_pattern="weather", tags=["scratch"]))

        assert result.processed == 3
        assert result.deleted == 3
        assert not any(store.contains(r.id) for r in (a, b, c))

    @pytest.mark.asyncio
    async def test_date_range(self, engine, store, clock):
        """测试按时间范围删除"""
        old = await store.add("hello there", unit_vector(0), make_metadata(importance=0.1))
        clock.advance(hours=10)
        new = await store.add("hello again", unit_vector(1), make_metadata(importance=0.1))

        result = await engine.forget(ForgetOptions(date_range=DateRange(start=START_TIME, end=START_TIME + 3600)))

        assert result.deleted == 1
        assert not store.contains(old.id)
        assert store.contains(new.id)

    @pytest.mark.asyncio
    async def test_invalid_pattern(self, engine):
        """测试非法正则报错"""
        with pytest.raises(ValidationError):
            await engine.forget(ForgetOptions(content_pattern="(unclosed"))

    @pytest.mark.asyncio
    async def test_deletion_request_drops_state(self, engine, store):
        """测试合规删除完成后清理访问历史"""
        record = await store.add("hello there", unit_vector(0))
        await engine.record_access(record.id)

        request = await engine.submit_deletion_request(DeletionScope.SPECIFIC, memory_ids=[record.id])

        assert request.deleted_ids == [record.id]
        assert engine.access_history(record.id) is None

    def test_update_settings_validates(self, engine):
        """测试配置更新整体校验"""
        assert engine.update_settings(deletion_threshold=0.1).deletion_threshold == 0.1
        with pytest.raises(ValidationError):
            engine.update_settings(stepped_multipliers=[1.0])
