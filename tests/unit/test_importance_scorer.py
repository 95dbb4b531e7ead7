"""
重要性评分器单元测试

测试类别识别、加成、时间衰减、层级划分和 promote/demote
"""

import pytest

from retention_engine.core.memory.importance_scorer import ImportanceScorer
from retention_engine.core.memory.schemas import MemoryCategory, MemoryTier
from retention_engine.schemas.config import ScorerSettings

from tests.conftest import START_TIME, make_record


class TestCategoryDetection:
    """测试类别识别"""

    @pytest.fixture
    def scorer(self, clock):
        return ImportanceScorer(clock=clock)

    @pytest.mark.parametrize("text,expected", [
        ("My name is Alice", MemoryCategory.USER_FACT),
        ("I really like spicy food", MemoryCategory.USER_PREFERENCE),
        ("From now on answer in English", MemoryCategory.INSTRUCTION),
        ("We decided to use Postgres", MemoryCategory.DECISION),
        ("What time is it?", MemoryCategory.QUESTION),
        ("hello there", MemoryCategory.CASUAL),
    ])
    def test_detect_category(self, scorer, text, expected):
        """测试典型文本的类别"""
        category, confidence = scorer.detect_category(text)
        assert category == expected
        assert 0.5 <= confidence <= 1.0

    def test_no_rule_defaults_to_casual(self, scorer):
        """测试没有命中任何规则时为 casual，置信度 0.3"""
        assert scorer.detect_category("zzz qqq") == (MemoryCategory.CASUAL, 0.3)

    def test_negative_rule_lowers_score(self, scorer):
        """测试否定规则：疑问句不算用户事实"""
        category, _ = scorer.detect_category("Is my name is Alice?")
        assert category == MemoryCategory.QUESTION

    def test_tie_uses_declaration_order(self, scorer):
        """测试平局时按声明顺序取先声明的类别"""
        category, confidence = scorer.detect_category("thanks, sounds good")
        assert category == MemoryCategory.FEEDBACK
        assert confidence == pytest.approx(0.5)


class TestScoring:
    """测试评分计算"""

    @pytest.fixture
    def scorer(self, clock):
        return ImportanceScorer(clock=clock)

    def test_boosters_capped(self, scorer):
        """测试加成关键词累加且不超过上限"""
        matched, total = scorer.find_boosters("This is important and urgent")
        assert set(matched) == {"important", "urgent"}
        assert total == pytest.approx(0.4)

        _, capped = scorer.find_boosters("important critical urgent allergic")
        assert capped == pytest.approx(0.5)

    def test_base_score(self, scorer):
        """测试基础分 = 类别权重 + 加成 + 长度 + 具体性"""
        assert scorer.base_score("hello") == pytest.approx(0.15 + 5 / 2000)
        assert scorer.base_score("hello on 12 May") == pytest.approx(0.15 + 15 / 2000 + 0.1)

    def test_score_text_is_not_cached(self, scorer):
        """测试新文本评分不进入缓存"""
        scored = scorer.score_text("My name is Alice and I am allergic to nuts")
        assert scored.category == MemoryCategory.USER_FACT
        assert "allergic" in scored.boosters
        assert scored.raw_score >= 0.8
        assert scorer.stats()["scored"] == 0

    def test_time_decay(self, scorer):
        """测试半衰期衰减、不衰减类别和衰减下限"""
        assert scorer.apply_time_decay(0.8, 168, MemoryCategory.TASK) == pytest.approx(0.4)
        assert scorer.apply_time_decay(0.8, 5000, MemoryCategory.USER_FACT) == 0.8
        assert scorer.apply_time_decay(0.1, 1000, MemoryCategory.CASUAL) == pytest.approx(0.05)

    def test_decay_monotonic(self, scorer):
        """测试衰减随年龄单调不增"""
        values = [scorer.apply_time_decay(0.9, age, MemoryCategory.TASK) for age in range(0, 2000, 50)]
        assert all(b <= a for a, b in zip(values, values[1:]))

    @pytest.mark.parametrize("score,tier", [
        (0.7, MemoryTier.LONG_TERM),
        (0.69, MemoryTier.WORKING),
        (0.4, MemoryTier.WORKING),
        (0.39, MemoryTier.SHORT_TERM),
    ])
    def test_tier_for(self, scorer, score, tier):
        """测试层级边界"""
        assert scorer.tier_for(score) == tier

    def test_score_record_uses_importance_and_age(self, scorer, clock):
        """测试记录评分：原始分取 importance，按年龄衰减"""
        record = make_record("r1", "hello, nice weather", importance=0.5, created_at=START_TIME)
        clock.advance(hours=168)

        scored = scorer.score_record(record)
        assert scored.category == MemoryCategory.CASUAL
        assert scored.raw_score == 0.5
        assert scored.final_score == pytest.approx(0.25)
        assert scored.tier == MemoryTier.SHORT_TERM
        assert scored.age_hours == pytest.approx(168)
        assert scorer.get_score("r1").final_score == pytest.approx(0.25)

    def test_custom_half_life(self, clock):
        """测试自定义半衰期"""
        scorer = ImportanceScorer(ScorerSettings(half_life_hours=24), clock=clock)
        assert scorer.apply_time_decay(0.8, 24, MemoryCategory.TASK) == pytest.approx(0.4)


class TestAdjustments:
    """测试 promote / demote 与层级变化事件"""

    @pytest.fixture
    def scorer(self, clock):
        return ImportanceScorer(clock=clock)

    def test_unknown_record(self, scorer):
        """测试未评分过的记录返回None"""
        assert scorer.promote("missing") is None
        assert scorer.demote("missing") is None

    def test_demote_emits_tier_change(self, scorer):
        """测试降分跨越层级边界时发布事件"""
        changes = []
        scorer.tier_changed.subscribe(changes.append)
        scorer.score_record(make_record("r1", "My name is Bob", importance=0.8))

        updated = scorer.demote("r1", 0.2)

        assert updated.raw_score == pytest.approx(0.6)
        assert updated.tier == MemoryTier.WORKING
        assert len(changes) == 1
        assert changes[0].old_tier == MemoryTier.LONG_TERM
        assert changes[0].new_tier == MemoryTier.WORKING

    def test_adjustment_survives_rescore(self, scorer):
        """测试调整量在重新评分时仍然生效"""
        record = make_record("r1", "My name is Bob", importance=0.5)
        scorer.score_record(record)
        scorer.promote("r1")

        rescored = scorer.score_record(record)
        assert rescored.raw_score == pytest.approx(0.6)

    def test_promote_clamped(self, scorer):
        """测试原始分不超过 1"""
        scorer.score_record(make_record("r1", "My name is Bob", importance=0.95))
        assert scorer.promote("r1", 0.5).raw_score == 1.0

    def test_forget_score(self, scorer):
        """测试删除评分和调整量"""
        record = make_record("r1", "My name is Bob", importance=0.5)
        scorer.score_record(record)
        scorer.promote("r1")
        scorer.forget_score("r1")

        assert scorer.get_score("r1") is None
        assert scorer.score_record(record).raw_score == 0.5

    def test_stats(self, scorer):
        """测试统计信息"""
        scorer.score_record(make_record("r1", "My name is Bob", importance=0.9))
        scorer.score_record(make_record("r2", "hello", importance=0.1))

        stats = scorer.stats()
        assert stats["scored"] == 2
        assert stats["by_tier"]["long_term"] == 1
        assert stats["by_tier"]["short_term"] == 1
        assert stats["by_category"] == {"user_fact": 1, "casual": 1}
