"""
协作式调度器单元测试

测试周期、空闲、每日触发器的到期计算，以及任务执行和生命周期
"""

import asyncio
from datetime import datetime

import pytest

from retention_engine.core.scheduler import (
    REASON_DAILY,
    REASON_IDLE,
    REASON_INTERVAL,
    CooperativeScheduler,
)

from tests.conftest import ManualClock


class Recorder:
    """记录每次触发原因的任务函数"""

    def __init__(self, fail: bool = False):
        self.reasons = []
        self.fail = fail

    async def __call__(self, reason: str):
        self.reasons.append(reason)
        if self.fail:
            raise RuntimeError("job failed")
        return reason


@pytest.fixture
def scheduler(clock):
    return CooperativeScheduler(clock, tick_seconds=0.01)


class TestDueCalculation:
    """测试到期计算"""

    def test_no_triggers(self, scheduler):
        """测试没有启用触发器的任务永不到期"""
        job = scheduler.add_job("noop", Recorder())
        assert scheduler.next_due(job) is None
        assert scheduler.seconds_until_next() is None

    def test_interval(self, scheduler, clock):
        """测试周期触发从启动时间开始计算"""
        job = scheduler.add_job("job", Recorder(), interval_seconds=60)
        assert scheduler.next_due(job) == (clock() + 60, REASON_INTERVAL)
        assert scheduler.due_jobs() == []

        clock.advance(seconds=60)
        assert [(j.name, reason) for j, reason in scheduler.due_jobs()] == [("job", REASON_INTERVAL)]

    def test_idle(self, scheduler, clock):
        """测试空闲触发以最近活动时间为起点"""
        scheduler.add_job("job", Recorder(), idle_seconds=300)
        clock.advance(seconds=200)
        scheduler.record_activity()
        clock.advance(seconds=200)
        assert scheduler.due_jobs() == []

        clock.advance(seconds=100)
        assert scheduler.due_jobs()[0][1] == REASON_IDLE

    def test_earliest_trigger_wins(self, scheduler, clock):
        """测试多个触发器时取最早到期的一个"""
        job = scheduler.add_job("job", Recorder(), interval_seconds=3600, idle_seconds=300)
        assert scheduler.next_due(job)[1] == REASON_IDLE

    def test_daily(self):
        """测试每日触发在指定小时到期，当天只触发一次"""
        clock = ManualClock(datetime(2024, 1, 1, 2, 30).timestamp())
        scheduler = CooperativeScheduler(clock)
        job = scheduler.add_job("daily", Recorder(), daily_hour=3)

        assert scheduler.next_due(job) == (datetime(2024, 1, 1, 3, 0).timestamp(), REASON_DAILY)

        clock.advance(seconds=1800)
        scheduler._mark_fired(job, REASON_DAILY, clock())
        assert scheduler.next_due(job)[0] == datetime(2024, 1, 2, 3, 0).timestamp()

    def test_remove_job(self, scheduler):
        """测试移除任务"""
        scheduler.add_job("job", Recorder(), interval_seconds=60)
        assert scheduler.remove_job("job")
        assert not scheduler.remove_job("job")
        assert scheduler.get_job("job") is None


class TestExecution:
    """测试任务执行"""

    @pytest.mark.asyncio
    async def test_tick_runs_due_jobs(self, scheduler, clock):
        """测试 tick 执行到期任务并更新状态"""
        recorder = Recorder()
        job = scheduler.add_job("job", recorder, interval_seconds=60)
        clock.advance(seconds=60)

        started = await scheduler.tick()

        assert started == ["job"]
        assert recorder.reasons == [REASON_INTERVAL]
        assert job.run_count == 1
        assert job.last_run == clock()
        assert job.last_result == REASON_INTERVAL
        assert await scheduler.tick() == []

    @pytest.mark.asyncio
    async def test_idle_fires_once_per_activity(self, scheduler, clock):
        """测试同一段空闲只触发一次，新的活动后重新计时"""
        recorder = Recorder()
        scheduler.add_job("job", recorder, idle_seconds=300)

        clock.advance(seconds=300)
        await scheduler.tick()
        clock.advance(seconds=600)
        await scheduler.tick()
        assert recorder.reasons == [REASON_IDLE]

        scheduler.record_activity()
        clock.advance(seconds=300)
        await scheduler.tick()
        assert recorder.reasons == [REASON_IDLE, REASON_IDLE]

    @pytest.mark.asyncio
    async def test_failure_recorded(self, scheduler, clock):
        """测试任务失败只记录错误，不影响调度器"""
        job = scheduler.add_job("job", Recorder(fail=True), interval_seconds=10)
        clock.advance(seconds=10)

        await scheduler.tick()

        assert job.last_error == "job failed"
        assert job.run_count == 1
        assert scheduler.get_status()["jobs"]["job"]["last_error"] == "job failed"

    @pytest.mark.asyncio
    async def test_in_flight_job_not_redispatched(self, scheduler, clock):
        """测试正在执行的任务不会被再次启动"""
        gate = asyncio.Event()
        calls = []

        async def slow(reason):
            calls.append(reason)
            await gate.wait()

        scheduler.add_job("slow", slow, interval_seconds=10)
        clock.advance(seconds=10)
        assert scheduler.dispatch() == ["slow"]
        await asyncio.sleep(0)

        clock.advance(seconds=10)
        assert scheduler.dispatch() == []

        gate.set()
        await scheduler.wait_idle()
        assert calls == [REASON_INTERVAL]

    @pytest.mark.asyncio
    async def test_trigger_during_run_is_dropped(self, scheduler, clock):
        """测试执行期间到期的触发被丢弃，任务结束后不会补跑"""
        gate = asyncio.Event()
        calls = []

        async def slow(reason):
            calls.append(reason)
            await gate.wait()

        job = scheduler.add_job("slow", slow, interval_seconds=10, idle_seconds=15)
        clock.advance(seconds=10)
        assert scheduler.dispatch() == ["slow"]
        await asyncio.sleep(0)

        clock.advance(seconds=6)
        assert scheduler.dispatch() == []
        gate.set()
        await scheduler.wait_idle()

        clock.advance(seconds=1)
        assert scheduler.dispatch() == []
        assert calls == [REASON_INTERVAL]
        assert job.dropped_count == 1
        assert scheduler.get_status()["jobs"]["slow"]["dropped_count"] == 1

    @pytest.mark.asyncio
    async def test_idle_run_does_not_delay_interval(self, scheduler, clock):
        """测试空闲触发不会推迟周期触发"""
        recorder = Recorder()
        scheduler.add_job("job", recorder, interval_seconds=60, idle_seconds=30)

        clock.advance(seconds=30)
        await scheduler.tick()
        clock.advance(seconds=30)
        await scheduler.tick()

        assert recorder.reasons == [REASON_IDLE, REASON_INTERVAL]


class TestLifecycle:
    """测试生命周期"""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler):
        """测试启动后运行、停止后不再运行，重复调用无副作用"""
        scheduler.add_job("job", Recorder(), interval_seconds=3600)
        scheduler.start()
        scheduler.start()
        assert scheduler.running

        await asyncio.sleep(0.02)
        await scheduler.stop()
        await scheduler.stop()

        assert not scheduler.running
        assert scheduler.get_status()["running"] is False
