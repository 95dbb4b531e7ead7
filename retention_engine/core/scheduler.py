"""
协作式调度器

单个事件循环协程统一调度所有后台任务：
- 每个 tick 计算所有触发器（周期 / 空闲 / 每日）的下一次到期时间
- 空闲检测通过比较最近活动时间戳与时钟完成
- 到期任务以独立 Task 运行，同一任务不会并发执行
- stop() 取消调度循环，并等待正在执行的任务完成
"""

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from retention_engine.utils.helpers import Clock, system_clock
from retention_engine.utils.logger import get_logger

logger = get_logger(__name__)

JobFunc = Callable[[str], Awaitable[Any]]

REASON_INTERVAL = "interval"
REASON_IDLE = "idle"
REASON_DAILY = "daily"


@dataclass
class ScheduledJob:
    """
    调度任务定义

    Attributes:
        name: 任务名称
        func: 协程函数，参数为触发原因
        interval_seconds: 周期触发间隔，None 表示不启用
        idle_seconds: 空闲触发阈值，None 表示不启用
        daily_hour: 每日触发的小时（本地时间），None 表示不启用
    """
    name: str
    func: JobFunc
    interval_seconds: Optional[float] = None
    idle_seconds: Optional[float] = None
    daily_hour: Optional[int] = None
    last_run: Optional[float] = None
    last_interval_run: Optional[float] = None
    last_daily_date: Optional[date] = None
    idle_fired_for: Optional[float] = None
    run_count: int = 0
    dropped_count: int = 0
    last_error: Optional[str] = None
    last_result: Any = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def in_flight(self) -> bool:
        return self.task is not None and not self.task.done()


class CooperativeScheduler:
    """
    协作式调度器

    Args:
        clock: 时钟函数（秒）
        tick_seconds: 调度循环最长休眠时间
    """

    def __init__(self, clock: Clock = system_clock, tick_seconds: float = 1.0):
        self._clock = clock
        self.tick_seconds = tick_seconds
        self._jobs: Dict[str, ScheduledJob] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False
        self._started_at: float = clock()
        self._last_activity: float = self._started_at

    # ==================== 任务注册 ====================

    def add_job(
        self,
        name: str,
        func: JobFunc,
        interval_seconds: Optional[float] = None,
        idle_seconds: Optional[float] = None,
        daily_hour: Optional[int] = None
    ) -> ScheduledJob:
        """
        注册调度任务（同名任务会被替换）

        Args:
            name: 任务名称
            func: 协程函数 func(reason)
            interval_seconds: 周期间隔（秒）
            idle_seconds: 空闲阈值（秒）
            daily_hour: 每日小时

        Returns:
            ScheduledJob: 任务对象
        """
        job = ScheduledJob(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            idle_seconds=idle_seconds,
            daily_hour=daily_hour
        )
        self._jobs[name] = job
        logger.debug(
            f"注册调度任务: {name}",
            interval=interval_seconds,
            idle=idle_seconds,
            daily_hour=daily_hour
        )
        return job

    def remove_job(self, name: str) -> bool:
        return self._jobs.pop(name, None) is not None

    def get_job(self, name: str) -> Optional[ScheduledJob]:
        return self._jobs.get(name)

    @property
    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs.values())

    # ==================== 活动追踪 ====================

    def record_activity(self) -> None:
        """记录一次用户活动，空闲计时从此刻重新开始"""
        self._last_activity = self._clock()

    @property
    def last_activity(self) -> float:
        return self._last_activity

    # ==================== 到期计算 ====================

    def _next_daily(self, job: ScheduledJob, now: float) -> Optional[float]:
        if job.daily_hour is None:
            return None
        current = datetime.fromtimestamp(now)
        candidate = current.replace(hour=job.daily_hour, minute=0, second=0, microsecond=0)
        if job.last_daily_date == current.date() or current.hour > job.daily_hour:
            candidate = candidate + timedelta(days=1)
        return candidate.timestamp()

    def next_due(self, job: ScheduledJob, now: Optional[float] = None) -> Optional[Tuple[float, str]]:
        """
        计算任务的下一次到期时间

        Args:
            job: 调度任务
            now: 当前时间，默认读取时钟

        Returns:
            Optional[Tuple[float, str]]: (到期时间, 触发原因)，没有启用的触发器时返回 None
        """
        now = self._clock() if now is None else now
        candidates: List[Tuple[float, str]] = []

        if job.interval_seconds is not None:
            base = job.last_interval_run if job.last_interval_run is not None else self._started_at
            candidates.append((base + job.interval_seconds, REASON_INTERVAL))

        if job.idle_seconds is not None and job.idle_fired_for != self._last_activity:
            candidates.append((self._last_activity + job.idle_seconds, REASON_IDLE))

        daily_at = self._next_daily(job, now)
        if daily_at is not None:
            candidates.append((daily_at, REASON_DAILY))

        if not candidates:
            return None
        return min(candidates, key=lambda item: item[0])

    def due_jobs(self, now: Optional[float] = None) -> List[Tuple[ScheduledJob, str]]:
        """返回当前已到期且未在执行中的任务"""
        now = self._clock() if now is None else now
        due = []
        for job in self._jobs.values():
            if job.in_flight:
                continue
            next_at = self.next_due(job, now)
            if next_at is not None and next_at[0] <= now:
                due.append((job, next_at[1]))
        return due

    # ==================== 执行 ====================

    def _mark_fired(self, job: ScheduledJob, reason: str, now: float) -> None:
        job.last_run = now
        if reason == REASON_INTERVAL:
            job.last_interval_run = now
        elif reason == REASON_IDLE:
            job.idle_fired_for = self._last_activity
        elif reason == REASON_DAILY:
            job.last_daily_date = datetime.fromtimestamp(now).date()

    async def _run_job(self, job: ScheduledJob, reason: str) -> Any:
        try:
            result = await job.func(reason)
            job.last_result = result
            job.last_error = None
            return result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.last_error = str(e)
            logger.error(f"调度任务执行失败: {job.name}", reason=reason, error=str(e), exc_info=True)
            return None
        finally:
            job.run_count += 1

    def _drop_overlapping(self, now: float) -> None:
        # 任务执行期间到期的触发直接丢弃，不排队
        for job in self._jobs.values():
            if not job.in_flight:
                continue
            # 每个触发器最多丢弃一次
            for _ in (REASON_INTERVAL, REASON_IDLE, REASON_DAILY):
                next_at = self.next_due(job, now)
                if next_at is None or next_at[0] > now:
                    break
                self._mark_fired(job, next_at[1], now)
                job.dropped_count += 1
                logger.info(f"调度任务正在执行，丢弃本次触发: {job.name}", reason=next_at[1])

    def dispatch(self, now: Optional[float] = None) -> List[str]:
        """
        启动所有到期任务（不等待完成）

        正在执行的任务在此期间到期的触发会被丢弃。

        Returns:
            List[str]: 本次启动的任务名称
        """
        now = self._clock() if now is None else now
        self._drop_overlapping(now)
        started = []
        for job, reason in self.due_jobs(now):
            self._mark_fired(job, reason, now)
            job.task = asyncio.get_running_loop().create_task(self._run_job(job, reason))
            logger.info(f"触发调度任务: {job.name}", reason=reason)
            started.append(job.name)
        return started

    async def tick(self, now: Optional[float] = None) -> List[str]:
        """
        执行一次调度：启动到期任务并等待它们完成

        主要用于测试和手动驱动。

        Returns:
            List[str]: 本次执行的任务名称
        """
        started = self.dispatch(now)
        await self.wait_idle()
        return started

    async def wait_idle(self) -> None:
        """等待所有正在执行的任务完成"""
        tasks = [job.task for job in self._jobs.values() if job.in_flight]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def seconds_until_next(self, now: Optional[float] = None) -> Optional[float]:
        now = self._clock() if now is None else now
        due_times = [
            next_at[0]
            for next_at in (self.next_due(job, now) for job in self._jobs.values())
            if next_at is not None
        ]
        if not due_times:
            return None
        return max(0.0, min(due_times) - now)

    async def _loop(self) -> None:
        logger.info("调度循环已启动", jobs=len(self._jobs))
        while self._running:
            self.dispatch()
            wait = self.seconds_until_next()
            sleep_for = self.tick_seconds if wait is None else min(self.tick_seconds, max(wait, 0.01))
            await asyncio.sleep(sleep_for)

    # ==================== 生命周期 ====================

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """启动调度循环（需要在事件循环中调用）"""
        if self._running:
            return
        self._running = True
        self._started_at = self._clock()
        self._last_activity = self._started_at
        self._loop_task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        """停止调度循环，等待正在执行的任务完成"""
        if not self._running:
            await self.wait_idle()
            return
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        await self.wait_idle()
        logger.info("调度循环已停止")

    def get_status(self) -> Dict[str, Any]:
        """获取调度器状态"""
        now = self._clock()
        jobs = {}
        for job in self._jobs.values():
            next_at = self.next_due(job, now)
            jobs[job.name] = {
                "in_flight": job.in_flight,
                "run_count": job.run_count,
                "dropped_count": job.dropped_count,
                "last_run": job.last_run,
                "last_error": job.last_error,
                "next_due": next_at[0] if next_at else None,
                "next_reason": next_at[1] if next_at else None,
            }
        return {
            "running": self._running,
            "last_activity": self._last_activity,
            "jobs": jobs,
        }
