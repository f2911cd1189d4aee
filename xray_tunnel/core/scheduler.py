"""
定时任务调度器 - 互不重叠的周期任务

每个任务在上一次运行结束前不会再次启动；按需触发时如果任务正在运行，
触发方等待当前这次运行的结果。
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from .error_handler import ErrorCategory, handle_error

JobFunc = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledJob:
    """周期任务"""
    name: str
    func: JobFunc
    interval: float
    jitter: float = 0.1
    initial_delay: Optional[float] = None
    enabled: bool = True

    # 运行状态
    run_count: int = 0
    skipped_count: int = 0
    failure_count: int = 0
    last_started_at: Optional[float] = None
    last_finished_at: Optional[float] = None
    last_error: Optional[str] = None
    current: Optional[asyncio.Task] = field(default=None, repr=False)
    loop_task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def is_running(self) -> bool:
        return self.current is not None and not self.current.done()


class IntervalScheduler:
    """周期任务调度器"""

    def __init__(self, rng: Optional[Callable[[float, float], float]] = None):
        self.logger = logging.getLogger(__name__)
        self._jobs: Dict[str, ScheduledJob] = {}
        self._uniform = rng or random.uniform
        self._started = False

    def add_job(self, name: str, func: JobFunc, interval: float,
                jitter: float = 0.1, initial_delay: Optional[float] = None,
                enabled: bool = True) -> ScheduledJob:
        """
        注册周期任务

        Args:
            name: 任务名称
            func: 异步任务函数
            interval: 运行间隔（秒）
            jitter: 间隔抖动比例
            initial_delay: 首次运行前的延迟，None表示等待一个间隔
            enabled: 是否周期运行（禁用的任务仍可手动触发）

        Returns:
            ScheduledJob
        """
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        if interval <= 0:
            raise ValueError(f"Job interval must be positive: {interval}")
        job = ScheduledJob(name=name, func=func, interval=interval, jitter=jitter,
                           initial_delay=initial_delay, enabled=enabled)
        self._jobs[name] = job
        if self._started and enabled:
            job.loop_task = asyncio.ensure_future(self._job_loop(job))
        return job

    def get_job(self, name: str) -> ScheduledJob:
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(f"Unknown job: {name}")
        return job

    def start(self) -> None:
        """启动所有已启用任务的周期循环（需在事件循环中调用）"""
        if self._started:
            return
        self._started = True
        for job in self._jobs.values():
            if job.enabled:
                job.loop_task = asyncio.ensure_future(self._job_loop(job))
        self.logger.info(f"Scheduler started with {len(self._jobs)} job(s)")

    def _next_delay(self, job: ScheduledJob) -> float:
        if job.jitter <= 0:
            return job.interval
        return job.interval * self._uniform(1.0 - job.jitter, 1.0 + job.jitter)

    async def _job_loop(self, job: ScheduledJob) -> None:
        delay = job.initial_delay if job.initial_delay is not None else self._next_delay(job)
        while True:
            await asyncio.sleep(delay)
            if job.is_running:
                # 上一次运行尚未结束，本次跳过
                job.skipped_count += 1
                self.logger.debug(f"Job {job.name} still running, tick skipped")
                await asyncio.wait({job.current})
            else:
                await self._run(job)
            delay = self._next_delay(job)

    def _launch(self, job: ScheduledJob) -> asyncio.Task:
        job.current = asyncio.ensure_future(self._execute(job))
        return job.current

    async def _run(self, job: ScheduledJob) -> Any:
        task = job.current if job.is_running else self._launch(job)
        return await asyncio.shield(task)

    async def _execute(self, job: ScheduledJob) -> Any:
        job.last_started_at = time.time()
        job.run_count += 1
        try:
            result = await job.func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failure_count += 1
            job.last_error = str(e)
            handle_error(
                category=ErrorCategory.SCHEDULER,
                code="scheduler_job_failed",
                message=f"Job {job.name} failed",
                exception=e,
                context={'job': job.name}
            )
            return None
        finally:
            job.last_finished_at = time.time()
        job.last_error = None
        return result

    async def trigger(self, name: str) -> Any:
        """
        立即运行任务；任务正在运行时等待并返回当前这次的结果

        Args:
            name: 任务名称

        Returns:
            任务返回值（失败时为None）
        """
        return await self._run(self.get_job(name))

    def is_running(self, name: str) -> bool:
        return self.get_job(name).is_running

    async def stop(self) -> None:
        """取消所有周期循环和正在运行的任务"""
        tasks = []
        for job in self._jobs.values():
            for task in (job.loop_task, job.current):
                if task is not None and not task.done():
                    task.cancel()
                    tasks.append(task)
            job.loop_task = None
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._started = False
        self.logger.info("Scheduler stopped")

    def get_status(self) -> Dict[str, Dict[str, Any]]:
        """获取任务状态"""
        return {
            name: {
                'interval': job.interval,
                'enabled': job.enabled,
                'running': job.is_running,
                'run_count': job.run_count,
                'skipped_count': job.skipped_count,
                'failure_count': job.failure_count,
                'last_started_at': job.last_started_at,
                'last_finished_at': job.last_finished_at,
                'last_error': job.last_error,
            }
            for name, job in self._jobs.items()
        }
