"""
单次任务调度器与执行频率限制
"""
import asyncio
import heapq
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4


logger = logging.getLogger(__name__)

_sequence = itertools.count()


@dataclass
class ScheduledJob:
    """调度任务"""
    run_at: float
    payload: Dict[str, Any]
    job_id: str = field(default_factory=lambda: str(uuid4()))
    sequence: int = field(default_factory=lambda: next(_sequence))

    def __lt__(self, other):
        """用于优先队列比较"""
        if self.run_at != other.run_at:
            return self.run_at < other.run_at
        return self.sequence < other.sequence


class Scheduler(ABC):
    """调度器接口：在指定时间点投递一次回调"""

    @abstractmethod
    async def schedule_once(self, run_at: float, payload: Dict[str, Any]) -> str:
        """
        调度单次任务

        Args:
            run_at: Unix 时间戳
            payload: 回调载荷，如 ``{"action": "resume_execution", ...}``

        Returns:
            任务ID
        """
        pass


class InMemoryScheduler(Scheduler):
    """基于堆的内存调度器"""

    def __init__(self, clock: Callable[[], float] = time.time, poll_interval: float = 1.0):
        self.clock = clock
        self.poll_interval = poll_interval
        self.jobs: List[ScheduledJob] = []
        self._lock = asyncio.Lock()
        self._loop_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    async def schedule_once(self, run_at: float, payload: Dict[str, Any]) -> str:
        job = ScheduledJob(run_at=float(run_at), payload=dict(payload))
        async with self._lock:
            heapq.heappush(self.jobs, job)
        logger.debug(f"Scheduled job {job.job_id} at {job.run_at}: {payload.get('action')}")
        return job.job_id

    def pending(self) -> List[ScheduledJob]:
        """按执行时间排序的待执行任务"""
        return sorted(self.jobs)

    async def due_jobs(self, now: float = None) -> List[ScheduledJob]:
        """弹出所有到期任务"""
        now = self.clock() if now is None else now
        due = []
        async with self._lock:
            while self.jobs and self.jobs[0].run_at <= now:
                due.append(heapq.heappop(self.jobs))
        return due

    async def run_due(self, dispatch: Callable[[Dict[str, Any]], Awaitable[Any]], now: float = None) -> int:
        """执行所有到期任务，返回执行数量"""
        jobs = await self.due_jobs(now)
        for job in jobs:
            try:
                await dispatch(job.payload)
            except Exception as e:
                logger.error(f"Scheduled job {job.job_id} failed: {e}", exc_info=True)
        return len(jobs)

    async def start(self, dispatch: Callable[[Dict[str, Any]], Awaitable[Any]]):
        """启动后台轮询"""
        if self._loop_task:
            return

        self._stop_event = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run_loop(dispatch))
        logger.info("Scheduler started")

    async def stop(self):
        """停止后台轮询"""
        if not self._loop_task:
            return

        self._stop_event.set()
        await self._loop_task
        self._loop_task = None
        logger.info("Scheduler stopped")

    async def _run_loop(self, dispatch):
        while not self._stop_event.is_set():
            try:
                await self.run_due(dispatch)
            except Exception as e:
                logger.error(f"Scheduler loop error: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass


class ExecutionRateLimiter:
    """
    每个工作流的固定窗口执行计数

    检查与计数在同一个临界区内完成，多个并发调用不会同时通过最后一个名额。
    """

    def __init__(self, window_seconds: int = 3600, clock: Callable[[], float] = time.time):
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def try_acquire(self, workflow_id: str, limit: int) -> bool:
        """名额未用完时计数加一并返回 True"""
        now = self.clock()
        key = str(workflow_id)
        with self._lock:
            window_start, count = self._windows.get(key, (now, 0))
            if now - window_start >= self.window_seconds:
                window_start, count = now, 0
            if count >= limit:
                return False
            self._windows[key] = [window_start, count + 1]
            return True

    def current_count(self, workflow_id: str) -> int:
        with self._lock:
            window = self._windows.get(str(workflow_id))
            if not window or self.clock() - window[0] >= self.window_seconds:
                return 0
            return int(window[1])

    def reset(self, workflow_id: str = None):
        with self._lock:
            if workflow_id is None:
                self._windows.clear()
            else:
                self._windows.pop(str(workflow_id), None)
