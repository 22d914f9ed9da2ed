"""
Global admission control for scraping work.

The scheduler bounds how many tasks run at once across all domains. It has no
retry logic of its own: a task's outcome is handed back unchanged through the
future returned by :meth:`TaskScheduler.add_task`.
"""

from __future__ import annotations

import asyncio
import bisect
import itertools
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

import structlog

from pacecore.config.config import SchedulerConfig
from pacecore.crawler.urls import extract_domain
from pacecore.exceptions import CancellationError
from pacecore.observability import gauge
from pacecore.protocols import TaskStatus

logger = structlog.get_logger(__name__)

TaskFn = Callable[[], Awaitable[Any]]


@dataclass(eq=False)
class ScrapingTask:
    """A unit of scheduled work and its lifecycle bookkeeping."""

    fn: TaskFn
    future: asyncio.Future
    priority: int = 0
    sequence: int = 0
    name: Optional[str] = None
    url: Optional[str] = None
    domain: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: TaskStatus = TaskStatus.CREATED
    retry_count: int = 0
    max_retries: int = 0
    created_at: float = field(default_factory=time.monotonic)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[BaseException] = None
    result: Any = None
    on_start: Optional[Callable[[ScrapingTask], Any]] = field(default=None, repr=False)
    on_complete: Optional[Callable[[Any], Any]] = field(default=None, repr=False)
    on_error: Optional[Callable[[BaseException], Any]] = field(default=None, repr=False)

    @property
    def sort_key(self) -> Tuple[int, float, int]:
        return (-self.priority, self.created_at, self.sequence)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at


def _sort_key(task: ScrapingTask) -> Tuple[int, float, int]:
    return task.sort_key


class TaskScheduler:
    """
    Runs at most ``max_concurrency`` tasks at a time, highest priority first.

    Dispatch happens in a synchronous drain pass. A drain requested while a
    pass is already running (for example from an ``on_start`` callback) sets
    a flag that the running pass honours before it returns.
    """

    def __init__(
        self,
        max_concurrency: Optional[int] = None,
        *,
        config: Optional[SchedulerConfig] = None,
        history_size: int = 1000,
    ):
        self.config = config or SchedulerConfig()
        self.max_concurrency = (
            max_concurrency if max_concurrency is not None else self.config.max_concurrent_tasks
        )
        if self.max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")

        self._pending: List[ScrapingTask] = []
        self._running: Set[ScrapingTask] = set()
        self._workers: Set[asyncio.Task] = set()
        self._tasks: Dict[str, ScrapingTask] = {}
        self._finished: "OrderedDict[str, ScrapingTask]" = OrderedDict()
        self._history_size = history_size
        self._sequence = itertools.count()
        self._draining = False
        self._drain_requested = False
        self._idle: Optional[asyncio.Event] = None
        self._completed = 0
        self._failed = 0
        self._cancelled = 0

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def total_count(self) -> int:
        return self.pending_count + self.running_count

    @property
    def pending_tasks(self) -> List[ScrapingTask]:
        """Snapshot of queued tasks in dispatch order."""
        return list(self._pending)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def add_task(
        self,
        fn: TaskFn,
        priority: int = 0,
        *,
        name: Optional[str] = None,
        url: Optional[str] = None,
        on_start: Optional[Callable[[ScrapingTask], Any]] = None,
        on_complete: Optional[Callable[[Any], Any]] = None,
        on_error: Optional[Callable[[BaseException], Any]] = None,
    ) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        task = ScrapingTask(
            fn=fn,
            future=loop.create_future(),
            priority=priority,
            sequence=next(self._sequence),
            name=name,
            url=url,
            domain=extract_domain(url) if url else None,
            on_start=on_start,
            on_complete=on_complete,
            on_error=on_error,
        )
        task.status = TaskStatus.QUEUED
        bisect.insort(self._pending, task, key=_sort_key)
        self._tasks[task.id] = task
        self._idle_event().clear()
        logger.debug("Task queued", task_id=task.id, name=name, priority=priority)
        self._drain()
        return task.future

    def _idle_event(self) -> asyncio.Event:
        if self._idle is None:
            self._idle = asyncio.Event()
            self._idle.set()
        return self._idle

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _drain(self) -> None:
        if self._draining:
            self._drain_requested = True
            return
        self._draining = True
        try:
            while True:
                self._drain_requested = False
                while len(self._running) < self.max_concurrency and self._pending:
                    task = self._pending.pop(0)
                    if task.future.done():
                        # The caller cancelled the future before it started.
                        self._finish(task, TaskStatus.CANCELLED)
                        continue
                    self._start(task)
                if not self._drain_requested:
                    break
        finally:
            self._draining = False
        self._update_gauges()
        if not self._pending and not self._running:
            self._idle_event().set()

    def _start(self, task: ScrapingTask) -> None:
        self._running.add(task)
        task.status = TaskStatus.EXECUTING
        task.started_at = time.monotonic()
        self._invoke(task.on_start, task, task)
        worker = asyncio.get_running_loop().create_task(self._execute(task), name=f"pacecore-task-{task.id}")
        self._workers.add(worker)
        worker.add_done_callback(self._workers.discard)

    async def _execute(self, task: ScrapingTask) -> None:
        try:
            result = await task.fn()
        except asyncio.CancelledError:
            task.error = CancellationError("Task cancelled while running", url=task.url)
            if not task.future.done():
                task.future.set_exception(task.error)
            self._finish(task, TaskStatus.CANCELLED)
            raise
        except Exception as exc:
            task.error = exc
            if not task.future.done():
                task.future.set_exception(exc)
            logger.debug("Task failed", task_id=task.id, name=task.name, error=str(exc))
            self._finish(task, TaskStatus.FAILED)
            self._invoke(task.on_error, exc, task)
        else:
            task.result = result
            if not task.future.done():
                task.future.set_result(result)
            self._finish(task, TaskStatus.COMPLETED)
            self._invoke(task.on_complete, result, task)
        finally:
            self._running.discard(task)
            self._drain()

    def _finish(self, task: ScrapingTask, status: TaskStatus) -> None:
        task.status = status
        task.completed_at = time.monotonic()
        if status is TaskStatus.COMPLETED:
            self._completed += 1
        elif status is TaskStatus.FAILED:
            self._failed += 1
        else:
            self._cancelled += 1
        self._tasks.pop(task.id, None)
        self._finished[task.id] = task
        while len(self._finished) > self._history_size:
            self._finished.popitem(last=False)

    @staticmethod
    def _invoke(callback: Optional[Callable[[Any], Any]], arg: Any, task: ScrapingTask) -> None:
        if callback is None:
            return
        try:
            callback(arg)
        except Exception:
            logger.exception("Task callback raised", task_id=task.id, name=task.name)

    def _update_gauges(self) -> None:
        gauge("scheduler_running", len(self._running))
        gauge("scheduler_pending", len(self._pending))

    # ------------------------------------------------------------------
    # Cancellation and inspection
    # ------------------------------------------------------------------

    def _reject_pending(self, task: ScrapingTask, reason: str) -> None:
        task.error = CancellationError(reason, url=task.url, domain=task.domain)
        if not task.future.done():
            task.future.set_exception(task.error)
        self._finish(task, TaskStatus.CANCELLED)

    def clear_pending_tasks(self) -> int:
        """Reject every task that has not started yet; running tasks finish normally."""
        pending, self._pending = self._pending, []
        for task in pending:
            self._reject_pending(task, "Task cleared before execution")
        if pending:
            logger.info("Cleared pending tasks", count=len(pending))
        self._update_gauges()
        if not self._running:
            self._idle_event().set()
        return len(pending)

    def cancel(self, task_id: str) -> bool:
        """Cancel a pending task. Returns False when it is unknown or already running."""
        for index, task in enumerate(self._pending):
            if task.id == task_id:
                del self._pending[index]
                self._reject_pending(task, "Task cancelled before execution")
                self._update_gauges()
                if not self._pending and not self._running:
                    self._idle_event().set()
                return True
        return False

    def get_task(self, task_id: str) -> Optional[ScrapingTask]:
        return self._tasks.get(task_id) or self._finished.get(task_id)

    async def join(self) -> None:
        """Wait until no task is pending or running."""
        await self._idle_event().wait()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "max_concurrency": self.max_concurrency,
            "pending": self.pending_count,
            "running": self.running_count,
            "completed": self._completed,
            "failed": self._failed,
            "cancelled": self._cancelled,
        }

    async def close(self) -> None:
        """Drop pending work and wait for running tasks to settle."""
        self.clear_pending_tasks()
        if self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)
