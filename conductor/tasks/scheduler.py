"""
Task scheduler - drives the current TaskGraph to completion.

Each pass recomputes the runnable set (pending tasks whose dependencies all
completed, in insertion order) and executes it:
- sequential mode runs the first runnable task, then recomputes
- concurrent mode launches every runnable task and waits for all of them

Concurrent mode has no concurrency cap; the width of a pass is the width of
the plan. When nothing is runnable the scheduler either waits for review
feedback or, if no task awaits review, raises DependencyDeadlock. Pending
tasks that depend on a failed task are failed first, so a deadlock only
reports dependencies that are missing from the plan or form a cycle.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from conductor.config import ExecutionMode
from conductor.errors import DependencyDeadlock, TaskCancelledError
from conductor.tasks.context import TaskContext
from conductor.tasks.executor import RetryReflectionExecutor
from conductor.tasks.plan import SubTask, TaskStatus
from conductor.tasks.review import ReviewCoordinator

logger = logging.getLogger(__name__)

TaskCallback = Callable[[SubTask], Awaitable[None]]


class TaskScheduler:
    """
    Runs the subtasks of one TaskContext until every task is completed or failed.

    Example:
        scheduler = TaskScheduler(context, executor, mode=ExecutionMode.CONCURRENT)
        await scheduler.run()
    """

    def __init__(
        self,
        context: TaskContext,
        executor: RetryReflectionExecutor,
        mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
        review: ReviewCoordinator | None = None,
        review_poll_interval: float = 2.0,
        on_task_done: TaskCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        self.context = context
        self.executor = executor
        self.mode = ExecutionMode(mode)
        self.review = review
        self.review_poll_interval = review_poll_interval
        self.on_task_done = on_task_done
        self.cancel_event = cancel_event

    async def run(self) -> None:
        """
        Execute until ``all_done()``.

        Raises:
            DependencyDeadlock: Nothing runnable, nothing awaiting review, plan unresolved
                (a dependency is missing from the plan or part of a cycle)
            TaskCancelledError: Cancellation was requested
        """
        graph = self.context.graph
        while not graph.all_done():
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise TaskCancelledError("Task execution cancelled")

            runnable = graph.runnable()
            if runnable:
                if self.mode == ExecutionMode.SEQUENTIAL:
                    await self._run_task(runnable[0])
                else:
                    await self._run_concurrently(runnable)
                continue

            if await self._fail_unreachable():
                continue

            if graph.waiting_for_review():
                await self._wait_for_review()
                continue

            blocked = graph.blocked()
            logger.error(f"Dependency deadlock: {blocked}", extra={"event": "deadlock"})
            raise DependencyDeadlock(blocked)

    async def _run_task(self, task: SubTask) -> TaskStatus:
        status = await self.executor.run(task.id)
        if self.on_task_done is not None:
            await self.on_task_done(task)
        return status

    async def _fail_unreachable(self) -> list[int]:
        failed = self.context.fail_unreachable()
        if failed:
            logger.warning(f"Tasks {failed} cannot run because a dependency failed")
            if self.on_task_done is not None:
                for task_id in failed:
                    await self.on_task_done(self.context.graph.get(task_id))
        return failed

    async def _run_concurrently(self, tasks: list[SubTask]) -> None:
        logger.debug(f"Launching {len(tasks)} tasks concurrently: {[t.id for t in tasks]}")
        results = await asyncio.gather(
            *(self._run_task(task) for task in tasks), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _wait_for_review(self) -> None:
        waiting = [t.id for t in self.context.graph.waiting_for_review()]
        logger.debug(f"Waiting for review of tasks {waiting}")
        if self.review is not None:
            await self.review.wait(timeout=self.review_poll_interval)
        else:
            await asyncio.sleep(self.review_poll_interval)
