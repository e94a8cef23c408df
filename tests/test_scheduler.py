"""Tests for TaskScheduler: ordering, concurrency, review waits and deadlocks."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conductor.config import ExecutionMode
from conductor.errors import DependencyDeadlock, TaskCancelledError
from conductor.roles.protocols import ReviewVerdict, WorkerAction
from conductor.runtime.event_bus import EventBus
from conductor.tasks.context import TaskContext
from conductor.tasks.executor import RetryReflectionExecutor
from conductor.tasks.plan import PlanItem, TaskStatus
from conductor.tasks.review import ReviewCoordinator
from conductor.tasks.scheduler import TaskScheduler
from conductor.tools.registry import ToolRegistry

# fast_sleep patches asyncio.sleep; tests that need a real yield use this
real_sleep = asyncio.sleep


class RecordingWorker:
    """Runs the ``record`` tool for every task and remembers the execution order."""

    def __init__(self):
        self.order: list[int] = []

    async def propose(self, task, context, retry_history):
        self.order.append(task.id)
        return WorkerAction(tool_name="record", args={"id": task.id})


class ReviewOnceWorker:
    """Submits work for review first, then completes once feedback is attached."""

    async def propose(self, task, context, retry_history):
        if "--- Review feedback ---" in task.description:
            return WorkerAction(tool_name="record", args={"id": task.id})
        return WorkerAction(tool_name="submit", args={"content": f"draft {task.id}"})


class ApprovingReviewer:
    def __init__(self):
        self.reviewed: list[tuple[int, str]] = []

    async def review(self, task, content):
        self.reviewed.append((task.id, content))
        return ReviewVerdict(approved=True, feedback="looks good")


@pytest.fixture(autouse=True)
def fast_sleep(monkeypatch):
    """Mock asyncio.sleep to avoid real delays from exponential backoff."""
    monkeypatch.setattr("asyncio.sleep", AsyncMock())


def make_context(deps: dict[int, list[int]]) -> TaskContext:
    context = TaskContext(original_request="test")
    context.set_plan([PlanItem(id=i, description=f"task {i}", dependencies=d) for i, d in deps.items()])
    return context


def make_tools(delay: float = 0.0, tracker: dict | None = None) -> ToolRegistry:
    tools = ToolRegistry()

    async def record(inputs: dict) -> str:
        if tracker is not None:
            tracker["active"] += 1
            tracker["peak"] = max(tracker["peak"], tracker["active"])
        if delay:
            await real_sleep(delay)
        if tracker is not None:
            tracker["active"] -= 1
        return f"done {inputs['id']}"

    tools.register("record", record)
    tools.register("submit", lambda inputs: inputs["content"], submits_for_review=True)
    return tools


def make_scheduler(context, worker, tools, mode=ExecutionMode.SEQUENTIAL, **kwargs):
    bus = EventBus(session_id=context.session_id)
    executor = RetryReflectionExecutor(context, worker, tools, bus, auto_mode=True)
    return TaskScheduler(context, executor, mode=mode, **kwargs), bus


class TestSequential:
    """One runnable task per pass."""

    @pytest.mark.asyncio
    async def test_runs_in_dependency_order(self):
        context = make_context({1: [], 2: [3], 3: [1], 4: []})
        worker = RecordingWorker()
        scheduler, _ = make_scheduler(context, worker, make_tools())

        await scheduler.run()

        assert worker.order == [1, 3, 4, 2]
        assert context.graph.all_done()

    @pytest.mark.asyncio
    async def test_dependents_of_failed_task_fail_transitively(self):
        """Dependents of a failed task are failed instead of deadlocking."""
        context = make_context({1: [], 2: [1], 3: [2], 4: []})
        done = AsyncMock()

        class FailFirstWorker:
            async def propose(self, task, context, retry_history):
                if task.id == 1:
                    return WorkerAction(tool_name="missing")
                return WorkerAction(tool_name="record", args={"id": task.id})

        scheduler, _ = make_scheduler(context, FailFirstWorker(), make_tools(), on_task_done=done)

        await scheduler.run()

        assert context.graph.all_done()
        assert [t.status for t in context.subtasks] == [
            TaskStatus.FAILED,
            TaskStatus.FAILED,
            TaskStatus.FAILED,
            TaskStatus.COMPLETED,
        ]
        assert context.graph.get(2).error == "Not run: dependency #1 failed"
        assert context.graph.get(3).error == "Not run: dependency #2 failed"
        assert "Failed Task 3: task 3" in context.progress_summary
        assert [call.args[0].id for call in done.await_args_list] == [1, 4, 2, 3]

    @pytest.mark.asyncio
    async def test_missing_dependency_still_deadlocks_after_cascade(self):
        context = make_context({1: [], 2: [1], 3: [9]})

        class FailingWorker:
            async def propose(self, task, context, retry_history):
                return WorkerAction(tool_name="missing")

        scheduler, _ = make_scheduler(context, FailingWorker(), make_tools())

        with pytest.raises(DependencyDeadlock) as exc_info:
            await scheduler.run()

        assert exc_info.value.blocked == {3: [9]}
        assert context.graph.get(2).status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_on_task_done_called_per_task(self):
        context = make_context({1: [], 2: [1]})
        done = AsyncMock()
        scheduler, _ = make_scheduler(context, RecordingWorker(), make_tools(), on_task_done=done)

        await scheduler.run()

        assert [call.args[0].id for call in done.await_args_list] == [1, 2]


class TestConcurrent:
    """All runnable tasks launched together."""

    @pytest.mark.asyncio
    async def test_independent_tasks_overlap(self):
        context = make_context({1: [], 2: [], 3: [], 4: [1, 2, 3]})
        tracker = {"active": 0, "peak": 0}
        worker = RecordingWorker()
        scheduler, _ = make_scheduler(
            context, worker, make_tools(delay=0.01, tracker=tracker), mode=ExecutionMode.CONCURRENT
        )

        await scheduler.run()

        assert tracker["peak"] == 3
        assert worker.order[-1] == 4
        assert all(t.status == TaskStatus.COMPLETED for t in context.subtasks)

    @pytest.mark.asyncio
    async def test_delegated_task_runs_in_same_session(self):
        """Tasks appended while the plan runs are picked up by later passes."""
        context = make_context({1: []})
        tools = make_tools()

        class DelegatingWorker(RecordingWorker):
            async def propose(self, task, context, retry_history):
                if task.id == 1:
                    context.graph.append_dynamic("writer", "follow-up")
                return await super().propose(task, context, retry_history)

        worker = DelegatingWorker()
        scheduler, _ = make_scheduler(context, worker, tools, mode=ExecutionMode.CONCURRENT)

        await scheduler.run()

        assert worker.order == [1, 2]
        assert context.graph.get(2).dependencies == [1]


class TestDeadlock:
    @pytest.mark.asyncio
    async def test_dangling_dependency_raises_after_runnable_work(self):
        context = make_context({1: [], 2: [1], 3: [4]})
        worker = RecordingWorker()
        scheduler, _ = make_scheduler(context, worker, make_tools())

        with pytest.raises(DependencyDeadlock) as exc_info:
            await scheduler.run()

        assert worker.order == [1, 2]
        assert exc_info.value.blocked == {3: [4]}
        assert "#3 waits on [4]" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_cycle_raises(self):
        context = make_context({1: [2], 2: [1]})
        scheduler, _ = make_scheduler(context, RecordingWorker(), make_tools())

        with pytest.raises(DependencyDeadlock):
            await scheduler.run()


class TestReviewWait:
    """Tasks waiting for review suspend the scheduler until feedback arrives."""

    @pytest.mark.asyncio
    async def test_reviewer_feedback_resumes_task(self):
        context = make_context({1: [], 2: [1]})
        scheduler, bus = make_scheduler(context, ReviewOnceWorker(), make_tools())
        reviewer = ApprovingReviewer()
        review = ReviewCoordinator(context, bus, reviewer)
        scheduler.review = review

        await review.start()
        try:
            await scheduler.run()
        finally:
            await review.stop()

        assert reviewer.reviewed == [(1, "draft 1"), (2, "draft 2")]
        task = context.graph.get(1)
        assert task.status == TaskStatus.COMPLETED
        assert "Status: approved\nFeedback: looks good" in task.description

    @pytest.mark.asyncio
    async def test_external_feedback_resumes_task(self):
        context = make_context({1: []})
        scheduler, bus = make_scheduler(context, ReviewOnceWorker(), make_tools())
        review = ReviewCoordinator(context, bus)
        scheduler.review = review
        await review.start()

        run = asyncio.create_task(scheduler.run())
        while not review.pending_reviews():
            await real_sleep(0.001)
        assert await review.submit_feedback(1, False, "needs tests")
        await run
        await review.stop()

        assert context.graph.get(1).status == TaskStatus.COMPLETED
        assert "Status: changes requested" in context.graph.get(1).description

    @pytest.mark.asyncio
    async def test_cancel_event_stops_scheduler(self):
        context = make_context({1: [], 2: []})
        cancel = asyncio.Event()
        cancel.set()
        scheduler, _ = make_scheduler(context, RecordingWorker(), make_tools(), cancel_event=cancel)

        with pytest.raises(TaskCancelledError):
            await scheduler.run()
