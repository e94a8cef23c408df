"""
Retry/reflection executor - drives one subtask to a terminal status.

Per attempt:
1. Ask the worker for a tool call, passing the reflection notes so far
2. Gate destructive tools behind human approval unless auto mode is on
3. Execute the tool; a "submit for review" tool suspends the task
4. On failure, reflect on the error and retry with the refined notes

Errors never escape ``run()``: an exhausted task ends ``failed`` with the
last error. Only cancellation propagates.
"""

import asyncio
import logging
from typing import Any

from conductor.errors import TaskCancelledError, ToolExecutionError
from conductor.observability import set_trace_context
from conductor.roles.protocols import Reflector, Worker, WorkerAction
from conductor.runtime.event_bus import EventBus, EventType
from conductor.tasks.context import TaskContext
from conductor.tasks.hitl import ApprovalDecision, ApprovalGate, ApprovalKind, ApprovalRequest
from conductor.tasks.plan import SubTask, TaskStatus
from conductor.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


class RetryReflectionExecutor:
    """
    Executes subtasks of one TaskContext with bounded retries.

    Example:
        executor = RetryReflectionExecutor(context, roles.worker, tools, bus,
                                           reflector=roles.reflector, auto_mode=True)
        status = await executor.run(task_id=1)
    """

    def __init__(
        self,
        context: TaskContext,
        worker: Worker,
        tools: ToolRegistry,
        bus: EventBus,
        reflector: Reflector | None = None,
        approval_gate: ApprovalGate | None = None,
        auto_mode: bool = False,
        max_attempts: int = MAX_ATTEMPTS,
        worker_role: str = "worker",
        tool_timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        self.context = context
        self.worker = worker
        self.tools = tools
        self.bus = bus
        self.reflector = reflector
        self.approval_gate = approval_gate
        self.auto_mode = auto_mode
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.worker_role = worker_role
        self.tool_timeout = tool_timeout
        self.cancel_event = cancel_event

    def _check_cancelled(self, task: SubTask) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            task.status = TaskStatus.PENDING
            raise TaskCancelledError(f"Cancelled before attempt on task {task.id}")

    async def run(self, task_id: int) -> TaskStatus:
        """
        Drive a task to ``completed``, ``failed`` or ``waiting_for_review``.

        Raises:
            TaskCancelledError: Cancellation was requested before an attempt,
                or the user aborted from an approval prompt
        """
        task = self.context.mark_in_progress(task_id)
        set_trace_context(task_id=task.id)
        token = self.tools.set_execution_context(session_id=self.context.session_id, task_id=task.id)
        await self.bus.emit(EventType.TASK_STARTED, task_id=task.id, description=task.headline)

        try:
            errors: list[str] = []
            for attempt in range(1, self.max_attempts + 1):
                self._check_cancelled(task)
                task.attempts = attempt
                try:
                    return await self._attempt(task)
                except TaskCancelledError:
                    task.status = TaskStatus.PENDING
                    raise
                except Exception as e:
                    task.error = str(e) or type(e).__name__
                    errors.append(task.error)
                    logger.warning(
                        f"Task {task.id} attempt {attempt}/{self.max_attempts} failed: {task.error}",
                        extra={"event": "task_attempt_failed", "attempt": attempt},
                    )

                if attempt < self.max_attempts:
                    note = await self._reflect(task, attempt)
                    task.retry_history.append(note)
                    await self.bus.emit(
                        EventType.TASK_RETRY, task_id=task.id, attempt=attempt, note=note
                    )

            message = _failure_message(errors)
            self.context.mark_failed(task.id, message)
            await self.bus.emit(EventType.TASK_FAILED, task_id=task.id, error=message)
            logger.error(f"Task {task.id} failed: {message}", extra={"event": "task_failed"})
            return TaskStatus.FAILED
        finally:
            self.tools.reset_execution_context(token)

    async def _attempt(self, task: SubTask) -> TaskStatus:
        action = await self.worker.propose(task, self.context, list(task.retry_history))
        args = await self._approve(task, action)

        result = await self.tools.execute(
            action.tool_name, args, role=self.worker_role, timeout=self.tool_timeout
        )

        if self.tools.submits_for_review(action.tool_name):
            self.context.mark_waiting_for_review(task.id)
            await self.bus.emit(
                EventType.REVIEW_REQUESTED,
                task_id=task.id,
                content=result if isinstance(result, str) else str(result),
            )
            logger.info(f"Task {task.id} submitted for review", extra={"event": "review_requested"})
            return TaskStatus.WAITING_FOR_REVIEW

        self.context.mark_completed(task.id, result)
        await self.bus.emit(EventType.TASK_COMPLETED, task_id=task.id, result=task.result)
        logger.info(f"Task {task.id} completed", extra={"event": "task_completed"})
        return TaskStatus.COMPLETED

    async def _approve(self, task: SubTask, action: WorkerAction) -> dict[str, Any]:
        """Return the arguments to run with, or raise if the call was not approved."""
        if self.auto_mode or not self.tools.requires_approval(action.tool_name):
            return action.args
        if self.approval_gate is None:
            raise ToolExecutionError(
                action.tool_name,
                f"Tool '{action.tool_name}' requires approval and no approval channel is configured",
            )

        result = await self.approval_gate.request(
            ApprovalRequest(
                kind=ApprovalKind.TOOL_CALL,
                session_id=self.context.session_id,
                task_id=task.id,
                message=f"Task {task.id} wants to run '{action.tool_name}'",
                details={"tool_name": action.tool_name, "args": action.args},
            )
        )
        if result.decision == ApprovalDecision.ABORT:
            raise TaskCancelledError(f"User aborted at tool approval for task {task.id}")
        if not result.proceeds:
            reason = f": {result.reason}" if result.reason else ""
            raise ToolExecutionError(
                action.tool_name, f"Tool call '{action.tool_name}' rejected by user{reason}"
            )
        if result.decision == ApprovalDecision.MODIFY and "args" in result.modifications:
            return dict(result.modifications["args"])
        return action.args

    async def _reflect(self, task: SubTask, attempt: int) -> str:
        """Turn the latest failure into a note for the next attempt."""
        fallback = f"Attempt {attempt} failed with error: {task.error}. Try a different approach."
        if self.reflector is None:
            return fallback
        try:
            reflection = await self.reflector.reflect(task)
        except Exception as e:
            logger.warning(f"Reflection failed for task {task.id}: {e}")
            return fallback
        return reflection.as_note(attempt)


def _failure_message(errors: list[str]) -> str:
    """Final error of a task that used up its attempts, listing every attempt's error."""
    message = f"Task failed after {len(errors)} attempts. Last error: {errors[-1]}"
    if len(errors) > 1:
        earlier = "\n".join(f"  Attempt {n}: {error}" for n, error in enumerate(errors[:-1], 1))
        message += f"\nEarlier errors:\n{earlier}"
    return message
