"""
Iteration Controller - plan → execute → synthesize → evaluate → critique.

One controller owns one TaskContext for the duration of ``run()``. Each
iteration:
1. Requests a plan when nothing is left to run, and routes it through plan
   approval (skipped in auto mode)
2. Drives the plan with the TaskScheduler
3. Synthesizes an artifact, streaming chunks onto the session bus
4. Runs N evaluators in parallel and aggregates their critiques
5. Archives the iteration and decides whether to continue

The loop ends on a perfect score, on exhausting the iteration budget, when
the user declines to continue, or on cancellation.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum

from pydantic import ValidationError

from conductor.config import ConductorConfig
from conductor.errors import PlanValidationError, RoleConfigurationError, TaskCancelledError
from conductor.observability import reset_trace_context, set_trace_context
from conductor.roles.registry import RoleSet
from conductor.runtime.event_bus import EventBus, EventType
from conductor.runtime.lifecycle import ManagedService, ServiceGroup
from conductor.storage.context_store import TaskContextStore
from conductor.storage.knowledge_store import KnowledgeStore
from conductor.tasks.context import Evaluation, TaskContext
from conductor.tasks.executor import RetryReflectionExecutor
from conductor.tasks.hitl import ApprovalDecision, ApprovalGate, ApprovalKind, ApprovalRequest
from conductor.tasks.plan import PlanItem, SubTask
from conductor.tasks.report import generate_final_report
from conductor.tasks.review import ReviewCoordinator
from conductor.tasks.scheduler import TaskScheduler
from conductor.tasks.session_tools import register_session_tools, unregister_session_tools
from conductor.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

PERFECT_SCORE = 10


class IterationStatus(StrEnum):
    """Why the iteration loop stopped."""

    SUCCEEDED = "succeeded"  # evaluation reached a perfect score
    EXHAUSTED = "exhausted"  # iteration budget used up
    DECLINED = "declined"  # user chose not to continue
    CANCELLED = "cancelled"  # plan approval cancelled or cancel() requested


@dataclass
class IterationOutcome:
    """Result of IterationController.run()."""

    status: IterationStatus
    context: TaskContext
    report: str

    @property
    def iterations(self) -> int:
        return len(self.context.history)

    @property
    def final_score(self) -> int | None:
        latest = self.context.latest_iteration()
        return latest.evaluation.score if latest else None

    @property
    def succeeded(self) -> bool:
        return self.status == IterationStatus.SUCCEEDED


class IterationController:
    """
    Drives one user request through iterations until it is good enough.

    Example:
        roles = registry.build(evaluator_count=config.evaluator_count)
        controller = IterationController(roles, tools, config=ConductorConfig(auto_mode=True))
        outcome = await controller.run("Write a CLI that converts CSV to JSON")
        print(outcome.report)
    """

    def __init__(
        self,
        roles: RoleSet,
        tools: ToolRegistry,
        config: ConductorConfig | None = None,
        approval_gate: ApprovalGate | None = None,
        store: TaskContextStore | None = None,
        services: list[ManagedService] | None = None,
        knowledge: KnowledgeStore | None = None,
    ):
        self.roles = roles
        self.tools = tools
        self.config = config or ConductorConfig()
        if not self.config.auto_mode and approval_gate is None:
            raise RoleConfigurationError("An approval gate is required unless auto_mode is enabled")
        self.approval_gate = approval_gate
        if store is None and self.config.enable_persistence:
            store = TaskContextStore(self.config.storage_path)
        self.store = store
        if knowledge is None and self.config.enable_long_term_memory:
            knowledge = KnowledgeStore(self.config.knowledge_path)
        self.knowledge = knowledge
        self._services = list(services or [])
        self._cancel_event = asyncio.Event()

        self.context: TaskContext | None = None
        self.bus: EventBus | None = None
        self.review: ReviewCoordinator | None = None

    def cancel(self) -> None:
        """Request cooperative cancellation; honoured before the next task attempt or iteration."""
        logger.info("Cancellation requested")
        self._cancel_event.set()

    async def submit_review(self, task_id: int, approved: bool, feedback: str) -> bool:
        """Deliver external review feedback for a task waiting for review."""
        if self.review is None:
            return False
        return await self.review.submit_feedback(task_id, approved, feedback)

    async def run(self, request: str | TaskContext, project_context: str = "") -> IterationOutcome:
        """
        Run the iteration loop.

        Args:
            request: A new user request, or a TaskContext reloaded from storage
            project_context: Extra background for the planner (new requests only)

        Returns:
            IterationOutcome with the terminal status and the Markdown report

        Raises:
            DependencyDeadlock, PlanValidationError and other session-level
            errors propagate unchanged; saved state is kept for inspection.
        """
        resumed = isinstance(request, TaskContext)
        if resumed:
            context = request
            recovered = context.recover_interrupted()
            if recovered:
                logger.info(f"Resuming session {context.session_id}; tasks {recovered} reset to pending")
        else:
            context = TaskContext(original_request=request, project_context=project_context)

        self.context = context
        self.bus = EventBus(session_id=context.session_id)
        self.review = ReviewCoordinator(context, self.bus, self.roles.reviewer)
        knowledge_services = [self.knowledge] if self.knowledge is not None else []
        services = ServiceGroup([*knowledge_services, *self._services, self.review])
        register_session_tools(self.tools, context, self.bus)
        trace_token = set_trace_context(session_id=context.session_id)

        executor = RetryReflectionExecutor(
            context,
            self.roles.worker,
            self.tools,
            self.bus,
            reflector=self.roles.reflector if self.config.enable_reflection else None,
            approval_gate=self.approval_gate,
            auto_mode=self.config.auto_mode,
            max_attempts=self.config.max_attempts_per_task,
            cancel_event=self._cancel_event,
        )
        scheduler = TaskScheduler(
            context,
            executor,
            mode=self.config.execution_mode,
            review=self.review,
            review_poll_interval=self.config.review_poll_interval,
            on_task_done=self._on_task_done,
            cancel_event=self._cancel_event,
        )

        try:
            async with services:
                if not resumed:
                    self._recall_knowledge(context)
                try:
                    status = await self._loop(context, scheduler)
                except TaskCancelledError as e:
                    logger.info(f"Session {context.session_id} cancelled: {e}")
                    status = IterationStatus.CANCELLED
                if status != IterationStatus.CANCELLED:
                    await self._extract_knowledge(context)
            if self.store is not None:
                await self.store.clear(context.session_id)
        finally:
            unregister_session_tools(self.tools, context.session_id)
            self.bus.close()
            self._cancel_event.clear()
            reset_trace_context(trace_token)

        logger.info(
            f"Session {context.session_id} finished: {status} after {len(context.history)} iteration(s)",
            extra={"event": "session_finished"},
        )
        return IterationOutcome(status=status, context=context, report=generate_final_report(context))

    async def _loop(self, context: TaskContext, scheduler: TaskScheduler) -> IterationStatus:
        while True:
            if self._cancel_event.is_set():
                raise TaskCancelledError("Cancelled before starting a new iteration")

            iteration = context.current_iteration
            set_trace_context(iteration=iteration)
            await self.bus.emit(EventType.ITERATION_STARTED, iteration=iteration)

            if not context.graph.has_active():
                await self._plan(context)

            await scheduler.run()

            artifact = await self.roles.synthesizer.synthesize(context, on_chunk=self._emit_chunk)
            evaluation = await self._evaluate(artifact, context)

            context.archive_iteration(artifact, evaluation)
            await self._save()
            await self.bus.emit(
                EventType.ITERATION_COMPLETED,
                iteration=iteration,
                score=evaluation.score,
                suggestions=evaluation.suggestions,
            )
            logger.info(
                f"Iteration {iteration} scored {evaluation.score}/10",
                extra={"event": "iteration_completed"},
            )

            if evaluation.score >= PERFECT_SCORE:
                return IterationStatus.SUCCEEDED
            if iteration >= self.config.max_iterations:
                return IterationStatus.EXHAUSTED
            if not self.config.auto_mode and not await self._confirm_continue(context, evaluation):
                return IterationStatus.DECLINED

    async def _plan(self, context: TaskContext) -> None:
        items = await self.roles.planner.plan(context)
        if not items:
            raise PlanValidationError("Planner returned an empty plan")
        items = await self._approve_plan(context, items)
        context.set_plan(items)
        await self._save()
        await self.bus.emit(
            EventType.PLAN_UPDATED,
            iteration=context.current_iteration,
            plan=[item.model_dump() for item in items],
        )

    async def _approve_plan(self, context: TaskContext, items: list[PlanItem]) -> list[PlanItem]:
        if self.config.auto_mode:
            return items

        result = await self.approval_gate.request(
            ApprovalRequest(
                kind=ApprovalKind.PLAN,
                session_id=context.session_id,
                message=f"Approve the plan for iteration {context.current_iteration}",
                details={"plan": [item.model_dump() for item in items]},
            )
        )
        if not result.proceeds:
            raise TaskCancelledError(f"Plan was not approved: {result.reason or result.decision}")
        if result.decision == ApprovalDecision.MODIFY and "plan" in result.modifications:
            try:
                edited = [PlanItem.model_validate(raw) for raw in result.modifications["plan"]]
            except ValidationError as e:
                raise PlanValidationError(f"Edited plan is invalid: {e}") from e
            if not edited:
                raise PlanValidationError("Edited plan is empty")
            return edited
        return items

    async def _evaluate(self, artifact: str, context: TaskContext) -> Evaluation:
        evaluations = await asyncio.gather(
            *(evaluator.evaluate(artifact, context) for evaluator in self.roles.evaluators)
        )
        return await self.roles.aggregator.aggregate(list(evaluations), context)

    async def _confirm_continue(self, context: TaskContext, evaluation: Evaluation) -> bool:
        result = await self.approval_gate.request(
            ApprovalRequest(
                kind=ApprovalKind.CONTINUE,
                session_id=context.session_id,
                message=f"Score {evaluation.score}/10. Continue with another iteration?",
                details=evaluation.model_dump(),
            )
        )
        if result.decision == ApprovalDecision.ABORT:
            raise TaskCancelledError("User aborted after evaluation")
        return result.proceeds

    async def _emit_chunk(self, chunk: str) -> None:
        await self.bus.emit(EventType.ARTIFACT_CHUNK, chunk=chunk)

    async def _on_task_done(self, task: SubTask) -> None:
        await self._save()

    async def _save(self) -> None:
        if self.store is not None and self.context is not None:
            await self.store.save(self.context)

    def _recall_knowledge(self, context: TaskContext) -> None:
        if self.knowledge is None:
            return
        relevant = self.knowledge.format_relevant(context.original_request)
        if relevant:
            context.add_relevant_knowledge(relevant)
            logger.info("Added relevant knowledge to the project context")

    async def _extract_knowledge(self, context: TaskContext) -> None:
        extractor = self.roles.knowledge_extractor
        if self.knowledge is None or extractor is None or not context.history:
            return
        try:
            lessons = await extractor.extract(context)
            added = await self.knowledge.add(lessons)
        except Exception as e:
            logger.warning(f"Knowledge extraction failed for session {context.session_id}: {e}")
            return
        logger.info(f"Extracted {added} new knowledge entries from session {context.session_id}")
