"""
Workflow Engine - interprets declarative multi-step automations.

Executes a WorkflowDefinition stage by stage against a mutable context:
- Tool stages call the shared ToolRegistry and may push a compensating
  rollback action
- Parallel, sequence, conditional, loop and error-handler stages compose
  other stages
- Transform, merge and split stages reshape data already in the context

Stage failures propagate unless the stage declares ``onError: continue`` or
``onError: retry``. On an unrecoverable failure the rollback stack is
unwound LIFO, best-effort, with a per-step report kept on the execution.
Pause and cancellation are honoured at stage boundaries.

Example:
    engine = WorkflowEngine(tools)
    result = await engine.execute_workflow(load_workflow("publish.yaml"), {"source": "s3://x"})
"""

import asyncio
import inspect
import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from conductor.config import WorkflowEngineConfig
from conductor.errors import (
    ExpressionError,
    StageExecutionError,
    TemplateNotFoundError,
    WorkflowCancelledError,
)
from conductor.observability import reset_trace_context, set_trace_context
from conductor.runtime.event_bus import EventBus, EventType
from conductor.tools.registry import ToolRegistry
from conductor.workflow.definition import (
    ConditionalStage,
    ErrorHandlerStage,
    ExecutionState,
    LoopStage,
    MergeStage,
    MergeType,
    OnError,
    ParallelStage,
    RollbackEntry,
    RollbackStepResult,
    SequenceStage,
    SplitStage,
    SplitType,
    StageBase,
    ToolStage,
    TransformStage,
    TransformType,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowResult,
    validate_workflow,
)
from conductor.workflow.resolve import resolve_params, resolve_value
from conductor.workflow.safe_eval import safe_eval

logger = logging.getLogger(__name__)


@dataclass
class WorkflowTemplate:
    """A definition registered under a name for reuse."""

    name: str
    definition: WorkflowDefinition
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def version(self) -> str:
        return self.definition.version


@dataclass
class WorkflowMetrics:
    total_workflows: int = 0
    executed_workflows: int = 0
    successful_workflows: int = 0
    failed_workflows: int = 0
    cancelled_workflows: int = 0
    average_execution_time: float = 0.0  # seconds, over successful runs

    def record_success(self, duration: float) -> None:
        self.executed_workflows += 1
        self.successful_workflows += 1
        total = self.average_execution_time * (self.successful_workflows - 1)
        self.average_execution_time = (total + duration) / self.successful_workflows


class WorkflowEngine:
    """Runs workflow definitions against the shared tool registry."""

    def __init__(
        self,
        tools: ToolRegistry,
        config: WorkflowEngineConfig | None = None,
        bus: EventBus | None = None,
    ):
        self.tools = tools
        self.config = config or WorkflowEngineConfig()
        self.bus = bus or EventBus(session_id="workflow-engine")
        self.metrics = WorkflowMetrics()

        self._templates: dict[str, WorkflowTemplate] = {}
        self._functions: dict[str, Callable[..., Any]] = {}
        self._executions: dict[str, WorkflowExecution] = {}
        self._resume_gates: dict[str, asyncio.Event] = {}
        self._cancel_requests: set[str] = set()
        self._tool_slots = asyncio.Semaphore(self.config.max_parallel_execution)

        self._handlers = {
            ToolStage: self._run_tool,
            ParallelStage: self._run_parallel,
            SequenceStage: self._run_sequence,
            ConditionalStage: self._run_conditional,
            LoopStage: self._run_loop,
            ErrorHandlerStage: self._run_error_handler,
            TransformStage: self._run_transform,
            MergeStage: self._run_merge,
            SplitStage: self._run_split,
        }

    # --- registration ---

    def register_template(self, name: str, definition: WorkflowDefinition | Mapping) -> None:
        """Register a reusable workflow; it can then be executed by name."""
        self._templates[name] = WorkflowTemplate(name=name, definition=validate_workflow(definition))
        logger.info(f"Registered workflow template '{name}'")

    def register_function(self, name: str, fn: Callable[..., Any]) -> None:
        """
        Register a function for ``custom`` transform and merge stages.

        Transform functions are called as ``fn(input, context)``, merge
        functions as ``fn(inputs)``. Either may be async.
        """
        self._functions[name] = fn

    def list_templates(self) -> list[str]:
        return list(self._templates)

    # --- execution ---

    def _resolve_definition(self, workflow: str | Mapping | WorkflowDefinition) -> WorkflowDefinition:
        if isinstance(workflow, str):
            template = self._templates.get(workflow)
            if template is None:
                raise TemplateNotFoundError(f"Template not found: {workflow}")
            return template.definition
        return validate_workflow(workflow)

    async def execute_workflow(
        self,
        workflow: str | Mapping | WorkflowDefinition,
        context: Mapping[str, Any] | None = None,
        execution_id: str | None = None,
    ) -> WorkflowResult:
        """
        Execute a workflow.

        Args:
            workflow: A definition, a raw mapping to validate, or a template name
            context: Initial context values
            execution_id: Id to use for the execution (generated when omitted)

        Returns:
            WorkflowResult with one result per top-level stage

        Raises:
            WorkflowValidationError: The definition is malformed
            TemplateNotFoundError: No template has the given name
            StageExecutionError: A stage failed without a recovering policy
            WorkflowCancelledError: cancel_execution() was called
        """
        definition = self._resolve_definition(workflow)
        execution_id = execution_id or uuid.uuid4().hex
        if execution_id in self._executions:
            raise ValueError(f"Execution id already in use: {execution_id}")

        execution = WorkflowExecution(id=execution_id, workflow=definition, context=dict(context or {}))
        self._executions[execution_id] = execution
        gate = asyncio.Event()
        gate.set()
        self._resume_gates[execution_id] = gate
        self.metrics.total_workflows += 1

        token = set_trace_context(execution_id=execution_id)
        try:
            return await self._run_execution(definition, execution)
        finally:
            self._resume_gates.pop(execution_id, None)
            self._cancel_requests.discard(execution_id)
            reset_trace_context(token)

    async def _run_execution(
        self, definition: WorkflowDefinition, execution: WorkflowExecution
    ) -> WorkflowResult:
        execution_id = execution.id
        execution.state = ExecutionState.RUNNING
        execution.started_at = datetime.now()
        await self.bus.emit(
            EventType.WORKFLOW_STARTED, execution_id=execution_id, workflow=definition.name
        )
        logger.info(f"Workflow '{definition.name}' started", extra={"event": "workflow_started"})

        try:
            results = await self._execute_stages(definition.stages, execution, top_level=True)
        except WorkflowCancelledError:
            execution.state = ExecutionState.CANCELLED
            execution.ended_at = datetime.now()
            self.metrics.cancelled_workflows += 1
            await self.bus.emit(EventType.WORKFLOW_CANCELLED, execution_id=execution_id)
            logger.info(f"Workflow '{definition.name}' cancelled")
            raise
        except Exception as e:
            execution.state = ExecutionState.FAILED
            execution.ended_at = datetime.now()
            execution.error = str(e)
            self.metrics.executed_workflows += 1
            self.metrics.failed_workflows += 1
            await self.bus.emit(EventType.WORKFLOW_FAILED, execution_id=execution_id, error=str(e))
            logger.error(
                f"Workflow '{definition.name}' failed: {e}", extra={"event": "workflow_failed"}
            )
            if self.config.enable_rollback and execution.rollback_stack:
                await self._rollback(execution)
            raise

        execution.state = ExecutionState.COMPLETED
        execution.ended_at = datetime.now()
        execution.results = results
        self.metrics.record_success(execution.duration)
        await self.bus.emit(
            EventType.WORKFLOW_COMPLETED,
            execution_id=execution_id,
            duration=execution.duration,
            results=results,
        )
        logger.info(
            f"Workflow '{definition.name}' completed in {execution.duration:.3f}s",
            extra={"event": "workflow_completed"},
        )
        return WorkflowResult(
            execution_id=execution_id, results=results, duration=execution.duration
        )

    async def _checkpoint(self, execution: WorkflowExecution) -> None:
        """Stage boundary: honour cancellation and block while paused."""
        if execution.id in self._cancel_requests:
            raise WorkflowCancelledError(f"Execution {execution.id} cancelled")
        gate = self._resume_gates.get(execution.id)
        if gate is not None and not gate.is_set():
            logger.info(f"Execution {execution.id} paused at stage boundary")
            await gate.wait()
            if execution.id in self._cancel_requests:
                raise WorkflowCancelledError(f"Execution {execution.id} cancelled")

    async def _execute_stages(
        self,
        stages: list[StageBase],
        execution: WorkflowExecution,
        top_level: bool = False,
    ) -> list[Any]:
        results: list[Any] = []
        for index, stage in enumerate(stages):
            await self._checkpoint(execution)
            if top_level:
                execution.current_stage_index = index
            stage_type = stage.stage_type.value
            await self.bus.emit(
                EventType.STAGE_STARTED, execution_id=execution.id, stage=index, type=stage_type
            )

            try:
                result = await self._execute_stage(stage, execution)
            except WorkflowCancelledError:
                raise
            except Exception as e:
                await self.bus.emit(
                    EventType.STAGE_FAILED, execution_id=execution.id, stage=index, error=str(e)
                )
                if stage.on_error == OnError.CONTINUE:
                    logger.warning(f"Stage {index} ({stage_type}) failed, continuing: {e}")
                    results.append({"error": str(e)})
                    continue
                if stage.on_error == OnError.RETRY and self.config.enable_retry:
                    try:
                        result = await self._retry_stage(stage, execution)
                    except WorkflowCancelledError:
                        raise
                    except Exception as retry_error:
                        raise self._stage_error(retry_error, index, stage) from retry_error
                else:
                    raise self._stage_error(e, index, stage) from e

            results.append(result)
            if stage.output:
                execution.context[stage.output] = result
            await self.bus.emit(
                EventType.STAGE_COMPLETED, execution_id=execution.id, stage=index, result=result
            )
        return results

    @staticmethod
    def _stage_error(error: Exception, index: int, stage: StageBase) -> StageExecutionError:
        if isinstance(error, StageExecutionError):
            return error
        stage_type = stage.stage_type.value
        return StageExecutionError(
            f"Stage {index} ({stage_type}) failed: {error}", stage_index=index, stage_type=stage_type
        )

    async def _execute_stage(self, stage: StageBase, execution: WorkflowExecution) -> Any:
        handler = self._handlers.get(type(stage))
        if handler is None:
            raise StageExecutionError(f"Unknown stage type: {type(stage).__name__}")
        return await handler(stage, execution)

    async def _retry_stage(self, stage: StageBase, execution: WorkflowExecution) -> Any:
        max_attempts = stage.retry or self.config.retry_attempts
        last_error: Exception | None = None
        for attempt in range(1, max_attempts + 1):
            await self.bus.emit(
                EventType.STAGE_RETRY,
                execution_id=execution.id,
                attempt=attempt,
                max_attempts=max_attempts,
            )
            try:
                return await self._execute_stage(stage, execution)
            except WorkflowCancelledError:
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Retry {attempt}/{max_attempts} of {stage.stage_type} stage failed: {e}",
                    extra={"attempt": attempt},
                )
                if attempt < max_attempts:
                    await asyncio.sleep(min(1.0 * 2**attempt, self.config.max_backoff))
        raise last_error

    # --- stage handlers ---

    async def _run_tool(self, stage: ToolStage, execution: WorkflowExecution) -> Any:
        params = resolve_params(stage.params, execution.context)
        async with self._tool_slots:
            result = await self.tools.execute(
                stage.tool, params, timeout=stage.timeout or self.config.default_timeout
            )
        if stage.rollback is not None:
            execution.rollback_stack.append(
                RollbackEntry(
                    tool=stage.rollback.tool,
                    params=stage.rollback.params,
                    original_tool=stage.tool,
                )
            )
        return result

    async def _run_parallel(self, stage: ParallelStage, execution: WorkflowExecution) -> list[Any]:
        async def run_child(child: StageBase) -> tuple[bool, Any]:
            try:
                result = await self._execute_stage(child, execution)
            except WorkflowCancelledError:
                raise
            except Exception as e:
                return False, {"error": str(e), "stage": child.stage_type.value}
            if child.output:
                execution.context[child.output] = result
            return True, result

        outcomes = await asyncio.gather(*(run_child(child) for child in stage.parallel))
        errors = [value["error"] for ok, value in outcomes if not ok]
        if errors and not any(child.on_error == OnError.CONTINUE for child in stage.parallel):
            raise StageExecutionError(f"Parallel execution failed: {', '.join(errors)}")
        return [value for _, value in outcomes]

    async def _run_sequence(self, stage: SequenceStage, execution: WorkflowExecution) -> list[Any]:
        return await self._execute_stages(stage.sequence, execution)

    async def _run_conditional(self, stage: ConditionalStage, execution: WorkflowExecution) -> Any:
        spec = stage.conditional
        branch = spec.then if self._evaluate_condition(spec.condition, execution.context) else spec.otherwise
        if not branch:
            return None
        return await self._execute_stages(branch, execution)

    async def _run_loop(self, stage: LoopStage, execution: WorkflowExecution) -> list[Any]:
        spec = stage.loop
        context = execution.context
        limit = spec.max_iterations
        results: list[Any] = []

        if spec.for_each is not None:
            items = resolve_value(spec.for_each, context)
            if not isinstance(items, list):
                raise StageExecutionError("forEach requires an array")
            if len(items) > limit:
                raise StageExecutionError(f"Loop exceeded maximum iterations ({limit})")
            for index, item in enumerate(items):
                context[spec.item_var] = item
                context["index"] = index
                results.append(await self._execute_stages(spec.do, execution))

        elif spec.while_ is not None:
            iteration = 0
            while self._evaluate_condition(spec.while_, context):
                if iteration >= limit:
                    raise StageExecutionError(f"Loop exceeded maximum iterations ({limit})")
                results.append(await self._execute_stages(spec.do, execution))
                iteration += 1

        else:
            count = resolve_value(spec.count, context)
            if isinstance(count, bool) or not isinstance(count, int) or count < 0:
                raise StageExecutionError(f"count requires a non-negative integer, got {count!r}")
            if count > limit:
                raise StageExecutionError(f"Loop exceeded maximum iterations ({limit})")
            for index in range(count):
                context["index"] = index
                results.append(await self._execute_stages(spec.do, execution))

        return results

    async def _run_error_handler(self, stage: ErrorHandlerStage, execution: WorkflowExecution) -> Any:
        spec = stage.error_handler
        try:
            return await self._execute_stages(spec.try_, execution)
        except WorkflowCancelledError:
            raise
        except Exception as e:
            execution.context["error"] = str(e)
            if spec.catch:
                return await self._execute_stages(spec.catch, execution)
            raise
        finally:
            if spec.finally_:
                await self._execute_stages(spec.finally_, execution)

    async def _run_transform(self, stage: TransformStage, execution: WorkflowExecution) -> Any:
        spec = stage.transform
        data = resolve_value(spec.input, execution.context)

        if spec.type == TransformType.CUSTOM:
            return await self._call_custom(
                spec.function, {"input": data, "context": execution.context}, data, execution.context
            )
        if not isinstance(data, list):
            raise StageExecutionError(f"{spec.type} transform requires array input")

        if spec.type == TransformType.MAP:
            return [self._apply_expression(spec.expression, {"item": item}) for item in data]
        if spec.type == TransformType.FILTER:
            return [item for item in data if self._evaluate_condition(spec.condition, {"item": item})]

        acc = spec.initial
        for item in data:
            acc = self._apply_expression(spec.expression, {"acc": acc, "item": item})
        return acc

    async def _run_merge(self, stage: MergeStage, execution: WorkflowExecution) -> Any:
        spec = stage.merge
        inputs = [resolve_value(value, execution.context) for value in spec.inputs]

        if spec.type == MergeType.CONCAT:
            merged: list[Any] = []
            for value in inputs:
                if isinstance(value, list):
                    merged.extend(value)
                else:
                    merged.append(value)
            return merged
        if spec.type == MergeType.OBJECT:
            combined: dict[str, Any] = {}
            for value in inputs:
                if value is None:
                    continue
                if not isinstance(value, Mapping):
                    raise StageExecutionError(f"object merge requires mappings, got {type(value).__name__}")
                combined.update(value)
            return combined
        return await self._call_custom(spec.function, {"inputs": inputs}, inputs)

    async def _run_split(self, stage: SplitStage, execution: WorkflowExecution) -> Any:
        spec = stage.split
        data = resolve_value(spec.input, execution.context)
        if not isinstance(data, list):
            raise StageExecutionError(f"{spec.type} split requires array input")

        if spec.type == SplitType.CHUNK:
            return [data[i : i + spec.size] for i in range(0, len(data), spec.size)]

        matching, non_matching = [], []
        for item in data:
            if self._evaluate_condition(spec.condition, {"item": item}):
                matching.append(item)
            else:
                non_matching.append(item)
        return {"matching": matching, "non_matching": non_matching}

    # --- expressions ---

    def _evaluate_condition(self, condition: Any, variables: Mapping[str, Any]) -> bool:
        """``$path`` truthiness, or a safe expression; evaluation errors count as False."""
        if not isinstance(condition, str):
            return bool(condition)
        text = condition.strip()
        if text.startswith("$"):
            return bool(resolve_value(text, variables))
        try:
            return bool(safe_eval(text, {**variables, "context": variables}))
        except ExpressionError as e:
            logger.warning(f"Condition evaluation failed: {text} ({e})")
            logger.warning(f"Available context keys: {list(variables.keys())}")
            return False

    def _apply_expression(self, expression: str, variables: Mapping[str, Any]) -> Any:
        try:
            return safe_eval(expression, variables)
        except ExpressionError as e:
            logger.warning(f"Expression evaluation failed: {expression} ({e})")
            return None

    async def _call_custom(self, function: str, variables: Mapping[str, Any], *args: Any) -> Any:
        fn = self._functions.get(function)
        if fn is None:
            return safe_eval(function, variables)
        result = fn(*args)
        if inspect.isawaitable(result):
            result = await result
        return result

    # --- rollback ---

    async def _rollback(self, execution: WorkflowExecution) -> list[RollbackStepResult]:
        """Unwind the rollback stack LIFO; a failing step never stops the rest."""
        execution.state = ExecutionState.ROLLED_BACK
        await self.bus.emit(
            EventType.ROLLBACK_STARTED,
            execution_id=execution.id,
            steps=len(execution.rollback_stack),
        )

        report: list[RollbackStepResult] = []
        while execution.rollback_stack:
            entry = execution.rollback_stack.pop()
            params = resolve_params(entry.params, execution.context)
            try:
                await self.tools.execute(entry.tool, params, timeout=self.config.default_timeout)
            except Exception as e:
                logger.warning(f"Rollback step {entry.tool} (for {entry.original_tool}) failed: {e}")
                report.append(
                    RollbackStepResult(
                        tool=entry.tool, original_tool=entry.original_tool, success=False, error=str(e)
                    )
                )
                await self.bus.emit(
                    EventType.ROLLBACK_STEP_FAILED,
                    execution_id=execution.id,
                    tool=entry.tool,
                    error=str(e),
                )
                continue
            report.append(
                RollbackStepResult(tool=entry.tool, original_tool=entry.original_tool, success=True)
            )
            await self.bus.emit(
                EventType.ROLLBACK_STEP_SUCCEEDED, execution_id=execution.id, tool=entry.tool
            )

        execution.rollback_report.extend(report)
        failed = sum(1 for step in report if not step.success)
        logger.info(f"Rollback of {execution.id} finished: {len(report) - failed} ok, {failed} failed")
        return report

    # --- control & introspection ---

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        return self._executions.get(execution_id)

    def pause_execution(self, execution_id: str) -> bool:
        """Pause a running execution at its next stage boundary."""
        execution = self._executions.get(execution_id)
        gate = self._resume_gates.get(execution_id)
        if execution is None or gate is None or execution.state != ExecutionState.RUNNING:
            return False
        execution.state = ExecutionState.PAUSED
        gate.clear()
        return True

    def resume_execution(self, execution_id: str) -> bool:
        execution = self._executions.get(execution_id)
        gate = self._resume_gates.get(execution_id)
        if execution is None or gate is None or execution.state != ExecutionState.PAUSED:
            return False
        execution.state = ExecutionState.RUNNING
        gate.set()
        return True

    def cancel_execution(self, execution_id: str) -> bool:
        """Request cancellation; the execution stops at its next stage boundary."""
        execution = self._executions.get(execution_id)
        gate = self._resume_gates.get(execution_id)
        if execution is None or gate is None:
            return False
        if execution.state not in (ExecutionState.RUNNING, ExecutionState.PAUSED):
            return False
        self._cancel_requests.add(execution_id)
        gate.set()
        return True

    def get_metrics(self) -> dict[str, Any]:
        return {
            "total_workflows": self.metrics.total_workflows,
            "executed_workflows": self.metrics.executed_workflows,
            "successful_workflows": self.metrics.successful_workflows,
            "failed_workflows": self.metrics.failed_workflows,
            "cancelled_workflows": self.metrics.cancelled_workflows,
            "average_execution_time": self.metrics.average_execution_time,
            "active_executions": sum(
                1
                for e in self._executions.values()
                if e.state in (ExecutionState.RUNNING, ExecutionState.PAUSED)
            ),
            "templates_count": len(self._templates),
        }
