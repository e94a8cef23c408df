"""Declarative workflow definitions and the engine that runs them."""

from conductor.workflow.definition import (
    ConditionalStage,
    ErrorHandlerStage,
    ExecutionState,
    LoopStage,
    MergeStage,
    OnError,
    ParallelStage,
    RollbackEntry,
    RollbackStepResult,
    SequenceStage,
    SplitStage,
    Stage,
    StageBase,
    StageType,
    ToolStage,
    TransformStage,
    WorkflowDefinition,
    WorkflowExecution,
    WorkflowResult,
    load_workflow,
    parse_stage,
    parse_workflow,
    validate_workflow,
)
from conductor.workflow.engine import WorkflowEngine, WorkflowMetrics, WorkflowTemplate
from conductor.workflow.resolve import resolve_params, resolve_path, resolve_value
from conductor.workflow.safe_eval import safe_eval

__all__ = [
    "ConditionalStage",
    "ErrorHandlerStage",
    "ExecutionState",
    "LoopStage",
    "MergeStage",
    "OnError",
    "ParallelStage",
    "RollbackEntry",
    "RollbackStepResult",
    "SequenceStage",
    "SplitStage",
    "Stage",
    "StageBase",
    "StageType",
    "ToolStage",
    "TransformStage",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowExecution",
    "WorkflowMetrics",
    "WorkflowResult",
    "WorkflowTemplate",
    "load_workflow",
    "parse_stage",
    "parse_workflow",
    "resolve_params",
    "resolve_path",
    "resolve_value",
    "safe_eval",
    "validate_workflow",
]
