"""Iterative task orchestration: plans, scheduling, retries, reviews and iterations."""

from conductor.tasks.plan import PlanItem, SubTask, TaskGraph, TaskStatus
from conductor.tasks.context import (
    Evaluation,
    IterationRecord,
    ProgressEntry,
    TaskContext,
)
from conductor.tasks.hitl import (
    ApprovalDecision,
    ApprovalGate,
    ApprovalKind,
    ApprovalRequest,
    ApprovalResult,
    AutoApprovalGate,
    CallbackApprovalGate,
)
from conductor.tasks.executor import MAX_ATTEMPTS, RetryReflectionExecutor
from conductor.tasks.review import ReviewCoordinator
from conductor.tasks.scheduler import TaskScheduler
from conductor.tasks.session_tools import (
    DELEGATE_TOOL,
    REQUEST_REVIEW_TOOL,
    SessionToolbox,
    get_session_toolbox,
    register_session_tools,
    unregister_session_tools,
)
from conductor.tasks.report import generate_final_report
from conductor.tasks.iteration import IterationController, IterationOutcome, IterationStatus

__all__ = [
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalKind",
    "ApprovalRequest",
    "ApprovalResult",
    "AutoApprovalGate",
    "CallbackApprovalGate",
    "DELEGATE_TOOL",
    "Evaluation",
    "IterationController",
    "IterationOutcome",
    "IterationRecord",
    "IterationStatus",
    "MAX_ATTEMPTS",
    "PlanItem",
    "ProgressEntry",
    "REQUEST_REVIEW_TOOL",
    "RetryReflectionExecutor",
    "ReviewCoordinator",
    "SessionToolbox",
    "SubTask",
    "TaskContext",
    "TaskGraph",
    "TaskScheduler",
    "TaskStatus",
    "generate_final_report",
    "get_session_toolbox",
    "register_session_tools",
    "unregister_session_tools",
]
