"""
Conductor - iterative multi-role task orchestration and declarative workflows.

Two engines share one tool registry:
- IterationController plans a request into dependent subtasks, executes them
  with retries and reflection, synthesizes and evaluates an artifact, and
  iterates until the evaluation is perfect or the budget runs out
- WorkflowEngine runs YAML-defined automations with tool, parallel,
  sequence, conditional, loop, error-handler, transform, merge and split
  stages and best-effort rollback
"""

from conductor.config import ConductorConfig, ExecutionMode, WorkflowEngineConfig
from conductor.errors import (
    AuthorizationError,
    ConductorError,
    DependencyDeadlock,
    ExpressionError,
    PlanValidationError,
    RoleConfigurationError,
    RoleOutputError,
    StageExecutionError,
    StateVersionError,
    TaskCancelledError,
    TemplateNotFoundError,
    ToolExecutionError,
    ToolNotFoundError,
    WorkflowCancelledError,
    WorkflowValidationError,
)
from conductor.runtime import ConductorEvent, EventBus, EventType, ManagedService, ServiceGroup
from conductor.tools import ToolRegistry

# tasks before roles and storage: the role and storage modules import task models
from conductor.tasks import (
    ApprovalDecision,
    ApprovalGate,
    ApprovalRequest,
    ApprovalResult,
    AutoApprovalGate,
    CallbackApprovalGate,
    Evaluation,
    IterationController,
    IterationOutcome,
    IterationStatus,
    PlanItem,
    SubTask,
    TaskContext,
    TaskGraph,
    TaskStatus,
    generate_final_report,
)
from conductor.roles import AgentRole, LLMProvider, RoleRegistry, RoleSet
from conductor.storage import KnowledgeStore, TaskContextStore
from conductor.workflow import (
    WorkflowDefinition,
    WorkflowEngine,
    WorkflowResult,
    load_workflow,
    parse_workflow,
)

__version__ = "0.1.0"

__all__ = [
    "AgentRole",
    "ApprovalDecision",
    "ApprovalGate",
    "ApprovalRequest",
    "ApprovalResult",
    "AuthorizationError",
    "AutoApprovalGate",
    "CallbackApprovalGate",
    "ConductorConfig",
    "ConductorError",
    "ConductorEvent",
    "DependencyDeadlock",
    "Evaluation",
    "EventBus",
    "EventType",
    "ExecutionMode",
    "ExpressionError",
    "IterationController",
    "IterationOutcome",
    "IterationStatus",
    "KnowledgeStore",
    "LLMProvider",
    "ManagedService",
    "PlanItem",
    "PlanValidationError",
    "RoleConfigurationError",
    "RoleOutputError",
    "RoleRegistry",
    "RoleSet",
    "ServiceGroup",
    "StageExecutionError",
    "StateVersionError",
    "SubTask",
    "TaskCancelledError",
    "TaskContext",
    "TaskContextStore",
    "TaskGraph",
    "TaskStatus",
    "TemplateNotFoundError",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolRegistry",
    "WorkflowCancelledError",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowEngineConfig",
    "WorkflowResult",
    "WorkflowValidationError",
    "generate_final_report",
    "load_workflow",
    "parse_workflow",
]
