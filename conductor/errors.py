"""
Error kinds raised by the orchestration core.

Per-subtask errors never escape the task executor: they are converted into a
terminal ``failed`` status. Workflow stage errors propagate to the caller of
``WorkflowEngine.execute_workflow`` unless the stage declares ``continue`` or
``retry``. Session-level errors (planner, synthesizer, invariant violations)
are surfaced verbatim.
"""


class ConductorError(Exception):
    """Base class for every error raised by conductor."""


# --- Tool execution ---


class AuthorizationError(ConductorError):
    """The calling role is not permitted to use the requested tool."""

    def __init__(self, tool_name: str, role: str | None):
        self.tool_name = tool_name
        self.role = role
        super().__init__(f"Role '{role}' is not authorized to use tool '{tool_name}'")


class ToolNotFoundError(ConductorError):
    """The requested tool is not registered."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool not found: {tool_name}")


class ToolExecutionError(ConductorError):
    """A registered tool raised or timed out."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(message)


# --- Task scheduling ---


class DependencyDeadlock(ConductorError):
    """No task is runnable, none awaits review, and the plan is not resolved."""

    def __init__(self, blocked: dict[int, list[int]]):
        self.blocked = blocked
        listing = ", ".join(
            f"#{task_id} waits on {deps or '[]'}" for task_id, deps in sorted(blocked.items())
        )
        super().__init__(f"Dependency deadlock detected: {listing or 'no pending tasks'}")


class PlanValidationError(ConductorError):
    """Planner output could not be parsed into a valid plan."""


class TaskCancelledError(ConductorError):
    """The session was cancelled by the user or by a cancellation request."""


class RoleConfigurationError(ConductorError):
    """A required role has no registered factory."""


class StateVersionError(ConductorError):
    """A saved session was written by a newer state schema than this version reads."""

    def __init__(self, path: str, found: int, supported: int):
        self.found = found
        self.supported = supported
        super().__init__(
            f"{path} uses state schema version {found}; this version of conductor reads up to {supported}"
        )


# --- Workflows ---


class WorkflowValidationError(ConductorError):
    """A workflow definition is malformed."""


class StageExecutionError(ConductorError):
    """A workflow stage failed."""

    def __init__(self, message: str, stage_index: int | None = None, stage_type: str | None = None):
        self.stage_index = stage_index
        self.stage_type = stage_type
        super().__init__(message)


class WorkflowCancelledError(ConductorError):
    """A workflow execution was cancelled at a stage boundary."""


class TemplateNotFoundError(ConductorError):
    """No workflow template is registered under the given name."""


class ExpressionError(ConductorError):
    """An expression uses a construct outside the safe subset or fails to evaluate."""


class RoleOutputError(ConductorError):
    """A role produced output that could not be parsed into its contract."""

    def __init__(self, role: str, message: str):
        self.role = role
        super().__init__(f"{role}: {message}")
