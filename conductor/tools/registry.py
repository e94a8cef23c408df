"""Tool registration and execution for workers and workflows."""

import asyncio
import contextvars
import importlib.util
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.errors import AuthorizationError, ToolExecutionError, ToolNotFoundError

logger = logging.getLogger(__name__)

# Per-invocation context (session_id, task_id). Each asyncio task gets its own
# copy, so concurrently executing subtasks never see each other's values.
_execution_context: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar(
    "_execution_context", default=None
)


@dataclass
class Tool:
    """Description of a tool."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class RegisteredTool:
    """A tool with its executor function and capability flags."""

    tool: Tool
    executor: Callable[[dict], Any]
    roles: frozenset[str] | None = None  # None means any role may call it
    requires_approval: bool = False  # destructive capability, gated unless auto mode
    submits_for_review: bool = False  # success suspends the task until review


class ToolRegistry:
    """
    Registry of callable tools; the single ToolExecutor used by task workers
    and workflow stages.

    Example:
        registry = ToolRegistry()
        registry.register_function(write_file, roles={"worker"})
        registry.register("shell.run", run_shell, requires_approval=True)

        result = await registry.execute("write_file", {"path": "a.txt", "content": "hi"},
                                        role="worker")
    """

    # Framework-provided values auto-injected into tools that declare them.
    CONTEXT_PARAMS = frozenset({"session_id", "task_id"})

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        executor: Callable[[dict], Any],
        description: str = "",
        parameters: dict[str, Any] | None = None,
        roles: set[str] | frozenset[str] | None = None,
        requires_approval: bool = False,
        submits_for_review: bool = False,
    ) -> None:
        """
        Register a single tool with its executor.

        Args:
            name: Tool name
            executor: Callable taking the argument dict; may be sync or async
            description: Human-readable description
            parameters: JSON-schema style parameter description
            roles: Roles allowed to call the tool (None = unrestricted)
            requires_approval: Needs human approval before running outside auto mode
            submits_for_review: A successful call puts the calling task up for review
        """
        if name in self._tools:
            logger.warning(f"Tool '{name}' re-registered, replacing previous executor")
        self._tools[name] = RegisteredTool(
            tool=Tool(name=name, description=description, parameters=parameters or {}),
            executor=executor,
            roles=frozenset(roles) if roles is not None else None,
            requires_approval=requires_approval,
            submits_for_review=submits_for_review,
        )

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
        **flags: Any,
    ) -> None:
        """
        Register a function as a tool, deriving the parameter schema from its signature.

        Parameters named in CONTEXT_PARAMS are filled from the execution context
        and left out of the schema.
        """
        tool_name = name or func.__name__
        tool_desc = description or func.__doc__ or f"Execute {tool_name}"

        sig = inspect.signature(func)
        properties: dict[str, Any] = {}
        required: list[str] = []
        context_params: set[str] = set()

        for param_name, param in sig.parameters.items():
            if param_name in ("self", "cls"):
                continue
            if param_name in self.CONTEXT_PARAMS:
                context_params.add(param_name)
                continue

            param_type = "string"
            if param.annotation is int:
                param_type = "integer"
            elif param.annotation is float:
                param_type = "number"
            elif param.annotation is bool:
                param_type = "boolean"
            elif param.annotation is dict:
                param_type = "object"
            elif param.annotation is list:
                param_type = "array"
            properties[param_name] = {"type": param_type}

            if param.default is inspect.Parameter.empty:
                required.append(param_name)

        def executor(inputs: dict) -> Any:
            injected = {k: v for k, v in self.current_context().items() if k in context_params}
            return func(**{**inputs, **injected})

        self.register(
            tool_name,
            executor,
            description=tool_desc.strip(),
            parameters={"type": "object", "properties": properties, "required": required},
            **flags,
        )

    def discover_from_module(self, module_path: Path) -> int:
        """
        Load tools from a Python module file.

        The module exposes ``TOOLS``: either a dict mapping tool name to a
        callable, or a list of callables registered under their own names.

        Returns:
            Number of tools discovered
        """
        module_path = Path(module_path)
        if not module_path.exists():
            return 0

        spec = importlib.util.spec_from_file_location("conductor_user_tools", module_path)
        if spec is None or spec.loader is None:
            return 0

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)

        tools = getattr(module, "TOOLS", None)
        if tools is None:
            return 0

        items = tools.items() if isinstance(tools, dict) else ((f.__name__, f) for f in tools)
        count = 0
        for tool_name, func in items:
            self.register_function(func, name=tool_name)
            count += 1
        logger.info(f"Discovered {count} tools in {module_path}")
        return count

    # --- queries ---

    def get(self, name: str) -> RegisteredTool:
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get_registered_names(self) -> list[str]:
        return list(self._tools.keys())

    def list_tools(self, role: str | None = None) -> list[Tool]:
        """Tools callable by ``role`` (all tools when role is None)."""
        return [
            r.tool
            for r in self._tools.values()
            if role is None or r.roles is None or role in r.roles
        ]

    def requires_approval(self, name: str) -> bool:
        """True if the tool is destructive; unknown tools are not gated (they fail on call)."""
        return name in self._tools and self._tools[name].requires_approval

    def submits_for_review(self, name: str) -> bool:
        return name in self._tools and self._tools[name].submits_for_review

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    # --- execution ---

    async def execute(
        self,
        name: str,
        args: dict[str, Any] | None = None,
        role: str | None = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Execute a tool.

        Args:
            name: Registered tool name
            args: Argument dict passed to the executor
            role: Calling role; None for framework callers (workflows)
            timeout: Seconds to wait for an async executor

        Raises:
            ToolNotFoundError: The tool is not registered
            AuthorizationError: The tool is restricted to other roles
            ToolExecutionError: The executor raised or timed out
        """
        registered = self.get(name)
        if role is not None and registered.roles is not None and role not in registered.roles:
            raise AuthorizationError(name, role)

        start = time.perf_counter()
        try:
            result = registered.executor(dict(args or {}))
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=timeout)
        except TimeoutError as e:
            raise ToolExecutionError(name, f"Tool '{name}' timed out after {timeout}s") from e
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(name, f"Tool '{name}' failed: {e}") from e

        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.debug(
            f"Tool {name} finished in {latency_ms}ms",
            extra={"tool_name": name, "latency_ms": latency_ms},
        )
        return result

    # --- execution context ---

    @staticmethod
    def set_execution_context(**context: Any) -> contextvars.Token:
        """Set per-invocation context values; returns a token for reset."""
        current = _execution_context.get() or {}
        return _execution_context.set({**current, **context})

    @staticmethod
    def reset_execution_context(token: contextvars.Token) -> None:
        _execution_context.reset(token)

    @staticmethod
    def current_context() -> dict[str, Any]:
        return dict(_execution_context.get() or {})
