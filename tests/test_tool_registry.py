"""Tests for ToolRegistry registration, authorization, execution and context injection."""

import asyncio
from pathlib import Path

import pytest

from conductor.errors import AuthorizationError, ToolExecutionError, ToolNotFoundError
from conductor.tools.registry import ToolRegistry


class TestRegistration:
    def test_register_function_derives_schema(self):
        registry = ToolRegistry()

        def resize(path: str, width: int, keep_ratio: bool = True, task_id: int = 0) -> str:
            """Resize an image."""
            return path

        registry.register_function(resize)

        tool = registry.get("resize").tool
        assert tool.description == "Resize an image."
        assert tool.parameters["properties"] == {
            "path": {"type": "string"},
            "width": {"type": "integer"},
            "keep_ratio": {"type": "boolean"},
        }
        assert tool.parameters["required"] == ["path", "width"]

    def test_list_tools_filters_by_role(self):
        registry = ToolRegistry()
        registry.register("open", lambda inputs: None)
        registry.register("ops.deploy", lambda inputs: None, roles={"ops"})

        assert [t.name for t in registry.list_tools("worker")] == ["open"]
        assert [t.name for t in registry.list_tools("ops")] == ["open", "ops.deploy"]
        assert len(registry.list_tools()) == 2

    def test_capability_flags(self):
        registry = ToolRegistry()
        registry.register("rm", lambda inputs: None, requires_approval=True)
        registry.register("submit", lambda inputs: None, submits_for_review=True)

        assert registry.requires_approval("rm")
        assert not registry.requires_approval("submit")
        assert registry.submits_for_review("submit")
        assert not registry.requires_approval("unknown")

    def test_unregister(self):
        registry = ToolRegistry()
        registry.register("a", lambda inputs: None)

        assert registry.unregister("a")
        assert not registry.unregister("a")
        assert not registry.has_tool("a")

    def test_discover_from_module(self, tmp_path: Path):
        module = tmp_path / "my_tools.py"
        module.write_text(
            "def shout(text: str) -> str:\n"
            "    return text.upper()\n"
            "\n"
            "TOOLS = {'text.shout': shout}\n"
        )
        registry = ToolRegistry()

        assert registry.discover_from_module(module) == 1
        assert registry.get_registered_names() == ["text.shout"]

    def test_discover_missing_module(self, tmp_path: Path):
        assert ToolRegistry().discover_from_module(tmp_path / "nope.py") == 0


class TestExecution:
    @pytest.mark.asyncio
    async def test_sync_and_async_executors(self):
        registry = ToolRegistry()

        async def add(inputs: dict) -> int:
            return inputs["a"] + inputs["b"]

        registry.register("add", add)
        registry.register("neg", lambda inputs: -inputs["x"])

        assert await registry.execute("add", {"a": 1, "b": 2}) == 3
        assert await registry.execute("neg", {"x": 4}) == -4

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        with pytest.raises(ToolNotFoundError):
            await ToolRegistry().execute("missing", {})

    @pytest.mark.asyncio
    async def test_role_restriction(self):
        registry = ToolRegistry()
        registry.register("deploy", lambda inputs: "ok", roles={"ops"})

        with pytest.raises(AuthorizationError) as exc_info:
            await registry.execute("deploy", {}, role="worker")

        assert exc_info.value.role == "worker"
        assert await registry.execute("deploy", {}, role="ops") == "ok"
        # framework callers are not role-checked
        assert await registry.execute("deploy", {}) == "ok"

    @pytest.mark.asyncio
    async def test_executor_errors_are_wrapped(self):
        registry = ToolRegistry()

        def broken(inputs: dict):
            raise KeyError("path")

        registry.register("broken", broken)

        with pytest.raises(ToolExecutionError) as exc_info:
            await registry.execute("broken", {})

        assert exc_info.value.tool_name == "broken"
        assert isinstance(exc_info.value.__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_timeout(self):
        registry = ToolRegistry()

        async def hang(inputs: dict):
            await asyncio.Event().wait()

        registry.register("hang", hang)

        with pytest.raises(ToolExecutionError, match="timed out"):
            await registry.execute("hang", {}, timeout=0.01)


class TestExecutionContext:
    @pytest.mark.asyncio
    async def test_context_params_injected(self):
        registry = ToolRegistry()

        def whoami(session_id: str, task_id: int) -> str:
            return f"{session_id}/{task_id}"

        registry.register_function(whoami)
        token = ToolRegistry.set_execution_context(session_id="s1", task_id=7)
        try:
            assert await registry.execute("whoami", {}) == "s1/7"
        finally:
            ToolRegistry.reset_execution_context(token)

        assert ToolRegistry.current_context() == {}

    @pytest.mark.asyncio
    async def test_context_isolated_between_tasks(self):
        seen: dict[int, int] = {}

        async def run(task_id: int) -> None:
            ToolRegistry.set_execution_context(task_id=task_id)
            await asyncio.sleep(0)
            seen[task_id] = ToolRegistry.current_context()["task_id"]

        await asyncio.gather(run(1), run(2), run(3))

        assert seen == {1: 1, 2: 2, 3: 3}
