"""Tool registry shared by task workers and workflow stages."""

from conductor.tools.registry import RegisteredTool, Tool, ToolRegistry

__all__ = ["RegisteredTool", "Tool", "ToolRegistry"]
