"""Shared conductor configuration utilities.

Centralises reading of ~/.conductor/configuration.json so that the
iteration controller, the workflow engine and the CLI share one
implementation.
"""

import json
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

CONDUCTOR_CONFIG_FILE = Path.home() / ".conductor" / "configuration.json"


def get_conductor_config(path: Path | None = None) -> dict[str, Any]:
    """Load conductor configuration from ~/.conductor/configuration.json."""
    config_file = path or CONDUCTOR_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _section(name: str, path: Path | None = None) -> dict[str, Any]:
    section = get_conductor_config(path).get(name, {})
    return section if isinstance(section, dict) else {}


# ---------------------------------------------------------------------------
# Orchestrator configuration
# ---------------------------------------------------------------------------


class ExecutionMode(StrEnum):
    """How the scheduler drives runnable tasks."""

    SEQUENTIAL = "sequential"  # one runnable task at a time
    CONCURRENT = "concurrent"  # every runnable task at once, no cap


@dataclass
class ConductorConfig:
    """Settings for one iteration-controller session."""

    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    auto_mode: bool = False
    enable_persistence: bool = False
    storage_path: Path = field(default_factory=lambda: Path.home() / ".conductor" / "sessions")
    max_iterations: int = 10
    max_attempts_per_task: int = 3
    evaluator_count: int = 1
    enable_reflection: bool = True
    review_poll_interval: float = 2.0
    enable_long_term_memory: bool = False
    knowledge_path: Path = field(default_factory=lambda: Path.home() / ".conductor" / "knowledge.json")

    @classmethod
    def from_file(cls, path: Path | None = None) -> "ConductorConfig":
        """Build a config from the ``orchestrator`` section, ignoring unknown keys."""
        data = _section("orchestrator", path)
        config = cls()
        for key, value in data.items():
            if not hasattr(config, key):
                continue
            if key == "execution_mode":
                value = ExecutionMode(value)
            elif key in ("storage_path", "knowledge_path"):
                value = Path(value).expanduser()
            setattr(config, key, value)
        return config


# ---------------------------------------------------------------------------
# Workflow engine configuration
# ---------------------------------------------------------------------------


@dataclass
class WorkflowEngineConfig:
    """Settings for the workflow engine."""

    max_parallel_execution: int = 10
    default_timeout: float | None = 30.0  # seconds per tool call
    enable_rollback: bool = True
    enable_retry: bool = True
    retry_attempts: int = 3
    max_backoff: float = 10.0

    @classmethod
    def from_file(cls, path: Path | None = None) -> "WorkflowEngineConfig":
        """Build a config from the ``workflow`` section, ignoring unknown keys."""
        data = _section("workflow", path)
        config = cls()
        for key, value in data.items():
            if hasattr(config, key):
                setattr(config, key, value)
        return config
