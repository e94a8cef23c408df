"""
Structured logging with automatic trace context propagation.

Key Features:
- Standard logger.info() calls pick up the current session/task context
- ContextVar-based propagation: each asyncio task carries its own copy,
  so concurrently executing subtasks never mix their correlation fields
- Dual output modes: JSON for production, human-readable for development

Architecture:
    IterationController.run() → sets session_id, iteration
        ↓ (propagates via ContextVar)
    RetryReflectionExecutor.execute() → adds task_id
        ↓
    ToolRegistry.execute() → logger.info("...") carries all of the above

    WorkflowEngine.execute_workflow() → sets execution_id, workflow
"""

import json
import logging
import os
import re
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")

# Extra attributes copied from LogRecord into the JSON entry when present
_EXTRA_FIELDS = ("event", "tool_name", "stage_index", "attempt", "latency_ms")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Produces machine-parseable log entries with:
    - Standard fields (timestamp, level, logger, message)
    - Trace context (session_id, iteration, task_id, execution_id)
    - Selected fields from the ``extra`` dict
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Colorized level plus a short correlation prefix, e.g.
    ``[INFO    ] [session:3f2a91c0 | iter:2 | task:#4] Task 4 completed``.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        prefix_parts = []
        if session_id := context.get("session_id"):
            prefix_parts.append(f"session:{str(session_id)[:8]}")
        if (iteration := context.get("iteration")) is not None:
            prefix_parts.append(f"iter:{iteration}")
        if (task_id := context.get("task_id")) is not None:
            prefix_parts.append(f"task:#{task_id}")
        if execution_id := context.get("execution_id"):
            prefix_parts.append(f"exec:{str(execution_id)[-8:]}")

        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""
        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        line = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the application.

    Call once at startup (CLI entry point, service bootstrap, test fixture).

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production, else human)
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    formatter: logging.Formatter
    if format == "json":
        formatter = StructuredFormatter()
        os.environ["NO_COLOR"] = "1"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())


def set_trace_context(**kwargs: Any) -> Token:
    """
    Merge fields into the trace context of the current execution context.

    Returns a token for reset_trace_context() to restore the previous fields.

    The value propagates into every coroutine awaited from here and into
    asyncio tasks created afterwards (each gets a copy).

    Example:
        set_trace_context(session_id=ctx.session_id, iteration=2)
        logger.info("Planning")  # carries session_id and iteration
    """
    current = trace_context.get() or {}
    return trace_context.set({**current, **kwargs})


def reset_trace_context(token: Token) -> None:
    """Restore the trace context as it was before the matching set_trace_context()."""
    trace_context.reset(token)


def get_trace_context() -> dict:
    """Return a copy of the current trace context (empty dict if unset)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Clear trace context, e.g. between test runs."""
    trace_context.set(None)
