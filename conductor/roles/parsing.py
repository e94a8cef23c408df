"""
Two-stage parsing of JSON payloads produced by roles.

Stage one is a strict ``json.loads`` of the whole text followed by schema
validation. Stage two extracts a candidate from a fenced code block (or the
outermost brace/bracket span), repairs Python-style literals, and validates
again. Both stages report through ParseResult; nothing is raised.
"""

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field, ValidationError

from conductor.tasks.plan import PlanItem

logger = logging.getLogger(__name__)

T = TypeVar("T")

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_SPAN_RE = re.compile(r"(\{.*\}|\[.*\])", re.DOTALL)


@dataclass
class ParseResult(Generic[T]):
    """Either a validated value or the reason parsing failed."""

    value: T | None = None
    error: str | None = None
    recovered: bool = False  # True when the fallback extraction produced the value

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise ValueError(self.error)
        return self.value  # type: ignore[return-value]


def _extract_candidate(text: str) -> str | None:
    """Find the JSON-looking part of free-form text."""
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1)
    match = _SPAN_RE.search(text.strip())
    return match.group(1) if match else None


def _repair(candidate: str) -> Any:
    """Load a candidate, fixing Python constants and single quotes if needed."""
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    fixed = re.sub(r"\bTrue\b", "true", candidate)
    fixed = re.sub(r"\bFalse\b", "false", fixed)
    fixed = re.sub(r"\bNone\b", "null", fixed)
    try:
        return json.loads(fixed)
    except json.JSONDecodeError:
        if "'" in fixed and '"' not in fixed:
            return json.loads(fixed.replace("'", '"'))
        raise


def _validate(data: Any, validate: Callable[[Any], T] | None) -> T:
    return validate(data) if validate is not None else data


def parse_json_payload(
    text: str,
    validate: Callable[[Any], T] | None = None,
) -> ParseResult[T]:
    """
    Parse role output into a validated value.

    Args:
        text: Raw role output
        validate: Converts the decoded JSON into the target type; may raise
            ValidationError, ValueError or TypeError to reject it

    Returns:
        ParseResult with ``value`` on success or ``error`` describing both stages
    """
    if not isinstance(text, str) or not text.strip():
        return ParseResult(error="empty payload")

    try:
        return ParseResult(value=_validate(json.loads(text), validate))
    except json.JSONDecodeError as e:
        strict_error = f"invalid JSON: {e}"
    except (ValidationError, ValueError, TypeError) as e:
        # Well-formed JSON that fails validation will not improve by extraction
        return ParseResult(error=f"schema validation failed: {e}")

    candidate = _extract_candidate(text)
    if candidate is None:
        return ParseResult(error=f"{strict_error}; no JSON object found in output")

    try:
        value = _validate(_repair(candidate), validate)
    except json.JSONDecodeError as e:
        return ParseResult(error=f"{strict_error}; fallback extraction failed: {e}")
    except (ValidationError, ValueError, TypeError) as e:
        return ParseResult(error=f"schema validation failed: {e}")

    logger.debug("Role output recovered by fallback extraction")
    return ParseResult(value=value, recovered=True)


def parse_model(text: str, model: type[BaseModel]) -> ParseResult:
    """Parse role output into an instance of a pydantic model."""
    return parse_json_payload(text, model.model_validate)


class _PlanEnvelope(BaseModel):
    plan: list[PlanItem] = Field(min_length=1)


def _validate_plan(data: Any) -> list[PlanItem]:
    items = _PlanEnvelope.model_validate(data).plan
    ids = [item.id for item in items]
    if len(ids) != len(set(ids)):
        raise ValueError(f"duplicate subtask ids: {ids}")
    return items


def parse_plan(text: str) -> ParseResult[list[PlanItem]]:
    """Parse ``{"plan": [{"id", "description", "dependencies"}]}`` planner output."""
    return parse_json_payload(text, _validate_plan)
