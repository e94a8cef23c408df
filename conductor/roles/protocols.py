"""
Role contracts consumed by the orchestration core.

Every role is an async object with a single method. Implementations may be
LLM-backed (see conductor.roles.llm), deterministic (conductor.roles.builtin)
or test doubles; the core only depends on these protocols.
"""

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from conductor.tasks.context import Evaluation, TaskContext
    from conductor.tasks.plan import PlanItem, SubTask


ChunkSink = Callable[[str], Awaitable[None]]


class WorkerAction(BaseModel):
    """The tool call a worker proposes for a subtask."""

    model_config = ConfigDict(populate_by_name=True)

    tool_name: str = Field(alias="toolName", min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)


class Reflection(BaseModel):
    """Diagnosis of a failed attempt and the refined instruction for the next one."""

    model_config = ConfigDict(populate_by_name=True)

    cause: str
    next_step: str = Field(alias="nextStep")

    def as_note(self, attempt: int) -> str:
        return f"Attempt {attempt} failed. Cause: {self.cause}. Next step: {self.next_step}"


class ReviewVerdict(BaseModel):
    """Outcome of reviewing work a task submitted for review."""

    approved: bool
    feedback: str = ""


@runtime_checkable
class Planner(Protocol):
    async def plan(self, context: "TaskContext") -> list["PlanItem"]: ...


@runtime_checkable
class Worker(Protocol):
    async def propose(
        self, task: "SubTask", context: "TaskContext", retry_history: list[str]
    ) -> WorkerAction: ...


@runtime_checkable
class Reflector(Protocol):
    async def reflect(self, task: "SubTask") -> Reflection: ...


@runtime_checkable
class Synthesizer(Protocol):
    async def synthesize(self, context: "TaskContext", on_chunk: ChunkSink | None = None) -> str: ...


@runtime_checkable
class Evaluator(Protocol):
    async def evaluate(self, artifact: str, context: "TaskContext") -> "Evaluation": ...


@runtime_checkable
class Aggregator(Protocol):
    async def aggregate(
        self, evaluations: list["Evaluation"], context: "TaskContext"
    ) -> "Evaluation": ...


@runtime_checkable
class Reviewer(Protocol):
    async def review(self, task: "SubTask", content: str) -> ReviewVerdict: ...


@runtime_checkable
class KnowledgeExtractor(Protocol):
    """Distils reusable lessons from a finished session."""

    async def extract(self, context: "TaskContext") -> list[str]: ...
