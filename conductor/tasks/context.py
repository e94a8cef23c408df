"""
Task Context - the aggregate root of one user session.

Holds the original request, the current iteration's TaskGraph, the archived
iteration history and the append-only progress log. Exactly one
IterationController owns a TaskContext at a time; the whole model is what
gets persisted to state.json.
"""

import json
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from conductor.tasks.plan import PlanItem, SubTask, TaskGraph, TaskStatus

SCHEMA_VERSION = 1


class Evaluation(BaseModel):
    """A critique of an artifact."""

    score: int = Field(ge=1, le=10)
    suggestions: list[str] = Field(default_factory=list)
    summary: str | None = None


class IterationRecord(BaseModel):
    """Archived outcome of one plan → execute → synthesize → evaluate cycle."""

    model_config = ConfigDict(frozen=True)

    iteration: int = Field(ge=1)
    artifact: str
    evaluation: Evaluation
    subtasks: list[SubTask] = Field(default_factory=list)
    archived_at: datetime = Field(default_factory=datetime.now)


class ProgressEntry(BaseModel):
    """One line of the progress log. Entries are never rewritten."""

    model_config = ConfigDict(frozen=True)

    iteration: int
    task_id: int
    outcome: TaskStatus
    description: str
    detail: str

    def render(self) -> str:
        label = "Completed" if self.outcome == TaskStatus.COMPLETED else "Failed"
        field_name = "Result" if self.outcome == TaskStatus.COMPLETED else "Error"
        return f"{label} Task {self.task_id}: {self.description}\n{field_name}: {self.detail}"


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


class TaskContext(BaseModel):
    """
    State of one user task across all iterations.

    Example:
        context = TaskContext(original_request="Build a todo CLI")
        context.set_plan([PlanItem(id=1, description="Create main.py")])
        ...
        context.archive_iteration(artifact, Evaluation(score=8))
    """

    schema_version: int = SCHEMA_VERSION
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    original_request: str
    project_context: str = ""
    graph: TaskGraph = Field(default_factory=TaskGraph)
    history: list[IterationRecord] = Field(default_factory=list)
    current_iteration: int = Field(default=1, ge=1)
    progress: list[ProgressEntry] = Field(default_factory=list)

    # --- plan ---

    @property
    def subtasks(self) -> list[SubTask]:
        return self.graph.tasks

    def set_plan(self, items: list[PlanItem]) -> None:
        """Replace the graph with a freshly approved plan."""
        self.graph.replace(items)

    def add_relevant_knowledge(self, knowledge: str) -> None:
        """Prepend retrieved knowledge to the project context."""
        if knowledge and knowledge.strip():
            self.project_context = f"{knowledge}\n\n---\n\n{self.project_context}"

    # --- status transitions ---

    def _require(self, task_id: int) -> SubTask:
        task = self.graph.get(task_id)
        if task is None:
            raise KeyError(f"Unknown subtask id {task_id}")
        return task

    def mark_in_progress(self, task_id: int) -> SubTask:
        task = self._require(task_id)
        task.status = TaskStatus.IN_PROGRESS
        return task

    def mark_completed(self, task_id: int, result: Any) -> SubTask:
        task = self._require(task_id)
        task.status = TaskStatus.COMPLETED
        task.result = _stringify(result)
        task.error = None
        self._log(task, task.result)
        return task

    def mark_failed(self, task_id: int, error: str) -> SubTask:
        task = self._require(task_id)
        task.status = TaskStatus.FAILED
        task.error = error
        self._log(task, error)
        return task

    def mark_waiting_for_review(self, task_id: int) -> SubTask:
        task = self._require(task_id)
        task.status = TaskStatus.WAITING_FOR_REVIEW
        return task

    def resolve_review(self, task_id: int, approved: bool, feedback: str) -> bool:
        """
        Apply review feedback to a task waiting for review.

        This is the only path from ``waiting_for_review`` back to ``pending``.
        The feedback is appended to the description so the next attempt sees it.

        Returns:
            True if the task was waiting and has been revived
        """
        task = self.graph.get(task_id)
        if task is None or task.status != TaskStatus.WAITING_FOR_REVIEW:
            return False
        verdict = "approved" if approved else "changes requested"
        task.description += f"\n\n--- Review feedback ---\nStatus: {verdict}\nFeedback: {feedback}"
        task.status = TaskStatus.PENDING
        return True

    def fail_unreachable(self) -> list[int]:
        """
        Fail pending tasks that depend, directly or transitively, on a failed task.

        Returns:
            Ids of the tasks marked failed, in the order they were failed
        """
        failed_ids: list[int] = []
        while True:
            blocked = self.graph.failed_dependencies()
            if not blocked:
                return failed_ids
            for task_id, dep in blocked.items():
                self.mark_failed(task_id, f"Not run: dependency #{dep} failed")
                failed_ids.append(task_id)

    def recover_interrupted(self) -> list[int]:
        """Return tasks left in progress by an interrupted run to pending."""
        recovered = []
        for task in self.graph.in_progress():
            task.status = TaskStatus.PENDING
            recovered.append(task.id)
        return recovered

    # --- progress log ---

    def _log(self, task: SubTask, detail: str) -> None:
        self.progress.append(
            ProgressEntry(
                iteration=self.current_iteration,
                task_id=task.id,
                outcome=task.status,
                description=task.headline,
                detail=detail,
            )
        )

    @property
    def progress_summary(self) -> str:
        return "\n\n".join(entry.render() for entry in self.progress)

    def completed_tasks_summary(self) -> str:
        """Summary of completed subtasks and their results, for the synthesizer."""
        return "\n\n---\n\n".join(
            f"Sub-task {t.id}: {t.description}\nResult:\n{t.result}"
            for t in self.graph.tasks
            if t.status == TaskStatus.COMPLETED and t.result
        )

    # --- iterations ---

    def archive_iteration(self, artifact: str, evaluation: Evaluation) -> IterationRecord:
        """Snapshot the current plan with its outcome and advance the iteration counter."""
        record = IterationRecord(
            iteration=self.current_iteration,
            artifact=artifact,
            evaluation=evaluation,
            subtasks=[t.model_copy(deep=True) for t in self.graph.tasks],
        )
        self.history.append(record)
        self.current_iteration += 1
        return record

    def latest_iteration(self) -> IterationRecord | None:
        return self.history[-1] if self.history else None
