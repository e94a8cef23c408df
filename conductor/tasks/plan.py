"""
Plan Data Structures for iterative task execution.

A plan is produced by the Planner role, approved (or edited) by a human,
and loaded into a TaskGraph for one iteration:
- PlanItem is the planner's contract: id, description, dependency ids
- SubTask is the executable unit the scheduler drives to a terminal state
- TaskGraph holds the SubTasks of the current iteration and answers
  "what can run now?" and "is everything resolved?"
"""

from enum import StrEnum

from pydantic import BaseModel, Field

from conductor.errors import PlanValidationError


class TaskStatus(StrEnum):
    """Status of a subtask."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING_FOR_REVIEW = "waiting_for_review"  # suspended until external review

    def is_terminal(self) -> bool:
        """Completed and failed tasks will not execute again this iteration."""
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class PlanItem(BaseModel):
    """One entry of a planner's output."""

    id: int = Field(gt=0)
    description: str = Field(min_length=1)
    dependencies: list[int] = Field(default_factory=list)


class SubTask(BaseModel):
    """
    A single unit of delegated work within a plan.

    Mutated only by the scheduler/executor that owns the current TaskGraph.
    ``retry_history`` is append-only.
    """

    id: int = Field(gt=0)
    description: str
    dependencies: list[int] = Field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    result: str | None = None
    error: str | None = None
    retry_history: list[str] = Field(default_factory=list)
    attempts: int = 0

    @classmethod
    def from_plan_item(cls, item: PlanItem) -> "SubTask":
        return cls(id=item.id, description=item.description, dependencies=list(item.dependencies))

    @property
    def headline(self) -> str:
        """First paragraph of the description (review feedback is appended below it)."""
        return self.description.split("\n\n", 1)[0]

    def is_runnable(self, completed_ids: set[int]) -> bool:
        """Pending, and every dependency has completed."""
        if self.status != TaskStatus.PENDING:
            return False
        return all(dep in completed_ids for dep in self.dependencies)


class TaskGraph(BaseModel):
    """
    Ordered dependency graph of the current iteration's subtasks.

    Dependency ids are expected to reference tasks in the same graph, but
    this is not enforced: a dangling or cyclic dependency surfaces as a
    DependencyDeadlock when the scheduler runs out of runnable work.
    """

    tasks: list[SubTask] = Field(default_factory=list)

    def get(self, task_id: int) -> SubTask | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def completed_ids(self) -> set[int]:
        return {t.id for t in self.tasks if t.status == TaskStatus.COMPLETED}

    def runnable(self) -> list[SubTask]:
        """All pending tasks whose dependencies completed, in insertion order."""
        completed = self.completed_ids()
        return [t for t in self.tasks if t.is_runnable(completed)]

    def all_done(self) -> bool:
        """True iff every task is completed or failed."""
        return all(t.status.is_terminal() for t in self.tasks)

    def has_active(self) -> bool:
        """True if any task is still pending or in progress."""
        return any(t.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS) for t in self.tasks)

    def waiting_for_review(self) -> list[SubTask]:
        return [t for t in self.tasks if t.status == TaskStatus.WAITING_FOR_REVIEW]

    def in_progress(self) -> list[SubTask]:
        return [t for t in self.tasks if t.status == TaskStatus.IN_PROGRESS]

    def blocked(self) -> dict[int, list[int]]:
        """Map each pending task id to its dependency ids that have not completed."""
        completed = self.completed_ids()
        return {
            t.id: [dep for dep in t.dependencies if dep not in completed]
            for t in self.tasks
            if t.status == TaskStatus.PENDING
        }

    def failed_dependencies(self) -> dict[int, int]:
        """Map each pending task id to the first of its dependencies that failed."""
        failed = {t.id for t in self.tasks if t.status == TaskStatus.FAILED}
        found = {}
        for task in self.tasks:
            if task.status != TaskStatus.PENDING:
                continue
            dep = next((d for d in task.dependencies if d in failed), None)
            if dep is not None:
                found[task.id] = dep
        return found

    def replace(self, items: list[PlanItem]) -> None:
        """Load a freshly approved plan; every task starts pending."""
        ids = [item.id for item in items]
        if len(ids) != len(set(ids)):
            raise PlanValidationError(f"Duplicate subtask ids in plan: {sorted(ids)}")
        self.tasks = [SubTask.from_plan_item(item) for item in items]

    def append_dynamic(
        self, recipient_role: str, description: str, parent_id: int | None = None
    ) -> SubTask:
        """
        Append a delegated task while the plan is running.

        The new task gets ``max(id) + 1`` and depends on ``parent_id`` or,
        when not given, on the task currently in progress if there is one.
        """
        new_id = max((t.id for t in self.tasks), default=0) + 1
        if parent_id is None:
            current = self.in_progress()
            parent_id = current[0].id if current else None
        task = SubTask(
            id=new_id,
            description=f"(delegated to {recipient_role}): {description}",
            dependencies=[parent_id] if parent_id is not None else [],
        )
        self.tasks.append(task)
        return task
