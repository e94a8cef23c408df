"""Tests for TaskContext status transitions, review feedback, progress and history."""

import pytest

from conductor.tasks.context import Evaluation, TaskContext
from conductor.tasks.plan import PlanItem, TaskStatus
from conductor.tasks.report import generate_final_report

# === HELPER FUNCTIONS ===


def create_context(*items: tuple[int, str, list[int]]) -> TaskContext:
    """Create a context with a plan of (id, description, dependencies) items."""
    context = TaskContext(original_request="Build a todo CLI")
    context.set_plan([PlanItem(id=i, description=d, dependencies=deps) for i, d, deps in items])
    return context


class TestTransitions:
    """Status transitions driven by the executor."""

    def test_mark_completed_records_result_and_progress(self):
        context = create_context((1, "Create main.py", []))
        context.mark_in_progress(1)

        context.mark_completed(1, "main.py written")

        task = context.graph.get(1)
        assert task.status == TaskStatus.COMPLETED
        assert task.result == "main.py written"
        assert context.progress_summary == "Completed Task 1: Create main.py\nResult: main.py written"

    def test_mark_completed_serializes_structured_results(self):
        context = create_context((1, "Count lines", []))

        context.mark_completed(1, {"lines": 42})

        assert context.graph.get(1).result == '{"lines": 42}'

    def test_mark_failed_logs_error(self):
        context = create_context((1, "Deploy", []))

        context.mark_failed(1, "permission denied")

        assert context.graph.get(1).error == "permission denied"
        assert context.progress_summary == "Failed Task 1: Deploy\nError: permission denied"

    def test_unknown_task_raises(self):
        context = create_context((1, "Deploy", []))

        with pytest.raises(KeyError):
            context.mark_in_progress(99)

    def test_progress_log_is_append_only_across_iterations(self):
        """Entries from earlier iterations survive later plans."""
        context = create_context((1, "First", []))
        context.mark_completed(1, "done")
        context.archive_iteration("artifact", Evaluation(score=5))

        context.set_plan([PlanItem(id=1, description="Second")])
        context.mark_failed(1, "boom")

        assert [(e.iteration, e.outcome) for e in context.progress] == [
            (1, TaskStatus.COMPLETED),
            (2, TaskStatus.FAILED),
        ]


class TestReview:
    """Feedback applied to tasks waiting for review."""

    def test_resolve_review_appends_feedback_and_revives_task(self):
        context = create_context((1, "Write docs", []))
        context.mark_waiting_for_review(1)

        assert context.resolve_review(1, False, "Add examples")

        task = context.graph.get(1)
        assert task.status == TaskStatus.PENDING
        assert task.description == (
            "Write docs\n\n--- Review feedback ---\nStatus: changes requested\nFeedback: Add examples"
        )
        assert task.headline == "Write docs"

    def test_resolve_review_ignores_tasks_not_waiting(self):
        context = create_context((1, "Write docs", []))

        assert not context.resolve_review(1, True, "fine")
        assert not context.resolve_review(7, True, "fine")
        assert context.graph.get(1).description == "Write docs"

    def test_recover_interrupted_resets_in_progress_tasks(self):
        context = create_context((1, "a", []), (2, "b", []), (3, "c", []))
        context.mark_in_progress(1)
        context.mark_in_progress(3)
        context.mark_completed(3, "ok")

        assert context.recover_interrupted() == [1]
        assert context.graph.get(1).status == TaskStatus.PENDING
        assert context.graph.get(3).status == TaskStatus.COMPLETED


class TestIterations:
    """Archiving iterations into history."""

    def test_archive_snapshots_subtasks(self):
        """Later mutation of the graph must not alter archived records."""
        context = create_context((1, "a", []))
        context.mark_completed(1, "first result")

        record = context.archive_iteration("artifact v1", Evaluation(score=6, suggestions=["more tests"]))
        context.graph.get(1).result = "mutated"

        assert record.iteration == 1
        assert record.subtasks[0].result == "first result"
        assert context.current_iteration == 2
        assert context.latest_iteration() is record

    def test_completed_tasks_summary_skips_failed(self):
        context = create_context((1, "a", []), (2, "b", []))
        context.mark_completed(1, "alpha")
        context.mark_failed(2, "nope")

        assert context.completed_tasks_summary() == "Sub-task 1: a\nResult:\nalpha"

    def test_add_relevant_knowledge_prepends(self):
        context = TaskContext(original_request="r", project_context="existing")

        context.add_relevant_knowledge("retrieved")
        context.add_relevant_knowledge("   ")

        assert context.project_context == "retrieved\n\n---\n\nexisting"

    def test_evaluation_score_bounds(self):
        with pytest.raises(ValueError):
            Evaluation(score=11)
        with pytest.raises(ValueError):
            Evaluation(score=0)


class TestReport:
    """Markdown report rendering."""

    def test_report_without_iterations(self):
        report = generate_final_report(TaskContext(original_request="Build a todo CLI"))

        assert "# Task Report" in report
        assert "Build a todo CLI" in report
        assert "_No iteration completed._" in report

    def test_report_lists_every_iteration(self):
        context = create_context((1, "a", []))
        context.mark_failed(1, "boom")
        context.archive_iteration("v1", Evaluation(score=4, suggestions=["fix a"], summary="weak"))
        context.set_plan([PlanItem(id=1, description="a")])
        context.mark_completed(1, "ok")
        context.archive_iteration("v2", Evaluation(score=9, summary="good"))

        report = generate_final_report(context)

        assert "**Final score:** 9/10" in report
        assert "### Iteration 1 (score: 4/10)" in report
        assert "### Iteration 2 (score: 9/10)" in report
        assert "fix a" in report
        assert "v2" in report
