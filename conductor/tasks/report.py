"""Markdown report of a finished (or interrupted) session."""

from conductor.tasks.context import TaskContext


def generate_final_report(context: TaskContext) -> str:
    """Render the original request, the final outcome and the iteration history."""
    lines = ["# Task Report", "", f"**Original request:** {context.original_request}", ""]

    final = context.latest_iteration()
    if final is None:
        lines += ["_No iteration completed._", ""]
    else:
        lines.append(f"**Final score:** {final.evaluation.score}/10")
        if final.evaluation.summary:
            lines.append(f"**Final summary:** {final.evaluation.summary}")
        lines += ["", "## Final artifact", "", "```", final.artifact, "```", ""]

    lines += ["## Iteration history", ""]
    for record in context.history:
        evaluation = record.evaluation
        lines.append(f"### Iteration {record.iteration} (score: {evaluation.score}/10)")
        if evaluation.summary:
            lines.append(f"**Summary:** {evaluation.summary}")
        if evaluation.suggestions:
            lines.append("**Suggestions:**")
            lines += [f"- {s}" for s in evaluation.suggestions]
        failed = [t for t in record.subtasks if t.error and t.status == "failed"]
        if failed:
            lines.append("**Failed subtasks:**")
            lines += [f"- #{t.id} {t.headline}: {t.error}" for t in failed]
        lines.append("")

    return "\n".join(lines)
