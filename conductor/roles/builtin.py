"""Deterministic role implementations that need no model."""

import math

from conductor.tasks.context import Evaluation, TaskContext


class MeanScoreAggregator:
    """
    Merge evaluations by averaging.

    The score is the floor of the mean, so a perfect 10 requires every
    evaluator to award 10. Suggestions are de-duplicated in first-seen order.
    """

    async def aggregate(self, evaluations: list[Evaluation], context: TaskContext) -> Evaluation:
        if not evaluations:
            raise ValueError("Cannot aggregate an empty list of evaluations")

        score = math.floor(sum(e.score for e in evaluations) / len(evaluations))

        suggestions: list[str] = []
        for evaluation in evaluations:
            for suggestion in evaluation.suggestions:
                if suggestion not in suggestions:
                    suggestions.append(suggestion)

        summaries = [e.summary for e in evaluations if e.summary]
        summary = " ".join(summaries) if summaries else f"Mean score of {len(evaluations)} evaluation(s)."
        return Evaluation(score=max(1, min(10, score)), suggestions=suggestions, summary=summary)
