"""
Review coordination for tasks suspended in ``waiting_for_review``.

A task that submits work for review stays suspended until feedback arrives,
either from the optional Reviewer role (run in the background when the
review request is published) or from an external caller through
``submit_feedback``. Feedback wakes the scheduler.
"""

import asyncio
import logging

from conductor.roles.protocols import Reviewer
from conductor.runtime.event_bus import ConductorEvent, EventBus, EventType
from conductor.runtime.lifecycle import ManagedService
from conductor.tasks.context import TaskContext

logger = logging.getLogger(__name__)


class ReviewCoordinator(ManagedService):
    """Routes review requests to a reviewer and review feedback back to the plan."""

    name = "review-coordinator"

    def __init__(self, context: TaskContext, bus: EventBus, reviewer: Reviewer | None = None):
        super().__init__()
        self.context = context
        self.bus = bus
        self.reviewer = reviewer
        self._changed = asyncio.Event()
        self._subscription: str | None = None
        self._reviews: set[asyncio.Task] = set()

    async def on_start(self) -> None:
        self._subscription = self.bus.subscribe(
            [EventType.REVIEW_REQUESTED], self._on_review_requested
        )

    async def on_stop(self) -> None:
        if self._subscription is not None:
            self.bus.unsubscribe(self._subscription)
            self._subscription = None
        for review in list(self._reviews):
            review.cancel()
        if self._reviews:
            await asyncio.gather(*self._reviews, return_exceptions=True)
        self._reviews.clear()

    async def _on_review_requested(self, event: ConductorEvent) -> None:
        if self.reviewer is None or event.task_id is None:
            return
        review = asyncio.create_task(self._run_review(event.task_id, event.data.get("content", "")))
        self._reviews.add(review)
        review.add_done_callback(self._reviews.discard)

    async def _run_review(self, task_id: int, content: str) -> None:
        task = self.context.graph.get(task_id)
        if task is None:
            return
        try:
            verdict = await self.reviewer.review(task, content)
        except Exception as e:
            logger.error(f"Reviewer failed on task {task_id}: {e}")
            await self.submit_feedback(task_id, False, f"Automated review failed: {e}")
            return
        await self.submit_feedback(task_id, verdict.approved, verdict.feedback)

    async def submit_feedback(self, task_id: int, approved: bool, feedback: str) -> bool:
        """
        Resolve a pending review.

        Returns:
            True if the task was waiting for review and is pending again
        """
        if not self.context.resolve_review(task_id, approved, feedback):
            logger.warning(f"Ignoring review feedback for task {task_id}: not waiting for review")
            return False
        await self.bus.emit(
            EventType.REVIEW_RESOLVED, task_id=task_id, approved=approved, feedback=feedback
        )
        self._changed.set()
        return True

    def pending_reviews(self) -> list[int]:
        return [t.id for t in self.context.graph.waiting_for_review()]

    async def wait(self, timeout: float | None = None) -> bool:
        """
        Wait until some review is resolved.

        Returns:
            True if woken by feedback, False on timeout
        """
        try:
            await asyncio.wait_for(self._changed.wait(), timeout=timeout)
        except TimeoutError:
            return False
        self._changed.clear()
        return True
