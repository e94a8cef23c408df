"""
Event Bus - Session-scoped pub/sub for orchestration events.

Each TaskContext session (and each WorkflowEngine) owns its own bus, so
listeners registered for one session can never observe another. ``close()``
tears every subscription down when the session ends.

Allows components to:
- Publish task, review, iteration and workflow lifecycle events
- Subscribe to a subset of event types, optionally for a single task
- Stream synthesized artifact chunks to a UI sink
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events that can be published."""

    # Task lifecycle
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_RETRY = "task_retry"
    TASK_DELEGATED = "task_delegated"

    # Review
    REVIEW_REQUESTED = "review_requested"
    REVIEW_RESOLVED = "review_resolved"

    # Iteration lifecycle
    PLAN_UPDATED = "plan_updated"
    ITERATION_STARTED = "iteration_started"
    ITERATION_COMPLETED = "iteration_completed"
    ARTIFACT_CHUNK = "artifact_chunk"

    # Workflow lifecycle
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_CANCELLED = "workflow_cancelled"
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    STAGE_RETRY = "stage_retry"

    # Rollback
    ROLLBACK_STARTED = "rollback_started"
    ROLLBACK_STEP_SUCCEEDED = "rollback_step_succeeded"
    ROLLBACK_STEP_FAILED = "rollback_step_failed"


@dataclass
class ConductorEvent:
    """An event published on a bus."""

    type: EventType
    session_id: str
    task_id: int | None = None
    execution_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "type": self.type.value,
            "session_id": self.session_id,
            "task_id": self.task_id,
            "execution_id": self.execution_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[ConductorEvent], Awaitable[None]]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_task: int | None = None  # Only receive events about this task


class EventBus:
    """
    Pub/sub event bus scoped to one session.

    Example:
        bus = EventBus(session_id=context.session_id)

        async def on_task_done(event: ConductorEvent):
            print(f"Task {event.task_id} completed")

        bus.subscribe([EventType.TASK_COMPLETED], on_task_done)
        await bus.publish(ConductorEvent(type=EventType.TASK_COMPLETED, session_id=..., task_id=3))
        bus.close()
    """

    def __init__(self, session_id: str = "", max_history: int = 1000):
        self.session_id = session_id
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[ConductorEvent] = []
        self._max_history = max_history
        self._subscription_counter = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_task: int | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when an event occurs
            filter_task: Only receive events about this task id

        Returns:
            Subscription ID (use to unsubscribe)
        """
        if self._closed:
            raise RuntimeError(f"Event bus for session {self.session_id!r} is closed")

        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_task=filter_task,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns True if it existed."""
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: ConductorEvent) -> None:
        """Publish an event to all matching subscribers."""
        if self._closed:
            logger.debug(f"Dropping {event.type} published after bus close")
            return

        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history :]

        handlers = [s.handler for s in self._subscriptions.values() if self._matches(s, event)]
        if handlers:
            await self._execute_handlers(event, handlers)

    async def emit(
        self,
        event_type: EventType,
        task_id: int | None = None,
        execution_id: str | None = None,
        **data: Any,
    ) -> None:
        """Convenience publisher stamping this bus's session id."""
        await self.publish(
            ConductorEvent(
                type=event_type,
                session_id=self.session_id,
                task_id=task_id,
                execution_id=execution_id,
                data=data,
            )
        )

    def _matches(self, subscription: Subscription, event: ConductorEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_task is not None and subscription.filter_task != event.task_id:
            return False
        return True

    async def _execute_handlers(self, event: ConductorEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently; a failing handler never breaks the publisher."""

        async def run_handler(handler: EventHandler) -> None:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers])

    def get_history(
        self,
        event_type: EventType | None = None,
        task_id: int | None = None,
        limit: int = 100,
    ) -> list[ConductorEvent]:
        """Return recent events, newest first, optionally filtered."""
        events = self._event_history[::-1]
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        if task_id is not None:
            events = [e for e in events if e.task_id == task_id]
        return events[:limit]

    def close(self) -> None:
        """Drop every subscription; later publishes are ignored."""
        count = len(self._subscriptions)
        self._subscriptions.clear()
        self._closed = True
        logger.debug(f"Event bus for session {self.session_id!r} closed ({count} subscriptions)")
