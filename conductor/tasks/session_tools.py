"""
Tools that act on the session running the calling task.

- ``agent.delegate`` appends a new subtask to the running plan, depending on
  the task that delegated it
- ``agent.request_review`` submits work for review, suspending the caller
  until feedback arrives

A registry may be shared by several sessions at once. The tools are
registered once per registry and find their TaskContext through the
``session_id`` of the current tool execution context; they are removed when
the last attached session detaches.
"""

import logging
import weakref

from conductor.runtime.event_bus import EventBus, EventType
from conductor.tasks.context import TaskContext
from conductor.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DELEGATE_TOOL = "agent.delegate"
REQUEST_REVIEW_TOOL = "agent.request_review"
SESSION_TOOLS = (DELEGATE_TOOL, REQUEST_REVIEW_TOOL)


class SessionToolbox:
    """The session tools of one registry and the sessions attached to it."""

    def __init__(self, tools: ToolRegistry):
        self._tools = weakref.ref(tools)
        self._sessions: dict[str, tuple[TaskContext, EventBus]] = {}

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def attach(self, context: TaskContext, bus: EventBus) -> None:
        if not self._sessions:
            self._register()
        self._sessions[context.session_id] = (context, bus)

    def detach(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        tools = self._tools()
        if not self._sessions and tools is not None:
            for name in SESSION_TOOLS:
                tools.unregister(name)

    def _current_session(self) -> tuple[TaskContext, EventBus]:
        session_id = ToolRegistry.current_context().get("session_id")
        if session_id not in self._sessions:
            raise LookupError(f"No active session {session_id!r} for session tools")
        return self._sessions[session_id]

    async def delegate(self, inputs: dict) -> str:
        recipient = inputs.get("recipient_role")
        description = inputs.get("task_description")
        if not recipient or not description:
            raise ValueError("agent.delegate requires 'recipient_role' and 'task_description'")

        context, bus = self._current_session()
        parent_id = ToolRegistry.current_context().get("task_id")
        task = context.graph.append_dynamic(recipient, description, parent_id=parent_id)
        await bus.emit(
            EventType.TASK_DELEGATED,
            task_id=task.id,
            recipient_role=recipient,
            delegated_by=parent_id,
        )
        logger.info(f"Task {parent_id} delegated new task {task.id} to {recipient}")
        return f"Delegated to {recipient} as task {task.id}"

    async def request_review(self, inputs: dict) -> str:
        content = inputs.get("content")
        if not content:
            raise ValueError("agent.request_review requires 'content'")
        return content

    def _register(self) -> None:
        tools = self._tools()
        tools.register(
            DELEGATE_TOOL,
            self.delegate,
            description="Hand a piece of work to another role as a new subtask.",
            parameters={
                "type": "object",
                "properties": {
                    "recipient_role": {"type": "string"},
                    "task_description": {"type": "string"},
                },
                "required": ["recipient_role", "task_description"],
            },
        )
        tools.register(
            REQUEST_REVIEW_TOOL,
            self.request_review,
            description="Submit work for review; the task resumes once feedback arrives.",
            parameters={
                "type": "object",
                "properties": {"content": {"type": "string"}},
                "required": ["content"],
            },
            submits_for_review=True,
        )


_toolboxes: "weakref.WeakKeyDictionary[ToolRegistry, SessionToolbox]" = weakref.WeakKeyDictionary()


def get_session_toolbox(tools: ToolRegistry) -> SessionToolbox:
    """Return the toolbox bound to ``tools``, creating it on first use."""
    toolbox = _toolboxes.get(tools)
    if toolbox is None:
        toolbox = SessionToolbox(tools)
        _toolboxes[tools] = toolbox
    return toolbox


def register_session_tools(tools: ToolRegistry, context: TaskContext, bus: EventBus) -> None:
    """Make the session tools on ``tools`` available to tasks of ``context``."""
    get_session_toolbox(tools).attach(context, bus)


def unregister_session_tools(tools: ToolRegistry, session_id: str) -> None:
    """Detach one session; the tools go away with the last attached session."""
    get_session_toolbox(tools).detach(session_id)
