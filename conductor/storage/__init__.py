"""Persistence of session state and long-term knowledge."""

from conductor.storage.context_store import TaskContextStore
from conductor.storage.knowledge_store import KnowledgeStore

__all__ = ["KnowledgeStore", "TaskContextStore"]
