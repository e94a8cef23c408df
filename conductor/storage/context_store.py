"""
TaskContext persistence.

Layout:
  {base_path}/{session_id}/state.json   # full TaskContext snapshot

The snapshot is serialized on the event loop (so concurrently running tasks
cannot mutate it mid-dump) and written from a worker thread with a
temp-file + rename, so a crash never leaves a torn state.json.
"""

import asyncio
import logging
import shutil
from pathlib import Path

from conductor.errors import StateVersionError
from conductor.tasks.context import SCHEMA_VERSION, TaskContext
from conductor.utils.io import atomic_write

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"


class TaskContextStore:
    """Saves, loads and clears TaskContext snapshots under a base directory."""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path).expanduser()

    def get_state_path(self, session_id: str) -> Path:
        return self.base_path / session_id / STATE_FILE

    async def save(self, context: TaskContext) -> Path:
        """Atomically write the context's state.json and return its path."""
        payload = context.model_dump_json(indent=2)
        state_path = self.get_state_path(context.session_id)

        def _write() -> None:
            state_path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(state_path) as f:
                f.write(payload)

        await asyncio.to_thread(_write)
        logger.debug(f"Wrote state.json for session {context.session_id}")
        return state_path

    async def load(self, session_id: str) -> TaskContext | None:
        """Load a saved session, or None if it does not exist."""
        state_path = self.get_state_path(session_id)
        if not state_path.exists():
            return None
        return await asyncio.to_thread(self.read_state_file, state_path)

    @staticmethod
    def read_state_file(path: Path) -> TaskContext:
        """
        Parse a state.json file.

        Raises:
            StateVersionError: The file was written by a newer schema version
            pydantic.ValidationError: The file does not describe a TaskContext
        """
        context = TaskContext.model_validate_json(Path(path).read_text(encoding="utf-8"))
        if context.schema_version > SCHEMA_VERSION:
            raise StateVersionError(str(path), context.schema_version, SCHEMA_VERSION)
        return context

    async def clear(self, session_id: str) -> bool:
        """Delete a session's saved state. Returns True if something was removed."""
        session_dir = self.base_path / session_id

        def _delete() -> bool:
            if not session_dir.exists():
                return False
            shutil.rmtree(session_dir)
            return True

        removed = await asyncio.to_thread(_delete)
        if removed:
            logger.info(f"Cleared saved state for session {session_id}")
        return removed

    def list_sessions(self) -> list[str]:
        """Session ids with a saved state.json, most recently written first."""
        if not self.base_path.exists():
            return []
        states = [p / STATE_FILE for p in self.base_path.iterdir() if (p / STATE_FILE).exists()]
        states.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        return [p.parent.name for p in states]
