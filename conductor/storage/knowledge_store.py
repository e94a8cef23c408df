"""
Long-term knowledge shared across sessions.

Layout:
  {path}   # JSON array of lesson strings, oldest first

Lessons are extracted from finished sessions by the knowledge extractor role
and retrieved for new requests by word overlap with the request text.
"""

import asyncio
import json
import logging
import re
from pathlib import Path

from conductor.runtime.lifecycle import ManagedService
from conductor.utils.io import atomic_write

logger = logging.getLogger(__name__)

KNOWLEDGE_HEADER = "--- Relevant knowledge from earlier sessions ---"
KNOWLEDGE_FOOTER = "--- End of knowledge ---"

_WORD = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset(
    "a an and are as at be by for from in into is it of on or that the this to with".split()
)


def _words(text: str) -> set[str]:
    return {w for w in _WORD.findall(text.lower()) if w not in _STOPWORDS and len(w) > 1}


class KnowledgeStore(ManagedService):
    """
    File-backed list of lessons, loaded on start.

    Example:
        knowledge = KnowledgeStore(Path("~/.conductor/knowledge.json"))
        await knowledge.start()
        print(knowledge.format_relevant("Build a todo CLI"))
    """

    name = "knowledge-store"

    def __init__(self, path: Path):
        super().__init__()
        self.path = Path(path).expanduser()
        self._entries: list[str] = []

    @property
    def entries(self) -> list[str]:
        return list(self._entries)

    async def on_start(self) -> None:
        self._entries = await asyncio.to_thread(self._read)
        logger.debug(f"Loaded {len(self._entries)} knowledge entries from {self.path}")

    async def on_stop(self) -> None:
        self._entries = []

    def _read(self) -> list[str]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable knowledge file {self.path}: {e}")
            return []
        if not isinstance(data, list):
            logger.warning(f"Ignoring knowledge file {self.path}: expected a JSON array")
            return []
        return [entry for entry in data if isinstance(entry, str) and entry.strip()]

    async def add(self, entries: list[str]) -> int:
        """
        Append new lessons and persist them.

        Returns:
            Number of entries actually added (blank and duplicate lessons are skipped)
        """
        added = 0
        for entry in entries:
            entry = entry.strip()
            if entry and entry not in self._entries:
                self._entries.append(entry)
                added += 1
        if not added:
            return 0

        payload = json.dumps(self._entries, indent=2, ensure_ascii=False)

        def _write() -> None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with atomic_write(self.path) as f:
                f.write(payload)

        await asyncio.to_thread(_write)
        logger.info(f"Saved {added} new knowledge entries", extra={"event": "knowledge_saved"})
        return added

    def query(self, text: str, limit: int = 5) -> list[str]:
        """The ``limit`` lessons sharing the most words with ``text``, best first."""
        wanted = _words(text)
        if not wanted:
            return []
        scored = []
        for position, entry in enumerate(self._entries):
            overlap = len(wanted & _words(entry))
            if overlap:
                scored.append((-overlap, position, entry))
        scored.sort()
        return [entry for _, _, entry in scored[:limit]]

    def format_relevant(self, text: str, limit: int = 5) -> str:
        """Relevant lessons as a block for the planner's project context, or ''."""
        relevant = self.query(text, limit=limit)
        if not relevant:
            return ""
        lines = "\n".join(f"- {entry}" for entry in relevant)
        return f"{KNOWLEDGE_HEADER}\n{lines}\n{KNOWLEDGE_FOOTER}"
