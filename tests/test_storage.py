"""Tests for TaskContextStore (state.json sessions) and KnowledgeStore (long-term lessons)."""

import json
from pathlib import Path

import pytest

from conductor.errors import ConductorError, StateVersionError
from conductor.storage.context_store import TaskContextStore
from conductor.storage.knowledge_store import KNOWLEDGE_HEADER, KnowledgeStore
from conductor.tasks.context import Evaluation, TaskContext
from conductor.tasks.plan import PlanItem, TaskStatus

# === HELPER FUNCTIONS ===


def create_test_context() -> TaskContext:
    """Create a context with one archived iteration and a live plan."""
    context = TaskContext(original_request="Build a todo CLI", project_context="python 3.12")
    context.set_plan([PlanItem(id=1, description="a"), PlanItem(id=2, description="b", dependencies=[1])])
    context.mark_completed(1, "done")
    context.archive_iteration("artifact", Evaluation(score=7, suggestions=["more"]))
    context.set_plan([PlanItem(id=1, description="c")])
    context.mark_in_progress(1)
    return context


class TestTaskContextStore:
    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path: Path):
        store = TaskContextStore(tmp_path)
        context = create_test_context()

        path = await store.save(context)
        loaded = await store.load(context.session_id)

        assert path == tmp_path / context.session_id / "state.json"
        assert loaded == context
        assert loaded.graph.get(1).status == TaskStatus.IN_PROGRESS
        assert loaded.history[0].evaluation.score == 7

    @pytest.mark.asyncio
    async def test_load_missing_session(self, tmp_path: Path):
        assert await TaskContextStore(tmp_path).load("nope") is None

    @pytest.mark.asyncio
    async def test_save_leaves_no_temp_files(self, tmp_path: Path):
        store = TaskContextStore(tmp_path)
        context = create_test_context()

        await store.save(context)
        await store.save(context)

        assert [p.name for p in (tmp_path / context.session_id).iterdir()] == ["state.json"]

    @pytest.mark.asyncio
    async def test_clear(self, tmp_path: Path):
        store = TaskContextStore(tmp_path)
        context = create_test_context()
        await store.save(context)

        assert await store.clear(context.session_id)
        assert not await store.clear(context.session_id)
        assert store.list_sessions() == []

    @pytest.mark.asyncio
    async def test_list_sessions(self, tmp_path: Path):
        store = TaskContextStore(tmp_path)
        first, second = create_test_context(), create_test_context()
        await store.save(first)
        await store.save(second)

        assert set(store.list_sessions()) == {first.session_id, second.session_id}

    def test_newer_schema_rejected(self, tmp_path: Path):
        context = create_test_context()
        data = json.loads(context.model_dump_json())
        data["schema_version"] = 99
        path = tmp_path / "state.json"
        path.write_text(json.dumps(data))

        with pytest.raises(StateVersionError, match="schema version 99") as exc_info:
            TaskContextStore.read_state_file(path)

        assert isinstance(exc_info.value, ConductorError)
        assert exc_info.value.found == 99


class TestKnowledgeStore:
    @pytest.mark.asyncio
    async def test_add_persists_and_skips_duplicates(self, tmp_path: Path):
        path = tmp_path / "memory" / "knowledge.json"
        knowledge = KnowledgeStore(path)
        await knowledge.start()

        added = await knowledge.add(["Pin dependency versions", " ", "Pin dependency versions"])
        again = await knowledge.add(["Pin dependency versions"])

        assert (added, again) == (1, 0)
        assert json.loads(path.read_text()) == ["Pin dependency versions"]
        assert [p.name for p in path.parent.iterdir()] == ["knowledge.json"]

    @pytest.mark.asyncio
    async def test_start_loads_saved_entries(self, tmp_path: Path):
        path = tmp_path / "knowledge.json"
        path.write_text(json.dumps(["Write tests first", 3, ""]))
        knowledge = KnowledgeStore(path)

        await knowledge.start()

        assert knowledge.entries == ["Write tests first"]

    @pytest.mark.asyncio
    async def test_unreadable_file_starts_empty(self, tmp_path: Path):
        path = tmp_path / "knowledge.json"
        path.write_text("{broken")
        knowledge = KnowledgeStore(path)

        await knowledge.start()

        assert knowledge.entries == []

    @pytest.mark.asyncio
    async def test_query_ranks_by_word_overlap(self, tmp_path: Path):
        knowledge = KnowledgeStore(tmp_path / "knowledge.json")
        await knowledge.start()
        await knowledge.add(
            [
                "Deploy with blue green releases",
                "A CLI should print usage for unknown commands",
                "CLI tools need tests for argument parsing in the CLI",
            ]
        )

        assert knowledge.query("Build a todo CLI with tests") == [
            "CLI tools need tests for argument parsing in the CLI",
            "A CLI should print usage for unknown commands",
        ]
        assert knowledge.query("Build a todo CLI with tests", limit=1) == [
            "CLI tools need tests for argument parsing in the CLI"
        ]
        assert knowledge.query("the and of") == []

    @pytest.mark.asyncio
    async def test_format_relevant(self, tmp_path: Path):
        knowledge = KnowledgeStore(tmp_path / "knowledge.json")
        await knowledge.start()
        await knowledge.add(["Validate CSV headers before converting"])

        block = knowledge.format_relevant("Convert CSV to JSON")

        assert block.startswith(KNOWLEDGE_HEADER)
        assert "- Validate CSV headers before converting" in block
        assert knowledge.format_relevant("Paint a fence") == ""
