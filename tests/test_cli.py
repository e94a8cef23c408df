"""Tests for the conductor command-line interface."""

import json
import logging
from pathlib import Path

import pytest

from conductor.cli import build_parser, main
from conductor.tasks.context import Evaluation, TaskContext
from conductor.tasks.plan import PlanItem

VALID_YAML = """
name: greet
version: 2
stages:
  - tool: greet
    params: {name: "$user"}
    output: greeting
  - tool: shout
    params: {text: "$greeting"}
"""

FAILING_YAML = """
name: broken
stages:
  - tool: greet
    params: {name: "$user"}
    rollback: {tool: forget, params: {name: "$user"}}
  - tool: explode
"""

TOOLS_MODULE = """
def greet(name: str) -> str:
    return f"hello {name}"


def shout(text: str) -> str:
    return text.upper()


def forget(name: str) -> str:
    return name


def explode() -> None:
    raise RuntimeError("kaboom")


TOOLS = [greet, shout, forget, explode]
"""


@pytest.fixture(autouse=True)
def restore_logging():
    """main() reconfigures the root logger; put it back after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    (tmp_path / "greet.yaml").write_text(VALID_YAML)
    (tmp_path / "broken.yaml").write_text(FAILING_YAML)
    (tmp_path / "invalid.yaml").write_text("name: nope\nstages: []\n")
    (tmp_path / "tools.py").write_text(TOOLS_MODULE)
    return tmp_path


def run_cli(*argv: str) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(["--log-level", "critical", *argv])
    return exc_info.value.code


class TestWorkflowValidate:
    def test_valid_file(self, project, capsys):
        assert run_cli("workflow", "validate", str(project / "greet.yaml")) == 0

        assert "✓ greet v2: 2 stage(s)" in capsys.readouterr().out

    def test_invalid_file(self, project, capsys):
        assert run_cli("workflow", "validate", str(project / "invalid.yaml")) == 1

        assert "non-empty stages list" in capsys.readouterr().err

    def test_missing_file(self, project, capsys):
        assert run_cli("workflow", "validate", str(project / "missing.yaml")) == 1


class TestWorkflowRun:
    def test_successful_run(self, project, capsys, monkeypatch):
        monkeypatch.setattr("conductor.config.CONDUCTOR_CONFIG_FILE", project / "no-config.json")

        code = run_cli(
            "workflow",
            "run",
            str(project / "greet.yaml"),
            "--context",
            '{"user": "ada"}',
            "--tools",
            str(project / "tools.py"),
        )

        assert code == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["status"] == "success"
        assert payload["results"] == ["hello ada", "HELLO ADA"]

    def test_failed_run_reports_rollback(self, project, capsys, monkeypatch):
        monkeypatch.setattr("conductor.config.CONDUCTOR_CONFIG_FILE", project / "no-config.json")

        code = run_cli(
            "workflow",
            "run",
            str(project / "broken.yaml"),
            "--context",
            '{"user": "ada"}',
            "--tools",
            str(project / "tools.py"),
        )

        assert code == 1
        payload = json.loads(capsys.readouterr().out)
        assert payload["status"] == "rolled_back"
        assert "kaboom" in payload["error"]
        assert payload["rollback"] == [
            {"tool": "forget", "original_tool": "greet", "success": True, "error": None}
        ]

    def test_context_must_be_object(self, project, capsys):
        assert run_cli("workflow", "run", str(project / "greet.yaml"), "--context", "[1]") == 1
        assert "JSON object" in capsys.readouterr().err

    def test_bad_context_json(self, project, capsys):
        assert run_cli("workflow", "run", str(project / "greet.yaml"), "--context", "{oops") == 1
        assert "Invalid --context JSON" in capsys.readouterr().err

    def test_missing_tools_module(self, project, capsys):
        code = run_cli("workflow", "run", str(project / "greet.yaml"), "--tools", str(project / "nope.py"))

        assert code == 1
        assert "Tools module not found" in capsys.readouterr().err


class TestReport:
    def test_renders_saved_state(self, tmp_path, capsys):
        context = TaskContext(original_request="Build a todo CLI")
        context.set_plan([PlanItem(id=1, description="a")])
        context.mark_completed(1, "ok")
        context.archive_iteration("final artifact", Evaluation(score=10, summary="done"))
        state = tmp_path / "state.json"
        state.write_text(context.model_dump_json())

        assert run_cli("report", str(state)) == 0

        out = capsys.readouterr().out
        assert "**Final score:** 10/10" in out
        assert "final artifact" in out

    def test_unreadable_state(self, tmp_path, capsys):
        state = tmp_path / "state.json"
        state.write_text("{}")

        assert run_cli("report", str(state)) == 1
        assert "Cannot read" in capsys.readouterr().err

    def test_state_from_newer_version(self, tmp_path, capsys):
        context = TaskContext(original_request="Build a todo CLI", schema_version=99)
        state = tmp_path / "state.json"
        state.write_text(context.model_dump_json())

        assert run_cli("report", str(state)) == 1
        assert "schema version 99" in capsys.readouterr().err


class TestParser:
    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_log_format_choices(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--log-format", "xml", "report", "x"])
