"""Tests for workflow YAML parsing, stage detection and context path resolution."""

from pathlib import Path

import pytest

from conductor.errors import WorkflowValidationError
from conductor.workflow.definition import (
    ConditionalStage,
    ErrorHandlerStage,
    LoopStage,
    OnError,
    ParallelStage,
    SequenceStage,
    SplitStage,
    StageType,
    ToolStage,
    TransformStage,
    load_workflow,
    parse_stage,
    parse_workflow,
    validate_workflow,
)
from conductor.workflow.resolve import resolve_params, resolve_path, resolve_value

PUBLISH_YAML = """
name: publish-report
version: 1.2
description: Render and upload a report
stages:
  - tool: fetch_data
    params: {source: "$source"}
    output: data
  - parallel:
      - tool: render_html
        params: {rows: "$data.rows"}
      - tool: render_pdf
        params: {rows: "$data.rows"}
    output: documents
  - conditional:
      if: "len(data.rows) > 0"
      then:
        - tool: notify
      else:
        tool: log_empty
  - loop:
      forEach: "$data.rows"
      itemVar: row
      do:
        - tool: index_row
          params: {row: "$row"}
  - error_handler:
      try:
        - tool: upload
          params: {files: "$documents"}
          rollback: {tool: delete_upload, params: {files: "$documents"}}
      catch:
        - tool: alert
      finally:
        - tool: cleanup
    onError: retry
    retry: 2
  - transform:
      input: "$data.rows"
      type: map
      expression: "item.id"
    output: ids
  - split:
      input: "$ids"
      type: chunk
      size: 2
"""


class TestParseWorkflow:
    def test_parses_every_stage_kind(self):
        workflow = parse_workflow(PUBLISH_YAML)

        assert workflow.name == "publish-report"
        assert workflow.version == "1.2"
        assert [type(s) for s in workflow.stages] == [
            ToolStage,
            ParallelStage,
            ConditionalStage,
            LoopStage,
            ErrorHandlerStage,
            TransformStage,
            SplitStage,
        ]

    def test_aliases_and_nested_stages(self):
        workflow = parse_workflow(PUBLISH_YAML)
        conditional, loop, handler = workflow.stages[2], workflow.stages[3], workflow.stages[4]

        assert conditional.conditional.condition == "len(data.rows) > 0"
        # a single stage is accepted where a list is expected
        assert [s.tool for s in conditional.conditional.otherwise] == ["log_empty"]
        assert loop.loop.item_var == "row"
        assert loop.loop.max_iterations == 100
        assert handler.on_error == OnError.RETRY
        assert handler.retry == 2
        assert handler.error_handler.try_[0].rollback.tool == "delete_upload"
        assert handler.error_handler.finally_[0].tool == "cleanup"

    def test_load_from_file(self, tmp_path: Path):
        path = tmp_path / "publish.yaml"
        path.write_text(PUBLISH_YAML)

        assert load_workflow(path).name == "publish-report"

    def test_stage_type_tags(self):
        assert parse_stage({"tool": "x"}).stage_type == StageType.TOOL
        assert parse_stage({"sequence": [{"tool": "x"}]}).stage_type == StageType.SEQUENCE
        assert isinstance(parse_stage({"name": "n", "sequence": {"tool": "x"}}), SequenceStage)


class TestValidation:
    @pytest.mark.parametrize(
        ("data", "message"),
        [
            ({"stages": [{"tool": "x"}]}, "must have a name"),
            ({"name": "w"}, "non-empty stages list"),
            ({"name": "w", "stages": []}, "non-empty stages list"),
            ({"name": "w", "stages": [{"bogus": 1}]}, "Invalid workflow 'w'"),
            ({"name": "w", "stages": [{"tool": "x", "onError": "explode"}]}, "Invalid workflow"),
            ({"name": "w", "stages": [{"parallel": []}]}, "Invalid workflow"),
        ],
    )
    def test_rejects_malformed(self, data, message):
        with pytest.raises(WorkflowValidationError, match=message):
            validate_workflow(data)

    @pytest.mark.parametrize(
        "loop",
        [
            {"do": [{"tool": "x"}]},
            {"count": 2, "while": "true", "do": [{"tool": "x"}]},
            {"count": 2, "do": []},
        ],
    )
    def test_loop_needs_one_mode_and_a_body(self, loop):
        with pytest.raises(WorkflowValidationError):
            parse_stage({"loop": loop})

    @pytest.mark.parametrize(
        "transform",
        [
            {"type": "map"},
            {"type": "filter"},
            {"type": "custom"},
            {"type": "shuffle", "expression": "item"},
        ],
    )
    def test_transform_required_fields(self, transform):
        with pytest.raises(WorkflowValidationError):
            parse_stage({"transform": transform})

    def test_unused_stage_keys_are_ignored(self):
        workflow = parse_workflow(
            """
name: fetch
stages:
  - tool: fetch
    description: fetch the data
    owner: data-team
  - loop:
      count: 2
      note: twice
      do: {tool: tick}
"""
        )

        fetch, loop = workflow.stages
        assert fetch.tool == "fetch"
        assert fetch.description == "fetch the data"
        assert not hasattr(fetch, "owner")
        assert loop.loop.count == 2

    def test_invalid_yaml(self):
        with pytest.raises(WorkflowValidationError, match="Failed to parse"):
            parse_workflow("name: [unclosed")

    def test_not_a_mapping(self):
        with pytest.raises(WorkflowValidationError):
            parse_workflow("- just\n- a list\n")


class TestResolve:
    def test_nested_path(self):
        assert resolve_value("$a.b.c", {"a": {"b": {"c": 42}}}) == 42

    def test_missing_path_is_none(self):
        assert resolve_value("$a.x.y", {"a": {"b": {"c": 42}}}) is None

    def test_list_index(self):
        context = {"result": {"items": [{"name": "first"}, {"name": "second"}]}}

        assert resolve_path("result.items.1.name", context) == "second"
        assert resolve_path("result.items.7.name", context) is None
        assert resolve_path("result.items.x", context) is None

    def test_literals_pass_through(self):
        assert resolve_value("plain", {}) == "plain"
        assert resolve_value(3, {}) == 3
        assert resolve_value("$$5.00", {}) == "$5.00"

    def test_params_resolved_recursively(self):
        context = {"user": {"id": 7}, "tags": ["a", "b"]}
        params = {"id": "$user.id", "meta": {"tags": "$tags", "fixed": 1}, "list": ["$user.id", "x"]}

        assert resolve_params(params, context) == {
            "id": 7,
            "meta": {"tags": ["a", "b"], "fixed": 1},
            "list": [7, "x"],
        }
