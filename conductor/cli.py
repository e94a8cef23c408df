"""
Command-line interface for conductor.

Usage:
    conductor workflow validate publish.yaml
    conductor workflow run publish.yaml --context '{"source": "s3://bucket"}' --tools tools.py
    conductor report ~/.conductor/sessions/<session_id>/state.json
"""

import argparse
import asyncio
import json
import sys
import uuid
from pathlib import Path

from pydantic import ValidationError

from conductor.config import WorkflowEngineConfig
from conductor.errors import ConductorError
from conductor.observability import configure_logging
from conductor.storage.context_store import TaskContextStore
from conductor.tasks.report import generate_final_report
from conductor.tools.registry import ToolRegistry
from conductor.workflow.definition import load_workflow
from conductor.workflow.engine import WorkflowEngine


def cmd_workflow_validate(args: argparse.Namespace) -> int:
    try:
        definition = load_workflow(args.file)
    except (ConductorError, OSError) as e:
        print(f"✗ {args.file}: {e}", file=sys.stderr)
        return 1
    print(f"✓ {definition.name} v{definition.version}: {len(definition.stages)} stage(s)")
    return 0


def cmd_workflow_run(args: argparse.Namespace) -> int:
    try:
        definition = load_workflow(args.file)
        context = json.loads(args.context) if args.context else {}
    except json.JSONDecodeError as e:
        print(f"Invalid --context JSON: {e}", file=sys.stderr)
        return 1
    except (ConductorError, OSError) as e:
        print(f"✗ {args.file}: {e}", file=sys.stderr)
        return 1
    if not isinstance(context, dict):
        print("--context must be a JSON object", file=sys.stderr)
        return 1

    tools = ToolRegistry()
    if args.tools:
        if not Path(args.tools).exists():
            print(f"Tools module not found: {args.tools}", file=sys.stderr)
            return 1
        tools.discover_from_module(Path(args.tools))

    engine = WorkflowEngine(tools, WorkflowEngineConfig.from_file())
    execution_id = uuid.uuid4().hex
    try:
        result = asyncio.run(engine.execute_workflow(definition, context, execution_id=execution_id))
    except ConductorError as e:
        execution = engine.get_execution(execution_id)
        payload = {
            "execution_id": execution_id,
            "status": execution.state.value if execution else "failed",
            "error": str(e),
            "rollback": [step.model_dump() for step in execution.rollback_report] if execution else [],
        }
        print(json.dumps(payload, indent=2, default=str))
        return 1

    print(json.dumps(result.model_dump(), indent=2, default=str))
    return 0


def cmd_report(args: argparse.Namespace) -> int:
    try:
        context = TaskContextStore.read_state_file(Path(args.state_file))
    except (OSError, ValidationError, ConductorError) as e:
        print(f"Cannot read {args.state_file}: {e}", file=sys.stderr)
        return 1
    print(generate_final_report(context))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="conductor",
        description="Conductor - iterative task orchestration and workflow automation",
    )
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    parser.add_argument(
        "--log-format",
        default="auto",
        choices=["auto", "json", "human"],
        help="Log output format",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    workflow = subparsers.add_parser("workflow", help="Validate or run workflow definitions")
    workflow_commands = workflow.add_subparsers(dest="workflow_command", required=True)

    validate = workflow_commands.add_parser("validate", help="Validate a workflow YAML file")
    validate.add_argument("file", help="Path to the workflow YAML")
    validate.set_defaults(func=cmd_workflow_validate)

    run = workflow_commands.add_parser("run", help="Run a workflow YAML file")
    run.add_argument("file", help="Path to the workflow YAML")
    run.add_argument("--context", help="Initial context as a JSON object")
    run.add_argument("--tools", help="Python module exposing TOOLS to register")
    run.set_defaults(func=cmd_workflow_run)

    report = subparsers.add_parser("report", help="Render the report of a saved session")
    report.add_argument("state_file", help="Path to a session's state.json")
    report.set_defaults(func=cmd_report)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=args.log_level.upper(), format=args.log_format)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
