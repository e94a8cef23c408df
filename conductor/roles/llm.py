"""
LLM-backed role implementations.

Transport is out of scope: plug in any backend by subclassing LLMProvider.
Each role formats a prompt, asks the provider, and parses the reply with the
two-stage parser from conductor.roles.parsing.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from conductor.errors import PlanValidationError, RoleOutputError
from conductor.roles.parsing import parse_json_payload, parse_model, parse_plan
from conductor.roles.protocols import ChunkSink, Reflection, ReviewVerdict, WorkerAction
from conductor.tasks.context import Evaluation, TaskContext
from conductor.tasks.plan import PlanItem, SubTask
from conductor.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from an LLM call."""

    content: str
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


class LLMProvider(ABC):
    """Abstract LLM provider - plug in any LLM backend."""

    @abstractmethod
    async def acomplete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 4096,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Generate a completion.

        Args:
            messages: Conversation history [{role: "user"|"assistant", content: str}]
            system: System prompt
            max_tokens: Maximum tokens to generate
            json_mode: Request structured JSON output
        """

    async def astream(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        max_tokens: int = 4096,
    ) -> AsyncIterator[str]:
        """
        Stream a completion as text chunks.

        Default implementation yields the whole completion as one chunk.
        Subclasses SHOULD override for true streaming.
        """
        response = await self.acomplete(messages, system=system, max_tokens=max_tokens)
        yield response.content


class _LLMRole:
    role_name = "role"
    system_prompt = ""

    def __init__(self, llm: LLMProvider, max_tokens: int = 4096):
        self.llm = llm
        self.max_tokens = max_tokens

    async def _ask(self, prompt: str, json_mode: bool = True) -> str:
        response = await self.llm.acomplete(
            [{"role": "user", "content": prompt}],
            system=self.system_prompt,
            max_tokens=self.max_tokens,
            json_mode=json_mode,
        )
        return response.content


class LLMPlanner(_LLMRole):
    role_name = "planner"
    system_prompt = (
        "You break a user request into small sub-tasks. Reply with JSON only: "
        '{"plan": [{"id": 1, "description": "...", "dependencies": []}]}. '
        "Ids start at 1; dependencies reference ids in the same plan."
    )

    async def plan(self, context: TaskContext) -> list[PlanItem]:
        prompt = f"Request:\n{context.original_request}"
        if context.project_context:
            prompt += f"\n\nProject context:\n{context.project_context}"
        previous = context.latest_iteration()
        if previous is not None:
            evaluation = previous.evaluation
            prompt += (
                f"\n\nPrevious iteration {previous.iteration} scored {evaluation.score}/10."
                f"\nSummary: {evaluation.summary or '-'}"
                "\nSuggestions:\n" + "\n".join(f"- {s}" for s in evaluation.suggestions)
                + f"\n\nPrevious artifact:\n{previous.artifact}"
            )

        result = parse_plan(await self._ask(prompt))
        if not result.ok:
            raise PlanValidationError(f"Planner output is not a valid plan: {result.error}")
        return result.value


class LLMWorker(_LLMRole):
    role_name = "worker"
    system_prompt = (
        "You complete one sub-task by choosing exactly one tool call. Reply with JSON only: "
        '{"toolName": "...", "args": {...}}.'
    )

    def __init__(self, llm: LLMProvider, tools: ToolRegistry, role: str = "worker", **kwargs: Any):
        super().__init__(llm, **kwargs)
        self.tools = tools
        self.role = role

    async def propose(
        self, task: SubTask, context: TaskContext, retry_history: list[str]
    ) -> WorkerAction:
        catalog = "\n".join(
            f"- {t.name}: {t.description} {json.dumps(t.parameters)}"
            for t in self.tools.list_tools(self.role)
        )
        prompt = (
            f"Overall request:\n{context.original_request}\n\n"
            f"Sub-task {task.id}:\n{task.description}\n\n"
            f"Progress so far:\n{context.progress_summary or '(none)'}\n\n"
            f"Available tools:\n{catalog}"
        )
        if retry_history:
            prompt += "\n\nPrevious attempts:\n" + "\n".join(retry_history)

        result = parse_model(await self._ask(prompt), WorkerAction)
        if not result.ok:
            raise RoleOutputError(self.role_name, result.error)
        return result.value


class LLMReflector(_LLMRole):
    role_name = "reflector"
    system_prompt = (
        "A sub-task attempt failed. Diagnose it. Reply with JSON only: "
        '{"cause": "...", "nextStep": "..."}.'
    )

    async def reflect(self, task: SubTask) -> Reflection:
        prompt = f"Sub-task {task.id}:\n{task.description}\n\nError:\n{task.error}"
        if task.retry_history:
            prompt += "\n\nEarlier reflections:\n" + "\n".join(task.retry_history)
        result = parse_model(await self._ask(prompt), Reflection)
        if not result.ok:
            raise RoleOutputError(self.role_name, result.error)
        return result.value


class LLMSynthesizer(_LLMRole):
    role_name = "synthesizer"
    system_prompt = "Combine the completed sub-task results into one final artifact."

    async def synthesize(self, context: TaskContext, on_chunk: ChunkSink | None = None) -> str:
        prompt = (
            f"Request:\n{context.original_request}\n\n"
            f"Completed sub-tasks:\n{context.completed_tasks_summary()}"
        )
        chunks: list[str] = []
        async for chunk in self.llm.astream(
            [{"role": "user", "content": prompt}],
            system=self.system_prompt,
            max_tokens=self.max_tokens,
        ):
            chunks.append(chunk)
            if on_chunk is not None:
                await on_chunk(chunk)
        return "".join(chunks)


def _coerce_evaluation(data: Any) -> Evaluation:
    if isinstance(data, dict) and isinstance(data.get("score"), int | float):
        data = {**data, "score": max(1, min(10, round(data["score"])))}
    return Evaluation.model_validate(data)


class LLMEvaluator(_LLMRole):
    role_name = "evaluator"
    system_prompt = (
        "Critique the artifact against the request. Reply with JSON only: "
        '{"score": 1-10, "suggestions": ["..."], "summary": "..."}. '
        "Award 10 only when nothing remains to improve."
    )

    async def evaluate(self, artifact: str, context: TaskContext) -> Evaluation:
        prompt = f"Request:\n{context.original_request}\n\nArtifact:\n{artifact}"
        result = parse_json_payload(await self._ask(prompt), _coerce_evaluation)
        if not result.ok:
            raise RoleOutputError(self.role_name, result.error)
        return result.value


class LLMAggregator(_LLMRole):
    role_name = "aggregator"
    system_prompt = (
        "Merge several critiques of the same artifact into one. Reply with JSON only: "
        '{"score": 1-10, "suggestions": ["..."], "summary": "..."}.'
    )

    async def aggregate(self, evaluations: list[Evaluation], context: TaskContext) -> Evaluation:
        payload = json.dumps([e.model_dump() for e in evaluations], indent=2)
        prompt = f"Request:\n{context.original_request}\n\nCritiques:\n{payload}"
        result = parse_json_payload(await self._ask(prompt), _coerce_evaluation)
        if not result.ok:
            raise RoleOutputError(self.role_name, result.error)
        return result.value


class LLMReviewer(_LLMRole):
    role_name = "reviewer"
    system_prompt = (
        "Review work submitted by a teammate. Reply with JSON only: "
        '{"approved": true|false, "feedback": "..."}.'
    )

    async def review(self, task: SubTask, content: str) -> ReviewVerdict:
        prompt = f"Sub-task {task.id}:\n{task.headline}\n\nSubmitted work:\n{content}"
        result = parse_model(await self._ask(prompt), ReviewVerdict)
        if not result.ok:
            raise RoleOutputError(self.role_name, result.error)
        return result.value


_BULLET = re.compile(r"^(?:[-*•]|\d+[.)])\s*")


class LLMKnowledgeExtractor(_LLMRole):
    role_name = "knowledge_extractor"
    system_prompt = (
        "Extract 3-5 lessons from a finished task that are likely to help future, "
        "different tasks. Reply with one lesson per line and nothing else."
    )

    async def extract(self, context: TaskContext) -> list[str]:
        prompt = f"Original request: {context.original_request}\n\n{self._format_history(context)}"
        reply = await self._ask(prompt, json_mode=False)
        lessons = [_BULLET.sub("", line.strip()).strip() for line in reply.splitlines()]
        return [lesson for lesson in lessons if lesson]

    @staticmethod
    def _format_history(context: TaskContext) -> str:
        parts = []
        for record in context.history:
            lines = [f"--- Iteration {record.iteration} ---", "Plan:"]
            for task in record.subtasks:
                lines.append(f"- [{task.status}] {task.headline}")
                if task.result:
                    lines.append(f"  Result: {task.result}")
                if task.error:
                    lines.append(f"  Error: {task.error}")
            evaluation = record.evaluation
            lines.append(f"Evaluation: {evaluation.score}/10 - {evaluation.summary or '-'}")
            lines.append(f"Artifact:\n{record.artifact}")
            parts.append("\n".join(lines))
        return "\n\n".join(parts)
