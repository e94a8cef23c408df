"""Agent roles, the role registry and the two-stage output parser."""

from conductor.roles.builtin import MeanScoreAggregator
from conductor.roles.llm import (
    LLMAggregator,
    LLMEvaluator,
    LLMKnowledgeExtractor,
    LLMPlanner,
    LLMProvider,
    LLMReflector,
    LLMResponse,
    LLMReviewer,
    LLMSynthesizer,
    LLMWorker,
)
from conductor.roles.parsing import ParseResult, parse_json_payload, parse_model, parse_plan
from conductor.roles.protocols import (
    Aggregator,
    ChunkSink,
    Evaluator,
    KnowledgeExtractor,
    Planner,
    Reflection,
    Reflector,
    ReviewVerdict,
    Reviewer,
    Synthesizer,
    Worker,
    WorkerAction,
)
from conductor.roles.registry import AgentRole, RoleRegistry, RoleSet

__all__ = [
    "AgentRole",
    "Aggregator",
    "ChunkSink",
    "Evaluator",
    "LLMAggregator",
    "KnowledgeExtractor",
    "LLMEvaluator",
    "LLMKnowledgeExtractor",
    "LLMPlanner",
    "LLMProvider",
    "LLMReflector",
    "LLMResponse",
    "LLMReviewer",
    "LLMSynthesizer",
    "LLMWorker",
    "MeanScoreAggregator",
    "ParseResult",
    "Planner",
    "Reflection",
    "Reflector",
    "ReviewVerdict",
    "Reviewer",
    "RoleRegistry",
    "RoleSet",
    "Synthesizer",
    "Worker",
    "WorkerAction",
    "parse_json_payload",
    "parse_model",
    "parse_plan",
]
