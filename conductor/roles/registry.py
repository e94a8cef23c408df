"""
Role registry: AgentRole → factory, resolved once per session.

Example:
    registry = RoleRegistry()
    registry.register(AgentRole.PLANNER, lambda: LLMPlanner(llm))
    registry.register(AgentRole.WORKER, lambda: LLMWorker(llm, tools))
    registry.register(AgentRole.SYNTHESIZER, lambda: LLMSynthesizer(llm))
    registry.register(AgentRole.EVALUATOR, lambda: LLMEvaluator(llm))

    roles = registry.build(evaluator_count=3)
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from conductor.errors import RoleConfigurationError
from conductor.roles.builtin import MeanScoreAggregator
from conductor.roles.protocols import (
    Aggregator,
    Evaluator,
    KnowledgeExtractor,
    Planner,
    Reflector,
    Reviewer,
    Synthesizer,
    Worker,
)

logger = logging.getLogger(__name__)


class AgentRole(StrEnum):
    """Roles taking part in an iteration."""

    PLANNER = "planner"
    WORKER = "worker"
    REFLECTOR = "reflector"
    SYNTHESIZER = "synthesizer"
    EVALUATOR = "evaluator"
    AGGREGATOR = "aggregator"
    REVIEWER = "reviewer"
    KNOWLEDGE_EXTRACTOR = "knowledge_extractor"


REQUIRED_ROLES = (
    AgentRole.PLANNER,
    AgentRole.WORKER,
    AgentRole.SYNTHESIZER,
    AgentRole.EVALUATOR,
)

RoleFactory = Callable[[], Any]


@dataclass(frozen=True)
class RoleSet:
    """Concrete role instances for one session."""

    planner: Planner
    worker: Worker
    synthesizer: Synthesizer
    evaluators: tuple[Evaluator, ...]
    aggregator: Aggregator
    reflector: Reflector | None = None
    reviewer: Reviewer | None = None
    knowledge_extractor: KnowledgeExtractor | None = None


class RoleRegistry:
    """Maps each AgentRole to the factory that builds it."""

    def __init__(self) -> None:
        self._factories: dict[AgentRole, RoleFactory] = {}

    def register(self, role: AgentRole | str, factory: RoleFactory) -> None:
        role = AgentRole(role)
        if role in self._factories:
            logger.warning(f"Role '{role}' re-registered, replacing previous factory")
        self._factories[role] = factory

    def is_registered(self, role: AgentRole | str) -> bool:
        return AgentRole(role) in self._factories

    def build(self, evaluator_count: int = 1) -> RoleSet:
        """
        Instantiate every role.

        Args:
            evaluator_count: Number of independent evaluator instances

        Raises:
            RoleConfigurationError: A required role has no factory
        """
        missing = [role.value for role in REQUIRED_ROLES if role not in self._factories]
        if missing:
            raise RoleConfigurationError(f"No factory registered for role(s): {', '.join(missing)}")
        if evaluator_count < 1:
            raise RoleConfigurationError(f"evaluator_count must be >= 1, got {evaluator_count}")

        def optional(role: AgentRole) -> Any:
            factory = self._factories.get(role)
            return factory() if factory is not None else None

        return RoleSet(
            planner=self._factories[AgentRole.PLANNER](),
            worker=self._factories[AgentRole.WORKER](),
            synthesizer=self._factories[AgentRole.SYNTHESIZER](),
            evaluators=tuple(self._factories[AgentRole.EVALUATOR]() for _ in range(evaluator_count)),
            aggregator=optional(AgentRole.AGGREGATOR) or MeanScoreAggregator(),
            reflector=optional(AgentRole.REFLECTOR),
            reviewer=optional(AgentRole.REVIEWER),
            knowledge_extractor=optional(AgentRole.KNOWLEDGE_EXTRACTOR),
        )
