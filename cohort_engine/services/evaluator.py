"""
Composition evaluator: resolves a node graph into one result map.

Evaluation runs in two phases:
1. Binding: walk the whole graph applying each child's parameter template and
   validating its contract. Nothing touches the fact source yet, so a
   misconfigured definition fails before any query runs.
2. Execution: evaluate children concurrently, wait for all of them, then let
   each node reduce its children's results (set algebra for composites).

Every call gets its own fact snapshot; nothing is cached across calls.
"""

import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from cohort_engine.config import EngineConfig, get_config
from cohort_engine.domain.errors import ParameterContractViolation, SourceUnavailable
from cohort_engine.domain.models import EvaluationBinding, IndividualId, ResultMap, members
from cohort_engine.services.concurrency import gather_concurrently
from cohort_engine.services.fact_sources import FactSnapshot, FactSource
from cohort_engine.services.nodes import NamedExpressionNode

logger = structlog.get_logger(__name__)


@dataclass
class BoundNode:
    """A node with its parameters bound and its children bound recursively."""

    node: NamedExpressionNode
    binding: EvaluationBinding
    children: dict[str, "BoundNode"] = field(default_factory=dict)
    violation: ParameterContractViolation | None = None


class CompositionEvaluator:
    """
    Evaluates named expression nodes against a fact source.

    Failure policy (``EngineConfig.failure_policy``):
    - ``abort``: a parameter contract violation anywhere aborts the call
    - ``empty``: the violating subtree contributes an empty result and is logged
    Source failures always abort the call; no partial result is returned.
    """

    def __init__(self, source: FactSource, config: EngineConfig | None = None) -> None:
        if not hasattr(source, "fetch_facts"):
            raise TypeError(f"Source {source} must implement FactSource protocol")
        self.source = source
        self.config = config or get_config().engine
        self.logger = logger.bind(component="composition_evaluator", source=source.source_name)

    async def evaluate(
        self,
        node: NamedExpressionNode,
        population: Iterable[IndividualId],
        parameters: Mapping[str, Any] | None = None,
    ) -> ResultMap:
        """
        Evaluate a node for a population under a parameter binding.

        Raises:
            ParameterContractViolation: the binding does not satisfy the graph
                (always for the root node, per policy below it).
            SourceUnavailable: the fact source failed during the call.
        """
        start_time = time.perf_counter()
        binding = EvaluationBinding(
            population=frozenset(population), parameters=dict(parameters or {})
        )
        node.check_contract(binding.parameters)
        plan = self.bind(node, binding)

        snapshot = FactSnapshot(
            self.source,
            max_concurrent_fetches=self.config.max_concurrent_fetches,
            timeout_seconds=self.config.fetch_timeout_seconds,
        )
        try:
            result = await self._execute(plan, snapshot)
        except SourceUnavailable as e:
            self.logger.error(
                "evaluation_aborted",
                node=node.name,
                category=e.category,
                individuals=len(e.individuals),
                reason=e.reason,
            )
            raise

        self.logger.info(
            "evaluation_completed",
            node=node.name,
            population=len(binding.population),
            determined=len(result),
            fact_requests=snapshot.request_count,
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )
        return result

    async def evaluate_members(
        self,
        node: NamedExpressionNode,
        population: Iterable[IndividualId],
        parameters: Mapping[str, Any] | None = None,
    ) -> frozenset[IndividualId]:
        """Convenience wrapper returning the cohort (individuals with a present result)."""
        return members(await self.evaluate(node, population, parameters))

    def bind(self, node: NamedExpressionNode, binding: EvaluationBinding) -> BoundNode:
        """Apply referenced child templates below ``node``; no fact source access."""
        bound = BoundNode(node=node, binding=binding)
        for alias, child in node.referenced_children.items():
            try:
                child_parameters = child.template.apply(
                    binding.parameters, child.node.parameters, child.node.name
                )
                bound.children[alias] = self.bind(child.node, binding.derive(child_parameters))
            except ParameterContractViolation as violation:
                if self.config.failure_policy == "abort":
                    raise
                self.logger.warning(
                    "subtree_treated_as_empty",
                    parent=node.name,
                    child=alias,
                    error=str(violation),
                )
                bound.children[alias] = BoundNode(
                    node=child.node, binding=binding, violation=violation
                )
        return bound

    async def _execute(self, bound: BoundNode, snapshot: FactSnapshot) -> ResultMap:
        if bound.violation is not None:
            return {}

        child_results: dict[str, ResultMap] = {}
        if bound.children:
            child_results = await gather_concurrently(
                {alias: self._execute(child, snapshot) for alias, child in bound.children.items()}
            )

        result = await bound.node.compute(bound.binding, child_results, snapshot)
        self.logger.debug(
            "node_evaluated",
            node=bound.node.name,
            kind=bound.node.kind.value,
            members=len(members(result)),
        )
        return result
