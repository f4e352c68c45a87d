"""
Named expression nodes: reusable, parameterized units of cohort computation.

Every node declares a parameter contract. Primitive nodes run one fixed-shape
fact query; composite nodes combine child nodes, each bound through its own
parameter template. Nodes hold direct references to their children, so a node
graph is a DAG built once and evaluated many times.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Literal

import structlog

from cohort_engine.domain.errors import ParameterContractViolation
from cohort_engine.domain.expressions import parse_composition
from cohort_engine.domain.models import (
    EvaluationBinding,
    FactQuery,
    IndividualId,
    ResultMap,
    TimeQualifier,
    ValueRange,
    members,
)
from cohort_engine.domain.templates import ParameterTemplate
from cohort_engine.services.derived_rules import DerivedBooleanRule
from cohort_engine.services.fact_sources import FactSnapshot
from cohort_engine.services.reconciler import TemporalFactReconciler

logger = structlog.get_logger(__name__)

PrimitiveOutput = Literal["membership", "timestamp", "value"]


class NodeKind(str, Enum):
    PRIMITIVE = "primitive"
    COMPOSITE = "composite"


@dataclass(frozen=True)
class ChildMapping:
    """A child node together with the template that binds its parameters."""

    node: "NamedExpressionNode"
    template: ParameterTemplate


def _as_child(child: Any) -> ChildMapping:
    """Accept a node, a ``(node, template)`` pair or a ready ChildMapping."""
    if isinstance(child, ChildMapping):
        return child
    if isinstance(child, tuple):
        node, template = child
        return ChildMapping(node, ParameterTemplate.coerce(template, node.parameters))
    return ChildMapping(child, ParameterTemplate.identity(child.parameters))


def as_datetime(value: Any, node: str, parameter: str) -> datetime:
    """Parameter value as a datetime; plain dates start at midnight."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    raise TypeError(f"Node {node!r} expects a date for parameter {parameter!r}, got {value!r}")


class NamedExpressionNode(ABC):
    """Base class for every node of a cohort definition graph."""

    kind: NodeKind = NodeKind.PRIMITIVE

    def __init__(self, name: str, parameters: Iterable[str], description: str = "") -> None:
        if not name:
            raise ValueError("Node name must not be empty")
        self.name = name
        self.parameters: frozenset[str] = frozenset(parameters)
        self.description = description
        self.logger = logger.bind(node=name)

    @property
    def children(self) -> Mapping[str, ChildMapping]:
        return {}

    @property
    def referenced_children(self) -> Mapping[str, ChildMapping]:
        """Children whose results ``compute`` reads; only these are bound and executed."""
        return self.children

    def check_contract(self, parameters: Mapping[str, Any]) -> None:
        missing = self.parameters - set(parameters)
        if missing:
            raise ParameterContractViolation(self.name, missing)

    @abstractmethod
    async def compute(
        self,
        binding: EvaluationBinding,
        child_results: Mapping[str, ResultMap],
        snapshot: FactSnapshot,
    ) -> ResultMap:
        """Produce this node's result once all of its children are resolved."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class PrimitiveNode(NamedExpressionNode):
    """
    Node backed by a single fact query.

    Bound parameters are mapped onto the query: ``location_parameter`` selects
    the location, ``on_or_after_parameter`` / ``on_or_before_parameter`` bound
    the fact timestamps. The result covers the whole population:

    - ``membership``: True when a qualifying fact exists
    - ``timestamp``: timestamp of the selected fact, or None
    - ``value``: value of the selected fact, or None
    """

    def __init__(
        self,
        name: str,
        query: FactQuery,
        output: PrimitiveOutput = "membership",
        qualifier: TimeQualifier = TimeQualifier.ANY,
        location_parameter: str | None = "location",
        on_or_after_parameter: str | None = None,
        on_or_before_parameter: str | None = None,
        value_range: ValueRange | None = None,
        description: str = "",
    ) -> None:
        parameters = {
            parameter
            for parameter in (location_parameter, on_or_after_parameter, on_or_before_parameter)
            if parameter is not None
        }
        super().__init__(name, parameters, description)
        self.query = query
        self.output = output
        self.qualifier = qualifier
        self.location_parameter = location_parameter
        self.on_or_after_parameter = on_or_after_parameter
        self.on_or_before_parameter = on_or_before_parameter
        self.value_range = value_range

    def _date_parameter(self, binding: EvaluationBinding, parameter: str | None) -> datetime | None:
        if parameter is None:
            return None
        return as_datetime(binding.parameters[parameter], self.name, parameter)

    async def compute(
        self,
        binding: EvaluationBinding,
        child_results: Mapping[str, ResultMap],
        snapshot: FactSnapshot,
    ) -> ResultMap:
        request = self.query.to_request(
            binding.population,
            location=(
                binding.parameters[self.location_parameter] if self.location_parameter else None
            ),
            on_or_after=self._date_parameter(binding, self.on_or_after_parameter),
            on_or_before=self._date_parameter(binding, self.on_or_before_parameter),
        )
        grouped = await snapshot.fetch_grouped(request)

        results: ResultMap = {}
        for individual in binding.population:
            selected = list(self.qualifier.select(grouped.get(individual, [])))
            if self.value_range is not None:
                selected = [fact for fact in selected if self.value_range.contains(fact.value)]
            if self.output == "membership":
                results[individual] = bool(selected)
            elif not selected:
                results[individual] = None
            elif self.output == "timestamp":
                results[individual] = selected[-1].timestamp
            else:
                results[individual] = selected[-1].value
        return results


async def _restricted(
    population: frozenset[IndividualId], restrict_to: FactQuery | None, snapshot: FactSnapshot
) -> frozenset[IndividualId]:
    """Individuals of the population holding a fact matching ``restrict_to``."""
    if restrict_to is None:
        return population
    grouped = await snapshot.fetch_grouped(restrict_to.to_request(population))
    return frozenset(individual for individual, facts in grouped.items() if facts)


class ReconcilerNode(NamedExpressionNode):
    """
    Exposes a temporal fact reconciler as a node producing one date per individual.

    Individuals excluded by ``restrict_to`` are left out of the result
    (undetermined), which is different from a reconciled ``None``.
    """

    def __init__(
        self,
        name: str,
        reconciler: TemporalFactReconciler,
        reference_parameter: str = "endDate",
        location_parameter: str | None = "location",
        restrict_to: FactQuery | None = None,
        description: str = "",
    ) -> None:
        parameters = {reference_parameter}
        if location_parameter is not None:
            parameters.add(location_parameter)
        super().__init__(name, parameters, description)
        self.reconciler = reconciler
        self.reference_parameter = reference_parameter
        self.location_parameter = location_parameter
        self.restrict_to = restrict_to

    async def compute(
        self,
        binding: EvaluationBinding,
        child_results: Mapping[str, ResultMap],
        snapshot: FactSnapshot,
    ) -> ResultMap:
        population = await _restricted(binding.population, self.restrict_to, snapshot)
        reference = as_datetime(
            binding.parameters[self.reference_parameter], self.name, self.reference_parameter
        )
        location = binding.parameters[self.location_parameter] if self.location_parameter else None
        reconciled = await self.reconciler.reconcile(population, reference, snapshot, location)
        return dict(reconciled)


class DerivedRuleNode(NamedExpressionNode):
    """Combines a primary and an overriding child result with a derived boolean rule."""

    kind = NodeKind.COMPOSITE

    def __init__(
        self,
        name: str,
        parameters: Iterable[str],
        primary: Any,
        override: Any,
        rule: DerivedBooleanRule | None = None,
        restrict_to: FactQuery | None = None,
        description: str = "",
    ) -> None:
        super().__init__(name, parameters, description)
        self._children = {"primary": _as_child(primary), "override": _as_child(override)}
        self.rule = rule or DerivedBooleanRule(name)
        self.restrict_to = restrict_to

    @property
    def children(self) -> Mapping[str, ChildMapping]:
        return dict(self._children)

    async def compute(
        self,
        binding: EvaluationBinding,
        child_results: Mapping[str, ResultMap],
        snapshot: FactSnapshot,
    ) -> ResultMap:
        population = await _restricted(binding.population, self.restrict_to, snapshot)
        return dict(
            self.rule.evaluate(child_results["primary"], child_results["override"], population)
        )


class CompositeNode(NamedExpressionNode):
    """
    Boolean composition over named child nodes.

    The expression is compiled when the node is built; referencing an alias
    that is not among the children raises MalformedExpression immediately.
    """

    kind = NodeKind.COMPOSITE

    def __init__(
        self,
        name: str,
        parameters: Iterable[str],
        expression: str,
        children: Mapping[str, Any],
        description: str = "",
    ) -> None:
        super().__init__(name, parameters, description)
        self._children = {alias: _as_child(child) for alias, child in children.items()}
        self.composition = expression
        self.expression = parse_composition(expression, declared=self._children)

    @property
    def children(self) -> Mapping[str, ChildMapping]:
        return dict(self._children)

    @property
    def referenced_children(self) -> Mapping[str, ChildMapping]:
        operands = self.expression.operands()
        return {alias: child for alias, child in self._children.items() if alias in operands}

    async def compute(
        self,
        binding: EvaluationBinding,
        child_results: Mapping[str, ResultMap],
        snapshot: FactSnapshot,
    ) -> ResultMap:
        operands = {
            alias: members(child_results.get(alias, {})) for alias in self.expression.operands()
        }
        cohort = self.expression.evaluate(operands, binding.population)
        return {individual: individual in cohort for individual in binding.population}
