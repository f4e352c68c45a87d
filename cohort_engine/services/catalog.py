"""
Node catalogue: the named node DAG of a report, built once.

Definitions arrive already parsed (dicts or Pydantic models) from the
surrounding application. Loading resolves child references in dependency
order and rejects unknown children, cycles and malformed expressions before
any evaluation is attempted.
"""

from collections.abc import Callable, Iterable, Iterator, Mapping
from typing import Annotated, Any, Literal

import structlog
from pydantic import BaseModel, Field, TypeAdapter

from cohort_engine.domain.errors import MalformedExpression
from cohort_engine.domain.models import FactQuery, TimeQualifier, ValueRange
from cohort_engine.domain.templates import ParameterTemplate
from cohort_engine.services.nodes import CompositeNode, NamedExpressionNode, PrimitiveNode

logger = structlog.get_logger(__name__)


class PrimitiveDefinition(BaseModel):
    """Declarative form of a PrimitiveNode."""

    kind: Literal["primitive"] = "primitive"
    name: str = Field(min_length=1)
    query: FactQuery
    output: Literal["membership", "timestamp", "value"] = "membership"
    qualifier: TimeQualifier = TimeQualifier.ANY
    location_parameter: str | None = "location"
    on_or_after_parameter: str | None = None
    on_or_before_parameter: str | None = None
    value_range: ValueRange | None = None
    description: str = ""


class ChildDefinition(BaseModel):
    node: str = Field(min_length=1, description="Catalogue name of the child node")
    mapping: str | dict[str, Any] | None = Field(
        default=None, description="Parameter template; omitted means identity forwarding"
    )


class CompositeDefinition(BaseModel):
    """Declarative form of a CompositeNode."""

    kind: Literal["composite"] = "composite"
    name: str = Field(min_length=1)
    parameters: list[str] = Field(default_factory=list)
    expression: str
    children: dict[str, ChildDefinition]
    description: str = ""


NodeDefinition = Annotated[PrimitiveDefinition | CompositeDefinition, Field(discriminator="kind")]
_definition_adapter: TypeAdapter[NodeDefinition] = TypeAdapter(NodeDefinition)


class NodeCatalog:
    """Nodes keyed by name. Names are unique; nodes are never replaced."""

    def __init__(self, nodes: Iterable[NamedExpressionNode] = ()) -> None:
        self._nodes: dict[str, NamedExpressionNode] = {}
        for node in nodes:
            self.add(node)

    def add(self, node: NamedExpressionNode) -> NamedExpressionNode:
        if node.name in self._nodes:
            raise ValueError(f"Node {node.name!r} is already defined")
        self._nodes[node.name] = node
        return node

    def __getitem__(self, name: str) -> NamedExpressionNode:
        try:
            return self._nodes[name]
        except KeyError:
            raise KeyError(f"Unknown node {name!r}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def names(self) -> list[str]:
        return sorted(self._nodes)


def _build_primitive(definition: PrimitiveDefinition) -> PrimitiveNode:
    return PrimitiveNode(
        name=definition.name,
        query=definition.query,
        output=definition.output,
        qualifier=definition.qualifier,
        location_parameter=definition.location_parameter,
        on_or_after_parameter=definition.on_or_after_parameter,
        on_or_before_parameter=definition.on_or_before_parameter,
        value_range=definition.value_range,
        description=definition.description,
    )


def _build_composite(
    definition: CompositeDefinition, resolve: Callable[[str], NamedExpressionNode]
) -> CompositeNode:
    children = {}
    for alias, child in definition.children.items():
        node = resolve(child.node)
        children[alias] = (node, ParameterTemplate.coerce(child.mapping, node.parameters))
    return CompositeNode(
        name=definition.name,
        parameters=definition.parameters,
        expression=definition.expression,
        children=children,
        description=definition.description,
    )


def load_catalog(
    definitions: Iterable[NodeDefinition | Mapping[str, Any]],
    catalog: NodeCatalog | None = None,
) -> NodeCatalog:
    """
    Build nodes from definitions, children before parents.

    Nothing is added to ``catalog`` unless every definition builds; a failed
    load leaves it exactly as it was.

    Args:
        definitions: primitive/composite definitions in any order.
        catalog: existing catalogue (e.g. holding reconciler nodes) that the
            definitions may reference; new nodes are added to it.

    Raises:
        MalformedExpression: unknown child node, circular reference, or an
            expression that does not compile against its declared children.
    """
    catalog = catalog if catalog is not None else NodeCatalog()
    parsed: dict[str, PrimitiveDefinition | CompositeDefinition] = {}
    for raw in definitions:
        definition = raw if isinstance(raw, BaseModel) else _definition_adapter.validate_python(raw)
        if definition.name in parsed or definition.name in catalog:
            raise ValueError(f"Node {definition.name!r} is defined more than once")
        parsed[definition.name] = definition

    built: dict[str, NamedExpressionNode] = {}
    building: list[str] = []

    def resolve(name: str) -> NamedExpressionNode:
        return built[name] if name in built else catalog[name]

    def build(name: str) -> None:
        if name in built or name in catalog:
            return
        if name in building:
            cycle = " -> ".join([*building[building.index(name) :], name])
            raise MalformedExpression(cycle, "circular node reference")
        definition = parsed[name]
        if isinstance(definition, PrimitiveDefinition):
            built[name] = _build_primitive(definition)
            return
        building.append(name)
        for alias, child in definition.children.items():
            if child.node not in parsed and child.node not in catalog:
                raise MalformedExpression(
                    definition.expression,
                    f"child {alias!r} of {name!r} refers to unknown node {child.node!r}",
                )
            build(child.node)
        building.pop()
        built[name] = _build_composite(definition, resolve)

    for name in parsed:
        build(name)

    for node in built.values():
        catalog.add(node)

    logger.info("catalog_loaded", definitions=len(parsed), nodes=len(catalog))
    return catalog
