"""
Error kinds raised by the cohort engine.

Configuration-shape errors (MalformedExpression, InvalidWindow) are raised while
definitions are built, before any population is processed. Runtime errors
(SourceUnavailable) abort the whole evaluation call.

None of these derive from ValueError: Pydantic validators re-raise them as-is
instead of folding them into a ValidationError.
"""

from collections.abc import Iterable
from typing import Any


class CohortEngineError(Exception):
    """Base class for all engine errors."""


class InvalidWindow(CohortEngineError):
    """A validity window was configured with a negative offset."""


class MalformedExpression(CohortEngineError):
    """A composition expression or node graph cannot be compiled."""

    def __init__(self, expression: str, reason: str, position: int | None = None) -> None:
        self.expression = expression
        self.reason = reason
        self.position = position
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"Malformed expression {expression!r}{where}: {reason}")


class ParameterContractViolation(CohortEngineError):
    """A node's declared parameters are not satisfied by its caller's binding."""

    def __init__(self, node: str, missing: Iterable[str], detail: str = "") -> None:
        self.node = node
        self.missing = tuple(sorted(missing))
        message = f"Node {node!r} is missing parameters: {', '.join(self.missing)}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class FactSourceError(CohortEngineError):
    """Base class for conditions reported by a fact source adapter."""


class NotFound(FactSourceError):
    """The query was valid but matched no facts."""


class SourceUnavailable(FactSourceError):
    """The fact source could not complete a query."""

    def __init__(
        self,
        category: str,
        reason: str,
        individuals: Iterable[Any] = (),
        source_name: str | None = None,
    ) -> None:
        self.category = category
        self.reason = reason
        self.individuals = frozenset(individuals)
        self.source_name = source_name
        origin = f" from {source_name}" if source_name else ""
        super().__init__(
            f"Facts for category {category!r}{origin} unavailable "
            f"({len(self.individuals)} individuals): {reason}"
        )
