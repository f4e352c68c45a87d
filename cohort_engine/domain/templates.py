"""
Parameter templates: how a composite node binds a child's parameters.

A template maps each child parameter to an expression over the parent's bound
values. ``${name}`` alone forwards the parent's value unchanged (type kept),
text with embedded references is string-substituted, anything else is a
literal override.
"""

import re
from collections.abc import Iterable, Mapping
from typing import Any

from cohort_engine.domain.errors import ParameterContractViolation

_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ParameterTemplate:
    """Immutable child-parameter -> value-expression mapping."""

    def __init__(self, entries: Mapping[str, Any]) -> None:
        self._entries: dict[str, Any] = dict(entries)

    @classmethod
    def parse(cls, text: str) -> "ParameterTemplate":
        """Parse ``"startDate=${startDate},location=${location}"``; empty text maps nothing."""
        entries: dict[str, Any] = {}
        for chunk in text.split(","):
            chunk = chunk.strip()
            if not chunk:
                continue
            name, separator, value = chunk.partition("=")
            if not separator or not name.strip():
                raise ValueError(f"Invalid parameter mapping entry: {chunk!r}")
            entries[name.strip()] = value.strip()
        return cls(entries)

    @classmethod
    def identity(cls, names: Iterable[str]) -> "ParameterTemplate":
        return cls({name: f"${{{name}}}" for name in names})

    @classmethod
    def coerce(
        cls,
        template: "ParameterTemplate | Mapping[str, Any] | str | None",
        names: Iterable[str],
    ) -> "ParameterTemplate":
        """Accept any supported template form; None means identity over ``names``."""
        if template is None:
            return cls.identity(names)
        if isinstance(template, ParameterTemplate):
            return template
        if isinstance(template, str):
            return cls.parse(template)
        return cls(template)

    @property
    def entries(self) -> Mapping[str, Any]:
        return dict(self._entries)

    def references(self) -> frozenset[str]:
        """Parent parameter names this template reads."""
        found: set[str] = set()
        for value in self._entries.values():
            if isinstance(value, str):
                found.update(_REFERENCE.findall(value))
        return frozenset(found)

    def apply(
        self, parent: Mapping[str, Any], required: Iterable[str], node_name: str
    ) -> dict[str, Any]:
        """
        Bind a child's parameters from its parent's values.

        Raises:
            ParameterContractViolation: a referenced parent value is unbound, or
                a parameter in ``required`` is left without a value.
        """
        unbound = self.references() - set(parent)
        if unbound:
            raise ParameterContractViolation(
                node_name, unbound, detail="referenced by the template but not bound by the caller"
            )

        bound: dict[str, Any] = {}
        for name, expression in self._entries.items():
            bound[name] = _substitute(expression, parent)

        missing = set(required) - set(bound)
        if missing:
            raise ParameterContractViolation(node_name, missing)
        return bound

    def __repr__(self) -> str:
        body = ",".join(f"{name}={value}" for name, value in self._entries.items())
        return f"ParameterTemplate({body!r})"


def _substitute(expression: Any, parent: Mapping[str, Any]) -> Any:
    if not isinstance(expression, str):
        return expression
    whole = _REFERENCE.fullmatch(expression)
    if whole:
        return parent[whole.group(1)]
    return _REFERENCE.sub(lambda match: str(parent[match.group(1)]), expression)
