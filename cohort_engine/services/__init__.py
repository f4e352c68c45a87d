"""
Core services for the engine.

This package contains the fact source boundary, the window selector, the
temporal fact reconciler, derived boolean rules, named expression nodes and
the composition evaluator.
"""

from .catalog import NodeCatalog, load_catalog
from .derived_rules import DerivedBooleanRule
from .evaluator import CompositionEvaluator
from .fact_sources import FactSnapshot, FactSource, InMemoryFactSource, Result
from .nodes import (
    CompositeNode,
    DerivedRuleNode,
    NamedExpressionNode,
    PrimitiveNode,
    ReconcilerNode,
)
from .reconciler import TemporalFactReconciler
from .window import in_window

__all__ = [
    "FactSource",
    "FactSnapshot",
    "InMemoryFactSource",
    "Result",
    "in_window",
    "TemporalFactReconciler",
    "DerivedBooleanRule",
    "NamedExpressionNode",
    "PrimitiveNode",
    "ReconcilerNode",
    "DerivedRuleNode",
    "CompositeNode",
    "NodeCatalog",
    "load_catalog",
    "CompositionEvaluator",
]
