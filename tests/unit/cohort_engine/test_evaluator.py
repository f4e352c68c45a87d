"""
Tests for named expression nodes and the composition evaluator.

Covers:
- Composition set algebra over primitive nodes
- Parameter forwarding to every descendant query, including overrides
- Fail-fast contract validation before any fact request
- Failure policies ("abort" vs "empty")
- SourceUnavailable aborting the whole call
- Request sharing across nodes within one call
- Primitive outputs, reconciler nodes and derived rule nodes
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime

import pytest

from cohort_engine.config import EngineConfig
from cohort_engine.domain.errors import (
    MalformedExpression,
    ParameterContractViolation,
    SourceUnavailable,
)
from cohort_engine.domain.models import (
    AnchorSpec,
    CandidateSource,
    Duration,
    Fact,
    FactQuery,
    FactRequest,
    TimeQualifier,
    ValueRange,
    Window,
)
from cohort_engine.services.evaluator import CompositionEvaluator
from cohort_engine.services.fact_sources import InMemoryFactSource, Result
from cohort_engine.services.nodes import (
    CompositeNode,
    DerivedRuleNode,
    NodeKind,
    PrimitiveNode,
    ReconcilerNode,
)
from cohort_engine.services.reconciler import TemporalFactReconciler

PERIOD = {"startDate": datetime(2024, 1, 1), "endDate": datetime(2024, 12, 31), "location": 10}
OBSERVATION_MAPPING = "onOrAfter=${startDate},onOrBefore=${endDate},location=${location}"


def _fact(
    individual: int,
    category: str,
    when: datetime = datetime(2024, 6, 1),
    value=None,
    location=None,
) -> Fact:
    return Fact(
        individual_id=individual, timestamp=when, category=category, value=value, location=location
    )


class RecordingFactSource(InMemoryFactSource):
    """In-memory source recording every request it receives."""

    def __init__(self, facts=()) -> None:
        super().__init__(facts, source_name="recording")
        self.requests: list[FactRequest] = []

    async def fetch_facts(self, request: FactRequest):
        self.requests.append(request)
        return await super().fetch_facts(request)

    def by_category(self) -> dict[str, FactRequest]:
        return {request.category: request for request in self.requests}


class UnavailableFactSource(InMemoryFactSource):
    def __init__(self, facts, failing: str) -> None:
        super().__init__(facts, source_name="flaky")
        self.failing = failing

    async def fetch_facts(self, request: FactRequest):
        if request.category == self.failing:
            error = SourceUnavailable(request.category, "connection reset", request.individuals)
            return Result.err(error)
        return await super().fetch_facts(request)


def _evaluator(source, policy: str = "abort") -> CompositionEvaluator:
    return CompositionEvaluator(source, EngineConfig(failure_policy=policy))


def _flag(name: str, category: str | None = None) -> PrimitiveNode:
    return PrimitiveNode(name, FactQuery(category=category or name), location_parameter=None)


class TestCompositionSetAlgebra:
    FACTS = [_fact(i, "supp") for i in (1, 2, 3)] + [_fact(i, "age") for i in (2, 3, 4)]
    POPULATION = frozenset(range(1, 7))

    def _composite(self, expression: str) -> CompositeNode:
        return CompositeNode("cohort", (), expression, {"supp": _flag("supp"), "age": _flag("age")})

    @pytest.mark.asyncio
    async def test_and_is_intersection(self) -> None:
        evaluator = _evaluator(InMemoryFactSource(self.FACTS))
        result = await evaluator.evaluate_members(self._composite("supp AND age"), self.POPULATION)
        assert result == {2, 3}

    @pytest.mark.asyncio
    async def test_or_is_union(self) -> None:
        evaluator = _evaluator(InMemoryFactSource(self.FACTS))
        result = await evaluator.evaluate_members(self._composite("supp OR age"), self.POPULATION)
        assert result == {1, 2, 3, 4}

    @pytest.mark.asyncio
    async def test_composite_result_covers_population(self) -> None:
        evaluator = _evaluator(InMemoryFactSource(self.FACTS))
        result = await evaluator.evaluate(self._composite("supp AND NOT age"), self.POPULATION)
        assert result == {1: True, 2: False, 3: False, 4: False, 5: False, 6: False}

    @pytest.mark.asyncio
    async def test_nested_composites(self) -> None:
        inner = self._composite("supp AND age")
        outer = CompositeNode(
            "outer", (), "both OR dead", {"both": inner, "dead": _flag("dead")}
        )
        facts = [*self.FACTS, _fact(6, "dead")]
        result = await _evaluator(InMemoryFactSource(facts)).evaluate_members(outer, self.POPULATION)
        assert result == {2, 3, 6}

    def test_undeclared_operand_fails_at_construction(self) -> None:
        with pytest.raises(MalformedExpression):
            CompositeNode("cohort", (), "supp AND dead", {"supp": _flag("supp")})

    def test_kinds(self) -> None:
        assert _flag("supp").kind is NodeKind.PRIMITIVE
        assert self._composite("supp").kind is NodeKind.COMPOSITE


def _forwarding_graph() -> CompositeNode:
    viral_load = PrimitiveNode(
        "viralLoad",
        FactQuery(category="viral_load"),
        on_or_after_parameter="onOrAfter",
        on_or_before_parameter="onOrBefore",
    )
    enrolled = PrimitiveNode(
        "enrolled", FactQuery(category="enrolled"), on_or_before_parameter="onOrBefore"
    )
    transfers = PrimitiveNode("transfers", FactQuery(category="transfer"))
    base = CompositeNode(
        "base",
        ("endDate", "location"),
        "enrolled AND NOT transferred",
        {
            "enrolled": (enrolled, "onOrBefore=${endDate},location=${location}"),
            "transferred": (transfers, {"location": 99}),
        },
    )
    return CompositeNode(
        "suppression",
        ("startDate", "endDate", "location"),
        "vl AND base",
        {
            "vl": (viral_load, OBSERVATION_MAPPING),
            "base": (base, "endDate=${endDate},location=${location}"),
        },
    )


class TestParameterForwarding:
    @pytest.mark.asyncio
    async def test_location_reaches_every_descendant_query(self) -> None:
        source = RecordingFactSource()
        await _evaluator(source).evaluate(_forwarding_graph(), {1, 2}, PERIOD)

        requests = source.by_category()
        assert requests["viral_load"].location == 10
        assert requests["viral_load"].on_or_after == datetime(2024, 1, 1)
        assert requests["viral_load"].on_or_before == datetime(2024, 12, 31)
        assert requests["enrolled"].location == 10
        assert requests["enrolled"].on_or_before == datetime(2024, 12, 31)

    @pytest.mark.asyncio
    async def test_explicit_override_wins(self) -> None:
        source = RecordingFactSource()
        await _evaluator(source).evaluate(_forwarding_graph(), {1, 2}, PERIOD)
        assert source.by_category()["transfer"].location == 99

    @pytest.mark.asyncio
    async def test_rebinding_changes_only_referencing_descendants(self) -> None:
        first = RecordingFactSource()
        await _evaluator(first).evaluate(_forwarding_graph(), {1, 2}, PERIOD)
        second = RecordingFactSource()
        await _evaluator(second).evaluate(
            _forwarding_graph(), {1, 2}, {**PERIOD, "endDate": datetime(2024, 6, 30)}
        )

        before, after = first.by_category(), second.by_category()
        assert after["viral_load"].on_or_before == datetime(2024, 6, 30)
        assert after["enrolled"].on_or_before == datetime(2024, 6, 30)
        assert after["transfer"] == before["transfer"]

    @pytest.mark.asyncio
    async def test_location_filters_facts(self) -> None:
        facts = [
            _fact(1, "viral_load", location=10),
            _fact(2, "viral_load", location=11),
            _fact(1, "enrolled", datetime(2020, 1, 1), location=10),
            _fact(2, "enrolled", datetime(2020, 1, 1), location=11),
        ]
        evaluator = _evaluator(InMemoryFactSource(facts))
        assert await evaluator.evaluate_members(_forwarding_graph(), {1, 2}, PERIOD) == {1}
        assert await evaluator.evaluate_members(
            _forwarding_graph(), {1, 2}, {**PERIOD, "location": 11}
        ) == {2}

    @pytest.mark.asyncio
    async def test_plain_dates_are_accepted(self) -> None:
        source = RecordingFactSource()
        parameters = {"startDate": date(2024, 1, 1), "endDate": date(2024, 12, 31), "location": 10}
        await _evaluator(source).evaluate(_forwarding_graph(), {1}, parameters)
        assert source.by_category()["viral_load"].on_or_before == datetime(2024, 12, 31)


class TestFailFast:
    @pytest.mark.asyncio
    async def test_missing_root_parameter_raises_before_any_request(self) -> None:
        source = RecordingFactSource()
        with pytest.raises(ParameterContractViolation, match="startDate"):
            await _evaluator(source).evaluate(
                _forwarding_graph(), {1}, {"endDate": datetime(2024, 12, 31), "location": 10}
            )
        assert source.requests == []

    @pytest.mark.asyncio
    async def test_unbound_template_reference_deep_in_graph_raises_before_any_request(self) -> None:
        broken = CompositeNode(
            "broken",
            ("location",),
            "vl AND deep",
            {
                "vl": PrimitiveNode("vl", FactQuery(category="viral_load")),
                "deep": (
                    PrimitiveNode(
                        "deep", FactQuery(category="x"), on_or_before_parameter="onOrBefore"
                    ),
                    "onOrBefore=${cutoff},location=${location}",
                ),
            },
        )
        source = RecordingFactSource()
        with pytest.raises(ParameterContractViolation) as exc_info:
            await _evaluator(source).evaluate(broken, {1}, {"location": 10})
        assert exc_info.value.node == "deep"
        assert source.requests == []

    @pytest.mark.asyncio
    async def test_empty_policy_treats_violating_subtree_as_empty(self) -> None:
        node = CompositeNode(
            "cohort",
            (),
            "supp OR missing",
            {
                "supp": _flag("supp"),
                "missing": (
                    PrimitiveNode(
                        "dated", FactQuery(category="dated"), on_or_before_parameter="onOrBefore"
                    ),
                    "onOrBefore=${endDate}",
                ),
            },
        )
        facts = [_fact(1, "supp"), _fact(2, "dated")]

        with pytest.raises(ParameterContractViolation):
            await _evaluator(InMemoryFactSource(facts)).evaluate(node, {1, 2})

        source = RecordingFactSource(facts)
        result = await _evaluator(source, policy="empty").evaluate_members(node, {1, 2})
        assert result == {1}
        assert {request.category for request in source.requests} == {"supp"}


class TestSourceFailures:
    @pytest.mark.asyncio
    async def test_unavailable_source_aborts_whole_call(self) -> None:
        node = CompositeNode("cohort", (), "supp OR age", {"supp": _flag("supp"), "age": _flag("age")})
        source = UnavailableFactSource([_fact(1, "supp")], failing="age")
        with pytest.raises(SourceUnavailable) as exc_info:
            await _evaluator(source).evaluate(node, {1, 2})
        assert exc_info.value.category == "age"
        assert exc_info.value.individuals == {1, 2}

    @pytest.mark.asyncio
    async def test_unreferenced_children_are_never_fetched(self) -> None:
        node = CompositeNode("cohort", (), "supp", {"supp": _flag("supp"), "age": _flag("age")})
        source = UnavailableFactSource([_fact(1, "supp")], failing="age")
        assert await _evaluator(source).evaluate_members(node, {1, 2}) == {1}

    @pytest.mark.asyncio
    async def test_unreferenced_children_issue_no_requests(self) -> None:
        node = CompositeNode("cohort", (), "supp", {"supp": _flag("supp"), "age": _flag("age")})
        source = RecordingFactSource([_fact(1, "supp")])
        await _evaluator(source).evaluate(node, {1, 2})
        assert {request.category for request in source.requests} == {"supp"}

    def test_rejects_sources_without_fetch_facts(self) -> None:
        with pytest.raises(TypeError, match="FactSource protocol"):
            CompositionEvaluator(object())  # type: ignore[arg-type]


class TestSnapshotSharing:
    @pytest.mark.asyncio
    async def test_identical_queries_in_one_call_fetch_once(self) -> None:
        node = CompositeNode(
            "cohort",
            (),
            "a AND NOT b",
            {"a": _flag("a", "shared"), "b": _flag("b", "shared")},
        )
        source = RecordingFactSource([_fact(1, "shared")])
        await _evaluator(source).evaluate(node, {1, 2})
        assert len(source.requests) == 1

    @pytest.mark.asyncio
    async def test_separate_calls_do_not_share_facts(self) -> None:
        source = RecordingFactSource([_fact(1, "supp")])
        evaluator = _evaluator(source)
        await evaluator.evaluate(_flag("supp"), {1})
        await evaluator.evaluate(_flag("supp"), {1})
        assert len(source.requests) == 2


class TestPrimitiveOutputs:
    FACTS = [
        _fact(1, "viral_load", datetime(2024, 2, 1), 50000),
        _fact(1, "viral_load", datetime(2024, 8, 1), 40),
        _fact(2, "viral_load", datetime(2024, 3, 1), 20),
        _fact(2, "viral_load", datetime(2024, 9, 1), 3000),
    ]

    @pytest.mark.asyncio
    async def test_last_value_within_range(self) -> None:
        node = PrimitiveNode(
            "supp",
            FactQuery(category="viral_load"),
            qualifier=TimeQualifier.LAST,
            location_parameter=None,
            value_range=ValueRange(maximum=1000),
        )
        result = await _evaluator(InMemoryFactSource(self.FACTS)).evaluate(node, {1, 2, 3})
        assert result == {1: True, 2: False, 3: False}

    @pytest.mark.asyncio
    async def test_timestamp_output(self) -> None:
        node = PrimitiveNode(
            "firstVl",
            FactQuery(category="viral_load"),
            output="timestamp",
            qualifier=TimeQualifier.FIRST,
            location_parameter=None,
        )
        result = await _evaluator(InMemoryFactSource(self.FACTS)).evaluate(node, {1, 3})
        assert result == {1: datetime(2024, 2, 1), 3: None}

    @pytest.mark.asyncio
    async def test_value_output(self) -> None:
        node = PrimitiveNode(
            "lastVl",
            FactQuery(category="viral_load"),
            output="value",
            qualifier=TimeQualifier.LAST,
            location_parameter=None,
        )
        result = await _evaluator(InMemoryFactSource(self.FACTS)).evaluate(node, {2})
        assert result == {2: 3000}

    @pytest.mark.asyncio
    async def test_non_date_date_parameter_is_rejected(self) -> None:
        node = PrimitiveNode(
            "vl",
            FactQuery(category="viral_load"),
            location_parameter=None,
            on_or_before_parameter="onOrBefore",
        )
        with pytest.raises(TypeError, match="expects a date"):
            await _evaluator(InMemoryFactSource(self.FACTS)).evaluate(node, {1}, {"onOrBefore": "2024"})


def _breastfeeding_node(restrict_to: FactQuery | None = None) -> ReconcilerNode:
    reconciler = TemporalFactReconciler(
        anchor=AnchorSpec(query=FactQuery(category="viral_load"), lookback=Duration(months=12)),
        sources=[
            CandidateSource(name="lactating", query=FactQuery(category="lactating")),
            CandidateSource(name="state", query=FactQuery(category="breastfeeding_state")),
        ],
        window=Window.months_before(18),
    )
    return ReconcilerNode(
        "breastfeedingDate",
        reconciler,
        reference_parameter="onOrBefore",
        location_parameter=None,
        restrict_to=restrict_to,
    )


class TestReconcilerAndRuleNodes:
    FACTS = [
        _fact(1, "viral_load", datetime(2024, 6, 1)),
        _fact(1, "lactating", datetime(2024, 1, 10)),
        _fact(1, "gender", datetime(1990, 1, 1), "F"),
        _fact(2, "viral_load", datetime(2024, 6, 1)),
        _fact(2, "gender", datetime(1990, 1, 1), "M"),
        _fact(2, "lactating", datetime(2024, 1, 10)),
        _fact(3, "gender", datetime(1990, 1, 1), "F"),
    ]
    FEMALE = FactQuery(category="gender", value_filter=frozenset({"F"}))

    @pytest.mark.asyncio
    async def test_reconciled_dates_and_absence(self) -> None:
        node = _breastfeeding_node()
        result = await _evaluator(InMemoryFactSource(self.FACTS)).evaluate(
            node, {1, 2, 3}, {"onOrBefore": datetime(2024, 12, 31)}
        )
        assert result == {1: datetime(2024, 1, 10), 2: datetime(2024, 1, 10), 3: None}

    @pytest.mark.asyncio
    async def test_restricted_individuals_are_undetermined(self) -> None:
        node = _breastfeeding_node(restrict_to=self.FEMALE)
        result = await _evaluator(InMemoryFactSource(self.FACTS)).evaluate(
            node, {1, 2, 3}, {"onOrBefore": datetime(2024, 12, 31)}
        )
        assert result == {1: datetime(2024, 1, 10), 3: None}

    @pytest.mark.asyncio
    async def test_derived_rule_node(self) -> None:
        pregnancy = PrimitiveNode(
            "pregnancyDate",
            FactQuery(category="pregnant"),
            output="timestamp",
            qualifier=TimeQualifier.LAST,
            location_parameter=None,
            on_or_before_parameter="onOrBefore",
        )
        node = DerivedRuleNode(
            "pregnant",
            ("onOrBefore",),
            primary=pregnancy,
            override=_breastfeeding_node(),
            restrict_to=self.FEMALE,
        )
        facts = [
            *self.FACTS,
            _fact(1, "pregnant", datetime(2023, 12, 1)),
            _fact(3, "pregnant", datetime(2024, 5, 1)),
        ]
        result = await _evaluator(InMemoryFactSource(facts)).evaluate(
            node, {1, 2, 3}, {"onOrBefore": datetime(2024, 12, 31)}
        )
        assert result == {1: False, 3: True}


class SlowFactSource(InMemoryFactSource):
    def __init__(self, facts, delay_seconds: float) -> None:
        super().__init__(facts, source_name="slow")
        self.delay_seconds = delay_seconds

    async def fetch_facts(self, request: FactRequest):
        await asyncio.sleep(self.delay_seconds)
        return await super().fetch_facts(request)


class TestPerformanceRegression:
    """Performance regression tests with realistic baselines."""

    @pytest.mark.performance
    @pytest.mark.asyncio
    async def test_sibling_fetches_run_concurrently(self) -> None:
        children = {f"c{i}": _flag(f"c{i}") for i in range(5)}
        node = CompositeNode("cohort", (), " OR ".join(children), children)
        source = SlowFactSource([_fact(1, "c0")], delay_seconds=0.05)

        start_time = asyncio.get_event_loop().time()
        result = await _evaluator(source).evaluate_members(node, {1, 2})
        duration = asyncio.get_event_loop().time() - start_time

        assert result == {1}
        assert duration < 0.2, f"Evaluation took too long: {duration:.3f}s"

    @pytest.mark.performance
    @pytest.mark.asyncio
    async def test_large_population_single_pass(self) -> None:
        population = range(20_000)
        facts = [_fact(i, "supp") for i in population if i % 2] + [
            _fact(i, "age") for i in population if i % 3 == 0
        ]
        node = CompositeNode("cohort", (), "supp AND age", {"supp": _flag("supp"), "age": _flag("age")})

        result = await _evaluator(InMemoryFactSource(facts)).evaluate_members(node, population)

        assert result == {i for i in population if i % 2 and i % 3 == 0}
