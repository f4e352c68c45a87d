"""
Temporal fact reconciliation: one best date per individual from several sources.

For each individual the anchor (most recent anchor fact within the lookback
from the reference date) defines a validity window. Every candidate source
contributes its most recent in-window date, and the most recent of those wins.
No anchor means no date, and the candidate sources are never consulted for
that individual.
"""

import time
from collections.abc import Sequence
from datetime import datetime

import structlog

from cohort_engine.domain.models import (
    AnchorSpec,
    CandidateSource,
    DateField,
    Fact,
    IndividualId,
    Window,
)
from cohort_engine.services.concurrency import gather_concurrently
from cohort_engine.services.fact_sources import FactSnapshot
from cohort_engine.services.window import in_window

logger = structlog.get_logger(__name__)


def _candidate_date(fact: Fact, date_field: DateField) -> datetime | None:
    if date_field is DateField.TIMESTAMP:
        return fact.timestamp
    return fact.value if isinstance(fact.value, datetime) else None


class TemporalFactReconciler:
    """
    Reduces several independently sourced candidate date streams to one date.

    Sources are consulted in their declared order, but only timestamps decide
    the outcome: equal dates from different sources are interchangeable.
    """

    def __init__(
        self,
        anchor: AnchorSpec,
        sources: Sequence[CandidateSource],
        window: Window,
    ) -> None:
        if not sources:
            raise ValueError("A reconciler needs at least one candidate source")
        names = [source.name for source in sources]
        if len(set(names)) != len(names):
            raise ValueError(f"Candidate source names must be unique: {names}")
        self.anchor = anchor
        self.sources = tuple(sources)
        self.window = window
        self.logger = logger.bind(component="temporal_fact_reconciler")

    def best_from_source(
        self, source: CandidateSource, facts: Sequence[Fact], anchor: datetime
    ) -> datetime | None:
        """Most recent in-window candidate date one source offers, if any."""
        window = source.window or self.window
        in_range = [
            date
            for fact in source.qualifier.select(facts)
            if (date := _candidate_date(fact, source.date_field)) is not None
            and in_window(anchor, date, window)
        ]
        return max(in_range) if in_range else None

    def reconcile_individual(
        self, anchor: datetime | None, facts_by_source: dict[str, Sequence[Fact]]
    ) -> datetime | None:
        """Reduce one individual's per-source facts to a single date."""
        if anchor is None:
            return None
        candidates: list[datetime] = []
        for source in self.sources:
            date = self.best_from_source(source, facts_by_source.get(source.name, ()), anchor)
            if date is not None:
                candidates.append(date)
        if not candidates:
            return None
        candidates.sort()
        return candidates[-1]

    async def find_anchors(
        self,
        individuals: frozenset[IndividualId],
        reference_date: datetime,
        snapshot: FactSnapshot,
        location: int | str | None = None,
    ) -> dict[IndividualId, datetime]:
        """Most recent anchor timestamp per individual within the lookback."""
        request = self.anchor.query.to_request(
            individuals,
            location=location,
            on_or_after=reference_date - self.anchor.lookback.as_relativedelta(),
            on_or_before=reference_date,
        )
        grouped = await snapshot.fetch_grouped(request)
        return {individual: facts[-1].timestamp for individual, facts in grouped.items() if facts}

    async def reconcile(
        self,
        individuals: frozenset[IndividualId],
        reference_date: datetime,
        snapshot: FactSnapshot,
        location: int | str | None = None,
    ) -> dict[IndividualId, datetime | None]:
        """
        Reconcile every individual of a population.

        Returns:
            A map with one entry per individual; ``None`` when no anchor exists
            or no source offered an in-window date.

        Raises:
            SourceUnavailable: any anchor or candidate request failed. No
                partial map is returned.
        """
        start_time = time.perf_counter()
        anchors = await self.find_anchors(individuals, reference_date, snapshot, location)
        anchored = frozenset(anchors)

        facts_by_source: dict[str, dict[IndividualId, list[Fact]]] = {}
        if anchored:
            facts_by_source = await gather_concurrently(
                {
                    source.name: snapshot.fetch_grouped(
                        source.query.to_request(anchored, location=location)
                    )
                    for source in self.sources
                }
            )

        results: dict[IndividualId, datetime | None] = {}
        for individual in individuals:
            per_source = {
                name: grouped.get(individual, ()) for name, grouped in facts_by_source.items()
            }
            results[individual] = self.reconcile_individual(anchors.get(individual), per_source)

        self.logger.info(
            "reconciliation_completed",
            individuals=len(individuals),
            anchored=len(anchored),
            reconciled=sum(1 for date in results.values() if date is not None),
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )
        return results
