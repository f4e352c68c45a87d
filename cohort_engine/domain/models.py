"""
Domain models for temporal fact derivation and cohort composition.

These models represent the core concepts and are storage-agnostic: facts are
produced by a fact source adapter, everything else is configuration or
per-call evaluation state. All of them are immutable.
"""

from collections.abc import Mapping, Sequence
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict, Field, model_validator

from cohort_engine.domain.errors import InvalidWindow

IndividualId = int | UUID
FactValue = str | int | float | datetime | None
ResultValue = bool | FactValue
ResultMap = dict[IndividualId, ResultValue]


class TimeQualifier(str, Enum):
    """Which of an individual's facts a query considers."""

    ANY = "any"
    FIRST = "first"
    LAST = "last"

    def select(self, facts: Sequence["Fact"]) -> Sequence["Fact"]:
        """Reduce facts already in timestamp order to the ones this qualifier considers."""
        if not facts or self is TimeQualifier.ANY:
            return facts
        return [facts[0]] if self is TimeQualifier.FIRST else [facts[-1]]


class DateField(str, Enum):
    """Where a candidate date is read from on a fact."""

    TIMESTAMP = "timestamp"  # encounter / state start date
    VALUE = "value"  # a recorded date value, e.g. prior delivery date


class Fact(BaseModel):
    """Single timestamped, categorized observation about an individual."""

    model_config = ConfigDict(frozen=True)

    individual_id: IndividualId
    timestamp: datetime
    category: str
    value: FactValue = None
    encounter_type: str | None = None
    location: int | str | None = None


class ValueRange(BaseModel):
    """Numeric value bounds: minimum inclusive, maximum exclusive."""

    model_config = ConfigDict(frozen=True)

    minimum: float | None = None
    maximum: float | None = None

    def contains(self, value: FactValue) -> bool:
        if isinstance(value, bool) or not isinstance(value, int | float):
            return False
        if self.minimum is not None and value < self.minimum:
            return False
        if self.maximum is not None and value >= self.maximum:
            return False
        return True


class FactQuery(BaseModel):
    """Fixed query shape: category plus optional value and encounter restrictions."""

    model_config = ConfigDict(frozen=True)

    category: str = Field(min_length=1)
    value_filter: frozenset[str | int | float] | None = None
    encounter_types: frozenset[str] | None = None

    def to_request(
        self,
        individuals: frozenset[IndividualId],
        location: int | str | None = None,
        on_or_after: datetime | None = None,
        on_or_before: datetime | None = None,
    ) -> "FactRequest":
        return FactRequest(
            individuals=individuals,
            category=self.category,
            value_filter=self.value_filter,
            encounter_types=self.encounter_types,
            location=location,
            on_or_after=on_or_after,
            on_or_before=on_or_before,
        )


class FactRequest(BaseModel):
    """
    A single fact source round-trip.

    Hashable, so identical requests issued by different nodes during one
    evaluation resolve to one fetch.
    """

    model_config = ConfigDict(frozen=True)

    individuals: frozenset[IndividualId]
    category: str
    value_filter: frozenset[str | int | float] | None = None
    encounter_types: frozenset[str] | None = None
    location: int | str | None = None
    on_or_after: datetime | None = None
    on_or_before: datetime | None = None

    def matches(self, fact: Fact) -> bool:
        """Check whether a fact satisfies every restriction of this request."""
        if fact.individual_id not in self.individuals or fact.category != self.category:
            return False
        if self.value_filter is not None and fact.value not in self.value_filter:
            return False
        if self.encounter_types is not None and fact.encounter_type not in self.encounter_types:
            return False
        if self.location is not None and fact.location != self.location:
            return False
        if self.on_or_after is not None and fact.timestamp < self.on_or_after:
            return False
        if self.on_or_before is not None and fact.timestamp > self.on_or_before:
            return False
        return True


class Duration(BaseModel):
    """Calendar-aware duration; month arithmetic clamps to the end of the month."""

    model_config = ConfigDict(frozen=True)

    years: int = 0
    months: int = 0
    days: int = 0
    seconds: int = 0
    microseconds: int = 0

    @property
    def is_negative(self) -> bool:
        parts = (self.years, self.months, self.days, self.seconds, self.microseconds)
        return any(part < 0 for part in parts)

    def as_relativedelta(self) -> relativedelta:
        return relativedelta(
            years=self.years,
            months=self.months,
            days=self.days,
            seconds=self.seconds,
            microseconds=self.microseconds,
        )


class Window(BaseModel):
    """
    Validity window relative to an anchor.

    A fact is in window iff ``anchor - before <= ts <= anchor + after``.
    When ``after`` is omitted the anchor itself is the upper bound.
    """

    model_config = ConfigDict(frozen=True)

    before: Duration = Field(default_factory=Duration)
    after: Duration | None = None

    @model_validator(mode="after")
    def offsets_not_negative(self) -> "Window":
        if self.before.is_negative:
            raise InvalidWindow(f"Window offset before anchor must not be negative: {self.before}")
        if self.after is not None and self.after.is_negative:
            raise InvalidWindow(f"Window offset after anchor must not be negative: {self.after}")
        return self

    @classmethod
    def months_before(cls, months: int) -> "Window":
        return cls(before=Duration(months=months))


class AnchorSpec(BaseModel):
    """The anchor is the most recent matching fact within the lookback from the reference date."""

    model_config = ConfigDict(frozen=True)

    query: FactQuery
    lookback: Duration

    @model_validator(mode="after")
    def lookback_not_negative(self) -> "AnchorSpec":
        if self.lookback.is_negative:
            raise InvalidWindow(f"Anchor lookback must not be negative: {self.lookback}")
        return self


class CandidateSource(BaseModel):
    """One independently sourced stream of candidate dates for a reconciler."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    query: FactQuery
    date_field: DateField = DateField.TIMESTAMP
    qualifier: TimeQualifier = TimeQualifier.ANY
    window: Window | None = Field(
        default=None, description="Overrides the reconciler's shared window when set"
    )


class EvaluationBinding(BaseModel):
    """Population and parameter values handed to a single node evaluation."""

    model_config = ConfigDict(frozen=True)

    population: frozenset[IndividualId]
    parameters: dict[str, Any] = Field(default_factory=dict)

    def derive(self, parameters: Mapping[str, Any]) -> "EvaluationBinding":
        """New binding for a child: same population, the child's own parameters."""
        return EvaluationBinding(population=self.population, parameters=dict(parameters))

    def restrict(self, population: frozenset[IndividualId]) -> "EvaluationBinding":
        return EvaluationBinding(population=population, parameters=dict(self.parameters))


def is_present(value: ResultValue) -> bool:
    """A result counts as evidence unless it is None or False."""
    return value is not None and value is not False


def members(result_map: Mapping[IndividualId, ResultValue]) -> frozenset[IndividualId]:
    """Individuals whose result is present (True, a date, or a value)."""
    return frozenset(key for key, value in result_map.items() if is_present(value))
