"""
Derived boolean rules over two per-individual facts.

Unlike reconciled dates, derived booleans never leave an individual
undetermined: no evidence is ``False``.
"""

from collections.abc import Iterable, Mapping
from datetime import datetime

from cohort_engine.domain.models import IndividualId, ResultValue, is_present


class DerivedBooleanRule:
    """
    Eligible when the primary fact exists, unless a conflicting fact dated
    strictly after it exists too.

    A conflicting fact on the very same timestamp does not override.
    """

    def __init__(self, name: str = "derived_boolean") -> None:
        self.name = name

    def decide(self, primary: ResultValue, override: ResultValue) -> bool:
        if not is_present(primary):
            return False
        if (
            isinstance(primary, datetime)
            and isinstance(override, datetime)
            and override > primary
        ):
            return False
        return True

    def evaluate(
        self,
        facts_a: Mapping[IndividualId, ResultValue],
        facts_b: Mapping[IndividualId, ResultValue],
        population: Iterable[IndividualId] | None = None,
    ) -> dict[IndividualId, bool]:
        """
        One boolean per individual.

        Args:
            facts_a: primary signal per individual (date or boolean).
            facts_b: possibly overriding signal per individual.
            population: individuals to decide for; defaults to everyone seen
                in either input. Missing keys count as "no fact".
        """
        individuals = set(population) if population is not None else set(facts_a) | set(facts_b)
        return {
            individual: self.decide(facts_a.get(individual), facts_b.get(individual))
            for individual in individuals
        }
