"""
Viral load suppression (PVLS) report definitions built on the cohort engine.

This demonstrates how a report plugs into the engine:
- Report vocabulary (fact categories and coded values)
- Temporal reconcilers for breastfeeding and pregnancy dates
- The "pregnant unless breastfeeding later" derived rule
- Composite cohorts assembled from declarative definitions

Key PVLS concepts:
- Anchor: the patient's last viral load result within the lookback
- Breastfeeding date: most recent breastfeeding signal within 18 months before it
- Suppression: last viral load result below the threshold (copies/ml)
"""

from collections.abc import Mapping
from enum import Enum
from typing import Any

from dateutil.relativedelta import relativedelta

from cohort_engine.config import ReportConfig
from cohort_engine.domain.models import (
    AnchorSpec,
    CandidateSource,
    DateField,
    Duration,
    EvaluationBinding,
    FactQuery,
    ResultMap,
    TimeQualifier,
    Window,
)
from cohort_engine.services.catalog import NodeCatalog, load_catalog
from cohort_engine.services.fact_sources import FactSnapshot
from cohort_engine.services.nodes import (
    CompositeNode,
    DerivedRuleNode,
    NamedExpressionNode,
    ReconcilerNode,
    as_datetime,
)
from cohort_engine.services.reconciler import TemporalFactReconciler

PERIOD_PARAMETERS = ("startDate", "endDate", "location")
PERIOD_MAPPING = "startDate=${startDate},endDate=${endDate},location=${location}"
OBSERVATION_MAPPING = "onOrAfter=${startDate},onOrBefore=${endDate},location=${location}"
DATE_MAPPING = "onOrBefore=${endDate},location=${location}"


class PvlsCategory(str, Enum):
    """Fact categories the PVLS report reads."""

    VIRAL_LOAD = "hiv_viral_load_copies"
    LACTATING = "breastfeeding"
    ART_START_CRITERIA = "criteria_for_art_start"
    PRIOR_DELIVERY_DATE = "prior_delivery_date"
    PREGNANT = "pregnant"
    PROGRAM_STATE = "program_workflow_state"
    PROGRAM_ENROLLMENT = "program_enrollment"
    GENDER = "gender"
    BIRTHDATE = "birthdate"
    DEATH = "death"


class PvlsValue(str, Enum):
    """Coded answers. Always pass ``.value`` to queries and facts."""

    YES = "yes"
    BREASTFEEDING = "breastfeeding"
    PREGNANT = "pregnant"
    FEMALE = "F"
    MALE = "M"
    BREASTFEEDING_STATE = "patient_is_breastfeeding"
    PREGNANT_STATE = "patient_is_pregnant"
    DIED_STATE = "patient_has_died"
    ART_PROGRAM = "art_program"


class PvlsEncounter(str, Enum):
    LABORATORY = "misau_laboratorio"
    ADULT_FOLLOWUP = "adulto_seguimento"
    PAEDIATRIC_FOLLOWUP = "arv_pediatria_seguimento"


VIRAL_LOAD_ENCOUNTERS = frozenset(encounter.value for encounter in PvlsEncounter)
FEMALE = FactQuery(
    category=PvlsCategory.GENDER.value, value_filter=frozenset({PvlsValue.FEMALE.value})
)


def _coded(category: PvlsCategory, *answers: PvlsValue) -> FactQuery:
    return FactQuery(
        category=category.value,
        value_filter=frozenset(answer.value for answer in answers) if answers else None,
    )


def viral_load_anchor(config: ReportConfig) -> AnchorSpec:
    """Last viral load from a lab or follow-up encounter within the lookback."""
    return AnchorSpec(
        query=FactQuery(
            category=PvlsCategory.VIRAL_LOAD.value, encounter_types=VIRAL_LOAD_ENCOUNTERS
        ),
        lookback=Duration(months=config.viral_load_lookback_months),
    )


def breastfeeding_date_node(config: ReportConfig) -> ReconcilerNode:
    """Most recent breastfeeding signal within the window before the last viral load."""
    sources = [
        CandidateSource(
            name="lactating",
            query=_coded(PvlsCategory.LACTATING, PvlsValue.YES),
            qualifier=TimeQualifier.LAST,
        ),
        CandidateSource(
            name="art_start_criteria",
            query=_coded(PvlsCategory.ART_START_CRITERIA, PvlsValue.BREASTFEEDING),
            qualifier=TimeQualifier.FIRST,
        ),
        CandidateSource(
            name="prior_delivery",
            query=_coded(PvlsCategory.PRIOR_DELIVERY_DATE),
            date_field=DateField.VALUE,
        ),
        CandidateSource(
            name="breastfeeding_program_state",
            query=_coded(PvlsCategory.PROGRAM_STATE, PvlsValue.BREASTFEEDING_STATE),
        ),
    ]
    reconciler = TemporalFactReconciler(
        anchor=viral_load_anchor(config),
        sources=sources,
        window=Window.months_before(config.breastfeeding_window_months),
    )
    return ReconcilerNode(
        "breastfeedingDate",
        reconciler,
        reference_parameter="onOrBefore",
        restrict_to=FEMALE,
        description="Date the patient most likely became a breastfeeding mother",
    )


def pregnancy_date_node(config: ReportConfig) -> ReconcilerNode:
    """Most recent pregnancy signal within the window before the last viral load."""
    sources = [
        CandidateSource(
            name="pregnant",
            query=_coded(PvlsCategory.PREGNANT, PvlsValue.YES),
            qualifier=TimeQualifier.LAST,
        ),
        CandidateSource(
            name="art_start_criteria",
            query=_coded(PvlsCategory.ART_START_CRITERIA, PvlsValue.PREGNANT),
            qualifier=TimeQualifier.FIRST,
        ),
        CandidateSource(
            name="pregnancy_program_state",
            query=_coded(PvlsCategory.PROGRAM_STATE, PvlsValue.PREGNANT_STATE),
        ),
    ]
    reconciler = TemporalFactReconciler(
        anchor=viral_load_anchor(config),
        sources=sources,
        window=Window.months_before(config.pregnancy_window_months),
    )
    return ReconcilerNode(
        "pregnancyDate",
        reconciler,
        reference_parameter="onOrBefore",
        restrict_to=FEMALE,
        description="Date the patient was most likely pregnant",
    )


class AgeBracketNode(NamedExpressionNode):
    """
    Patients whose age in whole years at the reference date is within bounds.

    Both bounds are inclusive; ``None`` leaves a side open. Patients without a
    recorded birthdate are not members.
    """

    def __init__(
        self,
        name: str,
        min_age: int | None = None,
        max_age: int | None = None,
        reference_parameter: str = "endDate",
        description: str = "",
    ) -> None:
        if min_age is not None and max_age is not None and min_age > max_age:
            raise ValueError(f"min_age {min_age} is greater than max_age {max_age}")
        super().__init__(name, {reference_parameter}, description)
        self.min_age = min_age
        self.max_age = max_age
        self.reference_parameter = reference_parameter

    def contains(self, age: int) -> bool:
        if self.min_age is not None and age < self.min_age:
            return False
        if self.max_age is not None and age > self.max_age:
            return False
        return True

    async def compute(
        self,
        binding: EvaluationBinding,
        child_results: Mapping[str, ResultMap],
        snapshot: FactSnapshot,
    ) -> ResultMap:
        reference = as_datetime(
            binding.parameters[self.reference_parameter], self.name, self.reference_parameter
        )
        grouped = await snapshot.fetch_grouped(
            FactQuery(category=PvlsCategory.BIRTHDATE.value).to_request(binding.population)
        )
        results: ResultMap = {}
        for individual in binding.population:
            birthdates = [
                fact.value for fact in grouped.get(individual, []) if fact.value is not None
            ]
            if not birthdates:
                results[individual] = False
                continue
            birthdate = as_datetime(birthdates[-1], self.name, "birthdate")
            results[individual] = self.contains(relativedelta(reference, birthdate).years)
        return results


def _primitive_definitions(config: ReportConfig) -> list[dict[str, Any]]:
    viral_load = {
        "category": PvlsCategory.VIRAL_LOAD.value,
        "encounter_types": sorted(VIRAL_LOAD_ENCOUNTERS),
    }
    return [
        {
            "kind": "primitive",
            "name": "suppressedViralLoad",
            "query": viral_load,
            "qualifier": "last",
            "value_range": {"maximum": config.suppression_threshold},
            "on_or_after_parameter": "onOrAfter",
            "on_or_before_parameter": "onOrBefore",
            "description": "Last viral load in the period is below the suppression threshold",
        },
        {
            "kind": "primitive",
            "name": "viralLoadResults",
            "query": viral_load,
            "on_or_after_parameter": "onOrAfter",
            "on_or_before_parameter": "onOrBefore",
            "description": "Any viral load result recorded in the period",
        },
        {
            "kind": "primitive",
            "name": "inArtProgram",
            "query": {
                "category": PvlsCategory.PROGRAM_ENROLLMENT.value,
                "value_filter": [PvlsValue.ART_PROGRAM.value],
            },
            "on_or_before_parameter": "onOrBefore",
            "description": "Enrolled in the ART program on or before the end date",
        },
        {
            "kind": "primitive",
            "name": "diedProgramState",
            "query": {
                "category": PvlsCategory.PROGRAM_STATE.value,
                "value_filter": [PvlsValue.DIED_STATE.value],
            },
            "on_or_after_parameter": "onOrAfter",
            "on_or_before_parameter": "onOrBefore",
            "description": "Program state 'patient has died' started within the period",
        },
        {
            "kind": "primitive",
            "name": "deceasedPerson",
            "query": {"category": PvlsCategory.DEATH.value},
            "location_parameter": None,
            "on_or_before_parameter": "onOrBefore",
            "description": "Person marked dead with a death date on or before the end date",
        },
    ]


def _composite(
    name: str, expression: str, children: dict[str, tuple[str, str]], description: str = ""
) -> dict[str, Any]:
    return {
        "kind": "composite",
        "name": name,
        "parameters": list(PERIOD_PARAMETERS),
        "expression": expression,
        "children": {
            alias: {"node": node, "mapping": mapping} for alias, (node, mapping) in children.items()
        },
        "description": description,
    }


def _composite_definitions() -> list[dict[str, Any]]:
    return [
        _composite(
            "baseCohort",
            "inArt AND NOT deceased",
            {
                "inArt": ("inArtProgram", DATE_MAPPING),
                "deceased": ("deceasedPatients", PERIOD_MAPPING),
            },
            "Patients in the ART program who are not known to be dead",
        ),
        _composite(
            "deceasedPatients",
            "dead OR deceased",
            {
                "dead": ("diedProgramState", OBSERVATION_MAPPING),
                "deceased": ("deceasedPerson", "onOrBefore=${endDate}"),
            },
            "Deceased based on program states and the person record",
        ),
        _composite(
            "viralLoadSuppression",
            "supp AND baseCohort",
            {
                "supp": ("suppressedViralLoad", OBSERVATION_MAPPING),
                "baseCohort": ("baseCohort", PERIOD_MAPPING),
            },
            "Viral load suppression in the period, excluding the dead",
        ),
        _composite(
            "viralLoadResults12Months",
            "results AND baseCohort",
            {
                "results": ("viralLoadResults", OBSERVATION_MAPPING),
                "baseCohort": ("baseCohort", PERIOD_MAPPING),
            },
            "Viral load results recorded in the period, excluding the dead",
        ),
        _composite(
            "breastfeedingWithSuppression",
            "breastfeeding AND suppression",
            {
                "breastfeeding": ("breastfeedingDate", DATE_MAPPING),
                "suppression": ("viralLoadSuppression", PERIOD_MAPPING),
            },
        ),
        _composite(
            "breastfeedingWithResults",
            "breastfeeding AND results",
            {
                "breastfeeding": ("breastfeedingDate", DATE_MAPPING),
                "results": ("viralLoadResults12Months", PERIOD_MAPPING),
            },
        ),
        _composite(
            "pregnantWithSuppression",
            "pregnant AND suppression",
            {
                "pregnant": ("pregnant", DATE_MAPPING),
                "suppression": ("viralLoadSuppression", PERIOD_MAPPING),
            },
        ),
        _composite(
            "pregnantWithResults",
            "pregnant AND results",
            {
                "pregnant": ("pregnant", DATE_MAPPING),
                "results": ("viralLoadResults12Months", PERIOD_MAPPING),
            },
        ),
    ]


def build_pvls_catalog(config: ReportConfig | None = None) -> NodeCatalog:
    """All PVLS nodes: reconcilers and the pregnancy rule first, then the definitions."""
    config = config or ReportConfig()
    catalog = NodeCatalog()
    breastfeeding = catalog.add(breastfeeding_date_node(config))
    pregnancy = catalog.add(pregnancy_date_node(config))
    catalog.add(
        DerivedRuleNode(
            "pregnant",
            parameters={"onOrBefore", "location"},
            primary=pregnancy,
            override=breastfeeding,
            restrict_to=FEMALE,
            description="Pregnant unless a strictly later breastfeeding date exists",
        )
    )
    return load_catalog([*_primitive_definitions(config), *_composite_definitions()], catalog)


def _age_composite(
    catalog: NodeCatalog, name: str, operand: str, target: str, age_node: AgeBracketNode
) -> CompositeNode:
    if name in catalog:
        return catalog[name]  # type: ignore[return-value]
    if age_node.name not in catalog:
        catalog.add(age_node)
    node = CompositeNode(
        name,
        PERIOD_PARAMETERS,
        f"{operand} AND age",
        {
            operand: (catalog[target], PERIOD_MAPPING),
            "age": (catalog[age_node.name], "endDate=${endDate}"),
        },
    )
    catalog.add(node)
    return node


def suppression_within_age_bracket(
    catalog: NodeCatalog, min_age: int, max_age: int
) -> CompositeNode:
    """``supp AND age`` for an inclusive age bracket in years."""
    return _age_composite(
        catalog,
        f"suppressionAged{min_age}To{max_age}",
        "supp",
        "viralLoadSuppression",
        AgeBracketNode(f"aged{min_age}To{max_age}", min_age=min_age, max_age=max_age),
    )


def results_within_age_bracket(catalog: NodeCatalog, min_age: int, max_age: int) -> CompositeNode:
    """``results AND age`` for an inclusive age bracket in years."""
    return _age_composite(
        catalog,
        f"resultsAged{min_age}To{max_age}",
        "results",
        "viralLoadResults12Months",
        AgeBracketNode(f"aged{min_age}To{max_age}", min_age=min_age, max_age=max_age),
    )


def suppression_aged_below(catalog: NodeCatalog, age: int) -> CompositeNode:
    """``supp AND age`` for patients younger than ``age`` years."""
    return _age_composite(
        catalog,
        f"suppressionAgedBelow{age}",
        "supp",
        "viralLoadSuppression",
        AgeBracketNode(f"agedBelow{age}", max_age=age - 1),
    )


def results_aged_below(catalog: NodeCatalog, age: int) -> CompositeNode:
    """``results AND age`` for patients younger than ``age`` years."""
    return _age_composite(
        catalog,
        f"resultsAgedBelow{age}",
        "results",
        "viralLoadResults12Months",
        AgeBracketNode(f"agedBelow{age}", max_age=age - 1),
    )
