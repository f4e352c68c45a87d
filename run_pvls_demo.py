"""
End-to-end demonstration of the PVLS report on seeded facts.

This script walks through:
1. Configuration loading and validation
2. Building the PVLS node catalogue
3. Reconciling breastfeeding and pregnancy dates
4. Evaluating the composite cohorts
5. Failure handling when the fact source goes down

Run with: uv run python run_pvls_demo.py
"""

import asyncio
from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cohort_engine.config import (
    configure_logging,
    get_config,
    print_config_summary,
    validate_config,
)
from cohort_engine.domain.errors import SourceUnavailable
from cohort_engine.domain.models import Fact, FactRequest
from cohort_engine.services.evaluator import CompositionEvaluator
from cohort_engine.services.fact_sources import InMemoryFactSource, Result
from report_adapters.pvls.domain import (
    PvlsCategory,
    PvlsEncounter,
    PvlsValue,
    build_pvls_catalog,
    suppression_within_age_bracket,
)

console = Console()

LOCATION = 10
START = datetime(2024, 1, 1)
END = datetime(2024, 12, 31)
PERIOD = {"startDate": START, "endDate": END, "location": LOCATION}
POPULATION = frozenset(range(1, 8))


def _fact(individual: int, when: datetime, category: PvlsCategory, value=None, **extra) -> Fact:
    if isinstance(value, PvlsValue):
        value = value.value
    return Fact(
        individual_id=individual,
        timestamp=when,
        category=category.value,
        value=value,
        location=extra.pop("location", LOCATION),
        **extra,
    )


def _viral_load(individual: int, when: datetime, copies: float) -> Fact:
    return _fact(
        individual,
        when,
        PvlsCategory.VIRAL_LOAD,
        copies,
        encounter_type=PvlsEncounter.LABORATORY.value,
    )


def seed_facts() -> list[Fact]:
    """
    Seven patients:
    1 breastfeeding, suppressed      2 pregnant, suppressed
    3 pregnant then breastfeeding    4 male, unsuppressed
    5 suppressed but died            6 no viral load at all
    7 breastfeeding evidence too old for the window
    """
    facts: list[Fact] = []
    for individual in POPULATION:
        gender = PvlsValue.MALE if individual == 4 else PvlsValue.FEMALE
        facts.append(
            _fact(individual, datetime(1990, 1, 1), PvlsCategory.GENDER, gender, location=None)
        )
        facts.append(
            _fact(
                individual,
                datetime(1990, 1, 1),
                PvlsCategory.BIRTHDATE,
                datetime(1985 + individual * 2, 6, 15),
                location=None,
            )
        )
        facts.append(
            _fact(
                individual,
                datetime(2020, 3, 1),
                PvlsCategory.PROGRAM_ENROLLMENT,
                PvlsValue.ART_PROGRAM,
            )
        )

    facts += [
        _viral_load(1, datetime(2024, 6, 1), 40),
        _fact(1, datetime(2024, 2, 10), PvlsCategory.LACTATING, PvlsValue.YES),
        _viral_load(2, datetime(2024, 7, 1), 150),
        _fact(2, datetime(2024, 5, 2), PvlsCategory.PREGNANT, PvlsValue.YES),
        _viral_load(3, datetime(2024, 9, 1), 20),
        _fact(3, datetime(2024, 1, 5), PvlsCategory.PREGNANT, PvlsValue.YES),
        _fact(3, datetime(2024, 2, 1), PvlsCategory.PRIOR_DELIVERY_DATE, datetime(2024, 1, 20)),
        _viral_load(4, datetime(2024, 8, 1), 25000),
        _viral_load(5, datetime(2024, 3, 1), 10),
        _fact(5, datetime(2024, 10, 1), PvlsCategory.PROGRAM_STATE, PvlsValue.DIED_STATE),
        _viral_load(7, datetime(2024, 11, 1), 30),
        _fact(7, datetime(2022, 1, 1), PvlsCategory.LACTATING, PvlsValue.YES),
    ]
    return facts


class FailingFactSource:
    """Fact source that reports every request as unavailable."""

    source_name = "failing"

    async def fetch_facts(self, request: FactRequest) -> Result:
        await asyncio.sleep(0.01)
        return Result.err(SourceUnavailable(request.category, "database connection refused"))


async def demo_configuration() -> bool:
    """Load and print configuration."""
    console.print(Panel("🔧 Configuration", style="blue"))
    try:
        validate_config()
        print_config_summary()
        return True
    except Exception as e:
        console.print(f"❌ Configuration failed: {e}", style="red")
        return False


async def demo_reconciled_dates() -> bool:
    """Show reconciled breastfeeding and pregnancy dates per patient."""
    console.print(Panel("📅 Reconciled Dates", style="blue"))
    try:
        catalog = build_pvls_catalog(get_config().report)
        evaluator = CompositionEvaluator(InMemoryFactSource(seed_facts()))
        parameters = {"onOrBefore": END, "location": LOCATION}

        breastfeeding = await evaluator.evaluate(
            catalog["breastfeedingDate"], POPULATION, parameters
        )
        pregnancy = await evaluator.evaluate(catalog["pregnancyDate"], POPULATION, parameters)
        pregnant = await evaluator.evaluate(catalog["pregnant"], POPULATION, parameters)

        table = Table(title="Per-patient Dates")
        table.add_column("Patient", style="cyan")
        table.add_column("Breastfeeding", style="magenta")
        table.add_column("Pregnancy", style="magenta")
        table.add_column("Pregnant", style="green")

        def _show(value) -> str:
            return value.date().isoformat() if isinstance(value, datetime) else "-"

        for individual in sorted(POPULATION):
            table.add_row(
                str(individual),
                _show(breastfeeding.get(individual)),
                _show(pregnancy.get(individual)),
                "yes" if pregnant.get(individual) else "no",
            )
        console.print(table)
        return True
    except Exception as e:
        console.print(f"❌ Reconciliation failed: {e}", style="red")
        return False


async def demo_cohorts() -> bool:
    """Evaluate the composite cohorts of the report."""
    console.print(Panel("👥 Report Cohorts", style="blue"))
    try:
        catalog = build_pvls_catalog(get_config().report)
        suppression_within_age_bracket(catalog, 25, 49)
        evaluator = CompositionEvaluator(InMemoryFactSource(seed_facts()))

        table = Table(title="Cohort Members")
        table.add_column("Cohort", style="cyan")
        table.add_column("Members", style="white")

        for name in [
            "viralLoadSuppression",
            "viralLoadResults12Months",
            "deceasedPatients",
            "breastfeedingWithSuppression",
            "pregnantWithSuppression",
            "suppressionAged25To49",
        ]:
            cohort = await evaluator.evaluate_members(catalog[name], POPULATION, PERIOD)
            table.add_row(name, ", ".join(str(i) for i in sorted(cohort)) or "-")

        console.print(table)
        return True
    except Exception as e:
        console.print(f"❌ Cohort evaluation failed: {e}", style="red")
        return False


async def demo_error_handling() -> bool:
    """An unavailable source must abort the call instead of returning partial results."""
    console.print(Panel("🛡️ Error Handling", style="blue"))
    catalog = build_pvls_catalog(get_config().report)
    evaluator = CompositionEvaluator(FailingFactSource())
    try:
        await evaluator.evaluate(catalog["viralLoadSuppression"], POPULATION, PERIOD)
    except SourceUnavailable as e:
        console.print(f"✅ Evaluation aborted as expected: {e}", style="green")
        return True
    console.print("❌ Evaluation returned a result despite the failing source", style="red")
    return False


async def run_demo() -> None:
    """Run every demo step and summarize."""
    console.print(Panel("🧪 PVLS Cohort Engine - Demo", style="bold blue"))

    results = [
        ("Configuration", await demo_configuration()),
        ("Reconciled Dates", await demo_reconciled_dates()),
        ("Report Cohorts", await demo_cohorts()),
        ("Error Handling", await demo_error_handling()),
    ]

    console.print(Panel("📋 Demo Summary", style="bold"))
    summary_table = Table()
    summary_table.add_column("Step", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for step, ok in results:
        summary_table.add_row(step, "✅ OK" if ok else "❌ FAILED")
        passed += ok
    console.print(summary_table)
    console.print(f"\n🎯 Results: {passed}/{len(results)} steps succeeded")


if __name__ == "__main__":
    try:
        configure_logging(get_config().logging)
        asyncio.run(run_demo())
    except KeyboardInterrupt:
        console.print("\n👋 Demo stopped by user", style="yellow")
    except Exception as e:
        console.print(f"\n💥 Demo failed: {e}", style="red")
