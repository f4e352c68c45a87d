"""
Fact source boundary: how the engine talks to the clinical data store.

Key patterns:
- Protocol-based dependency injection (adapters are structurally typed)
- Generic Result type so expected adapter failures are values, not exceptions
- One immutable fact snapshot per evaluation call, shared by every node
- Bounded concurrency and a caller deadline at the adapter boundary only
"""

import asyncio
import time
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime
from typing import Generic, Protocol, TypeVar
from uuid import UUID

import structlog

from cohort_engine.domain.errors import FactSourceError, NotFound, SourceUnavailable
from cohort_engine.domain.models import Fact, FactRequest, IndividualId

logger = structlog.get_logger(__name__)

# Generic Result type for explicit error handling
ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    Why: Makes error paths visible in type system, forces handling decisions.
    When to use: When failure is expected business logic, not exceptional.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error


class FactSource(Protocol):
    """
    Protocol for retrieving raw time-stamped facts from the data store.

    Implementations must return facts ordered by individual then timestamp,
    must not mutate storage, and report ``SourceUnavailable`` for transient
    failures and ``NotFound`` for a valid query that matched nothing.
    """

    source_name: str

    async def fetch_facts(self, request: FactRequest) -> Result[list[Fact], FactSourceError]:
        """
        Fetch the facts matching a request.

        Returns:
            Result[list[Fact], FactSourceError]: the facts or the adapter condition.
        """
        ...


def _storage_order(fact: Fact) -> tuple[bool, int | str, datetime]:
    individual = fact.individual_id
    if isinstance(individual, UUID):
        return (True, str(individual), fact.timestamp)
    return (False, individual, fact.timestamp)


class InMemoryFactSource:
    """
    Fact source over an in-memory list of facts.

    Used for demos and tests; a production adapter would translate the request
    into a query against the clinical data store.
    """

    def __init__(self, facts: Iterable[Fact], source_name: str = "in-memory") -> None:
        self.source_name = source_name
        self._facts: tuple[Fact, ...] = tuple(sorted(facts, key=_storage_order))
        self.logger = logger.bind(source=source_name)

    async def fetch_facts(self, request: FactRequest) -> Result[list[Fact], FactSourceError]:
        matched = [fact for fact in self._facts if request.matches(fact)]
        self.logger.debug("facts_fetched", category=request.category, count=len(matched))
        if not matched:
            return Result.err(NotFound(f"No {request.category!r} facts match the request"))
        return Result.ok(matched)


class FactSnapshot:
    """
    Read-only view of the facts fetched during one evaluation call.

    Identical requests share one adapter round-trip; concurrent callers await
    the same in-flight fetch. Nothing fetched here outlives the call.
    """

    def __init__(
        self,
        source: FactSource,
        max_concurrent_fetches: int = 10,
        timeout_seconds: float | None = None,
    ) -> None:
        if not hasattr(source, "fetch_facts"):
            raise TypeError(f"Source {source} must implement FactSource protocol")
        self.source = source
        self.timeout_seconds = timeout_seconds
        self._semaphore = asyncio.Semaphore(max_concurrent_fetches)
        self._fetches: dict[FactRequest, asyncio.Task[tuple[Fact, ...]]] = {}
        self.request_count = 0
        self.logger = logger.bind(component="fact_snapshot", source=source.source_name)

    async def fetch(self, request: FactRequest) -> tuple[Fact, ...]:
        """
        Facts for a request, fetched at most once per snapshot.

        Raises:
            SourceUnavailable: the adapter failed, raised, or missed the deadline.
        """
        if not request.individuals:
            return ()
        task = self._fetches.get(request)
        if task is None:
            task = asyncio.ensure_future(self._fetch_once(request))
            self._fetches[request] = task
        return await task

    async def fetch_grouped(self, request: FactRequest) -> dict[IndividualId, list[Fact]]:
        """Facts for a request grouped per individual, each list in timestamp order."""
        grouped: dict[IndividualId, list[Fact]] = defaultdict(list)
        for fact in await self.fetch(request):
            grouped[fact.individual_id].append(fact)
        for facts in grouped.values():
            facts.sort(key=lambda fact: fact.timestamp)
        return dict(grouped)

    async def _fetch_once(self, request: FactRequest) -> tuple[Fact, ...]:
        start_time = time.perf_counter()
        async with self._semaphore:
            self.request_count += 1
            try:
                result = await asyncio.wait_for(
                    self.source.fetch_facts(request), timeout=self.timeout_seconds
                )
            except TimeoutError as e:
                self.logger.warning(
                    "fact_request_timeout", category=request.category, timeout=self.timeout_seconds
                )
                raise SourceUnavailable(
                    request.category,
                    f"no response within {self.timeout_seconds}s",
                    request.individuals,
                    self.source.source_name,
                ) from e
            except NotFound:
                return ()
            except SourceUnavailable:
                raise
            except Exception as e:
                self.logger.exception(
                    "fact_request_failed", category=request.category, error=str(e)
                )
                raise SourceUnavailable(
                    request.category, str(e), request.individuals, self.source.source_name
                ) from e

        if result.is_err():
            error = result.unwrap_err()
            if isinstance(error, NotFound):
                return ()
            if isinstance(error, SourceUnavailable):
                self.logger.warning(
                    "fact_source_unavailable", category=request.category, reason=error.reason
                )
                raise error
            raise SourceUnavailable(
                request.category, str(error), request.individuals, self.source.source_name
            ) from error

        facts = tuple(result.unwrap())
        self.logger.debug(
            "fact_request_completed",
            category=request.category,
            individuals=len(request.individuals),
            facts=len(facts),
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )
        return facts
