"""Structured concurrency helper shared by the reconciler and the evaluator."""

import asyncio
from collections.abc import Coroutine, Mapping
from typing import Any, TypeVar

KeyT = TypeVar("KeyT")
ValueT = TypeVar("ValueT")


async def gather_concurrently(
    coroutines: Mapping[KeyT, Coroutine[Any, Any, ValueT]],
) -> dict[KeyT, ValueT]:
    """
    Run independent coroutines in one TaskGroup and wait for all of them.

    The first failure cancels the siblings and is re-raised on its own rather
    than wrapped in an ExceptionGroup, so callers see the engine's error types.
    """
    try:
        async with asyncio.TaskGroup() as task_group:
            tasks = {key: task_group.create_task(coro) for key, coro in coroutines.items()}
    except BaseExceptionGroup as group:
        error: BaseException = group
        while isinstance(error, BaseExceptionGroup):
            error = error.exceptions[0]
        raise error from None
    return {key: task.result() for key, task in tasks.items()}
