"""
Gate pipeline

An inbound event walks an ordered list of async gates. Each gate reads and
updates a shared context object and answers ``PROCEED`` or
``Reject(reason)``; the first rejection ends the run.

Also home of ``spawn_detached`` for fire-and-forget side effects that must
not block the reply path but whose failures still need to show up in logs.
"""

import asyncio
from typing import Any, Awaitable, Callable, Coroutine, NamedTuple, Optional, Sequence, Set, Union

from logger import get_logger

logger = get_logger("gateway.pipeline")


class _Proceed:
    __slots__ = ()

    def __repr__(self) -> str:
        return "PROCEED"


PROCEED = _Proceed()


class Reject(NamedTuple):
    reason: str


GateResult = Union[_Proceed, Reject]
Gate = Callable[[Any], Awaitable[GateResult]]


async def run_gates(ctx: Any, gates: Sequence[Gate]) -> Optional[Reject]:
    """
    Run gates in order against ``ctx``.

    Returns:
        None when every gate proceeds, otherwise the first Reject
    """
    for gate in gates:
        result = await gate(ctx)
        if isinstance(result, Reject):
            logger.debug(
                "Inbound event rejected",
                extra={"gate": getattr(gate, "__name__", repr(gate)), "reason": result.reason},
            )
            return result
    return None


# ==================== Detached tasks ====================

# Strong references so pending tasks are not garbage collected mid-flight
_background_tasks: Set[asyncio.Task] = set()


def spawn_detached(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    """
    Schedule ``coro`` without awaiting it.

    Failures are logged under ``name``; they never reach the caller.
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_log_detached_result(name))
    return task


def _log_detached_result(name: str):
    def _callback(task: asyncio.Task) -> None:
        _background_tasks.discard(task)
        try:
            exc = task.exception()
        except asyncio.CancelledError:
            logger.debug("Detached task cancelled", extra={"task": name})
            return
        if exc is not None:
            logger.error(
                "Detached task failed",
                extra={"task": name, "error": str(exc)},
                exc_info=(type(exc), exc, exc.__traceback__),
            )
    return _callback


async def drain_detached(timeout: float = 5.0) -> None:
    """Wait for pending detached tasks (used on shutdown and in tests)."""
    pending = [t for t in _background_tasks if not t.done()]
    if pending:
        await asyncio.wait(pending, timeout=timeout)
