"""Best-effort batches of independent async operations.

A batch runs every operation concurrently and waits for all of them to
settle. Individual failures are logged and counted, never raised; the
caller only sees the aggregate result.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


@dataclass
class BatchResult:
    """Aggregate outcome of a best-effort batch.

    Attributes:
        label: Name used in log messages.
        results: Return values of the successful operations, in order.
        errors: Exceptions raised by the failed operations, in order.
    """

    label: str
    results: list[Any] = field(default_factory=list)
    errors: list[BaseException] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results) + len(self.errors)

    @property
    def succeeded(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "succeeded": self.succeeded, "failed": self.failed}


async def run_best_effort(operations: Sequence[Operation], label: str = "batch") -> BatchResult:
    """Run operations concurrently, ignoring individual failures.

    Args:
        operations: Zero-argument callables returning awaitables.
        label: Name used in log messages.

    Returns:
        BatchResult with the successes and the swallowed errors.
    """
    result = BatchResult(label=label)
    if not operations:
        return result
    settled = await asyncio.gather(*(_invoke(op) for op in operations), return_exceptions=True)
    for index, outcome in enumerate(settled):
        if isinstance(outcome, BaseException):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            logger.warning("%s: operation %d failed (non-blocking): %s", label, index + 1, outcome)
            result.errors.append(outcome)
        else:
            result.results.append(outcome)
    logger.debug("%s: %d/%d operations succeeded", label, result.succeeded, result.total)
    return result


async def _invoke(operation: Operation) -> Any:
    # Calling inside the coroutine turns synchronous raises into settled errors.
    return await operation()
