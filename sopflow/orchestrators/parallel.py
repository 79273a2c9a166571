"""Run independent async operations concurrently with per-operation timeouts."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Dict, Generic, List, Mapping, Optional, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict

from sopflow.orchestrators.errors import ParallelExecutionError
from sopflow.schemas.workflow_state import ParallelOperationInfo

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ParallelOperationResult(BaseModel, Generic[T]):
    """Outcome of one operation. ``result`` is None on failure."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    result: Optional[T] = None
    duration_ms: float
    success: bool
    error: Optional[str] = None

    def to_info(self, operation: str) -> ParallelOperationInfo:
        return ParallelOperationInfo(
            operation=operation,
            duration_ms=self.duration_ms,
            success=self.success,
            error=self.error,
        )


async def run_in_parallel(
    operations: Mapping[str, Awaitable[Any]],
    *,
    timeout: float = 30.0,
    fail_fast: bool = False,
    log_results: bool = True,
) -> Dict[str, ParallelOperationResult]:
    """Await every operation concurrently.

    Each operation gets its own ``timeout`` (seconds). A timeout or exception is
    recorded against that operation only, unless ``fail_fast`` is set, in which
    case the first failure cancels the siblings and raises
    ``ParallelExecutionError``.
    """
    start_time = time.time()
    results: Dict[str, ParallelOperationResult] = {}

    async def _run(name: str, operation: Awaitable[Any]) -> None:
        op_start = time.time()
        try:
            value = await asyncio.wait_for(operation, timeout=timeout)
        except asyncio.TimeoutError:
            error = f"Operation '{name}' timed out after {timeout}s"
            results[name] = ParallelOperationResult(
                duration_ms=_elapsed_ms(op_start), success=False, error=error
            )
            if log_results:
                logger.warning("Parallel operation timed out", operation=name, timeout_s=timeout)
            if fail_fast:
                raise ParallelExecutionError(name, asyncio.TimeoutError(error))
            return
        except Exception as e:
            results[name] = ParallelOperationResult(
                duration_ms=_elapsed_ms(op_start), success=False, error=str(e) or type(e).__name__
            )
            if log_results:
                logger.warning("Parallel operation failed", operation=name, error=str(e))
            if fail_fast:
                raise ParallelExecutionError(name, e) from e
            return

        results[name] = ParallelOperationResult(result=value, duration_ms=_elapsed_ms(op_start), success=True)
        if log_results:
            logger.debug("Parallel operation completed", operation=name, duration_ms=results[name].duration_ms)

    tasks: List[asyncio.Task] = [asyncio.ensure_future(_run(name, op)) for name, op in operations.items()]
    try:
        await asyncio.gather(*tasks)
    except ParallelExecutionError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    if log_results:
        logger.info(
            "Parallel operations completed",
            successful=sum(1 for r in results.values() if r.success),
            failed=sum(1 for r in results.values() if not r.success),
            total=len(results),
            duration_ms=_elapsed_ms(start_time),
        )
    return results


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000, 2)
