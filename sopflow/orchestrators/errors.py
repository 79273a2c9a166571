"""Workflow error types and the node failure wrapper."""

from __future__ import annotations

import functools
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from langchain_core.runnables import RunnableConfig

from sopflow.schemas.workflow_state import NodeName, WorkflowState, degrade_coverage

logger = structlog.get_logger(__name__)

NodeFn = Callable[[WorkflowState], Awaitable[Dict[str, Any]]]


class WorkflowError(Exception):
    """Base class for workflow failures."""


class InferenceError(WorkflowError):
    """The inference call failed or returned no text."""


class OutputParseError(WorkflowError):
    """Model output could not be decoded into the expected structure."""


class ParallelExecutionError(WorkflowError):
    """A parallel operation failed while fail-fast was requested."""

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"Parallel operation '{operation}' failed: {cause}")
        self.operation = operation
        self.cause = cause


def wrap_node(
    node: NodeName,
    fn: NodeFn,
    retry_limit: int,
    fallback_response: Callable[[WorkflowState], str],
) -> NodeFn:
    """Wrap a node so that failures become state fields instead of exceptions.

    On success the node is marked complete and ``should_retry`` is cleared.
    On failure the error is recorded, ``retry_count`` is incremented and
    ``should_retry`` is set; once the retry budget is spent the run is closed
    with a degraded escape-hatch answer.
    """

    @functools.wraps(fn)
    async def wrapped(state: WorkflowState, config: Optional[RunnableConfig] = None) -> Dict[str, Any]:
        start_time = time.time()
        try:
            update = await fn(state)
        except Exception as e:
            retry_count = state.retry_count + 1
            logger.error(
                "Node failed",
                node=node.value,
                error=str(e),
                error_type=type(e).__name__,
                retry_count=retry_count,
                retry_limit=retry_limit,
                workflow_id=state.metadata.workflow_id,
            )
            failure: Dict[str, Any] = {
                "errors": [*state.errors, f"{node.value}: {e}"],
                "retry_count": retry_count,
                "should_retry": True,
                "current_node": node,
                "metadata": state.metadata.with_node_executed(node),
            }
            if retry_count >= retry_limit:
                failure.update(
                    response=fallback_response(state),
                    coverage_analysis=degrade_coverage(
                        state.coverage_analysis,
                        f"Processing failed after {retry_count} attempts",
                    ),
                    should_exit=True,
                )
            return failure

        metadata = update.get("metadata", state.metadata).with_node_executed(node)
        completed = update.get("completed_nodes", state.completed_nodes)
        if node not in completed:
            completed = [*completed, node]

        logger.debug(
            "Node completed",
            node=node.value,
            duration_ms=round((time.time() - start_time) * 1000, 2),
            workflow_id=state.metadata.workflow_id,
        )
        return {
            **update,
            "metadata": metadata,
            "completed_nodes": completed,
            "current_node": node,
            "should_retry": False,
        }

    return wrapped
