"""Iterative self-refinement for deep mode.

After a full reasoning pass, low-confidence answers are re-run through a
subset of stages with the previous answer injected as context. A candidate
replaces the current answer only when it improves confidence by at least the
configured margin; the first insufficient, failed or timed-out iteration ends
the loop.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

import structlog

from sopflow.common.settings import RefinementSettings
from sopflow.schemas.workflow_state import RefinementIteration, WorkflowState

logger = structlog.get_logger(__name__)

PassRunner = Callable[[WorkflowState], Awaitable[WorkflowState]]


def build_refinement_context(query: str, confidence: float, answer: str) -> str:
    return (
        f'Previous analysis of "{query}" achieved confidence {confidence:.2f}.\n'
        f"Current answer: {answer}\n\n"
        "Please refine this analysis to improve accuracy and completeness."
    )


def pass_confidence(state: WorkflowState) -> float:
    """Confidence produced by one reasoning pass."""
    return state.coverage_analysis.overall_confidence


class RefinementLoop:
    def __init__(self, settings: RefinementSettings, run_pass: PassRunner):
        self.settings = settings
        self.run_pass = run_pass

    def should_refine(self, confidence: float) -> bool:
        return self.settings.enabled and confidence < self.settings.confidence_threshold

    async def run(self, state: WorkflowState) -> WorkflowState:
        current = state
        confidence = pass_confidence(state)
        if not self.should_refine(confidence):
            return state

        workflow_id = state.metadata.workflow_id
        logger.info(
            "Starting iterative refinement",
            confidence=confidence,
            threshold=self.settings.confidence_threshold,
            max_iterations=self.settings.max_iterations,
            workflow_id=workflow_id,
        )

        iteration = 0
        while iteration < self.settings.max_iterations and confidence < self.settings.confidence_threshold:
            iteration += 1
            start_time = time.time()
            attempt = current.model_copy(update={
                "refinement_context": build_refinement_context(current.query, confidence, current.response),
                "should_retry": False,
                "should_exit": False,
            })

            try:
                candidate = await asyncio.wait_for(
                    self.run_pass(attempt),
                    timeout=self.settings.timeout_per_iteration_ms / 1000,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Refinement iteration timed out, stopping",
                    iteration=iteration,
                    timeout_ms=self.settings.timeout_per_iteration_ms,
                    workflow_id=workflow_id,
                )
                current = current.model_copy(update={
                    "errors": [*current.errors, f"refinement: iteration {iteration} timed out"],
                })
                break
            except Exception as e:
                logger.error("Refinement iteration failed, stopping", iteration=iteration, error=str(e), workflow_id=workflow_id)
                current = current.model_copy(update={
                    "errors": [*current.errors, f"refinement: iteration {iteration} failed: {e}"],
                })
                break

            if candidate.should_retry:
                logger.warning("Refinement pass reported node failure, stopping", iteration=iteration, workflow_id=workflow_id)
                current = current.model_copy(update={"metadata": candidate.metadata, "errors": candidate.errors})
                break

            candidate_confidence = pass_confidence(candidate)
            improvement = round(candidate_confidence - confidence, 6)
            if improvement < self.settings.improvement_threshold:
                logger.info(
                    "Refinement iteration insufficient improvement",
                    iteration=iteration,
                    improvement=improvement,
                    required=self.settings.improvement_threshold,
                    workflow_id=workflow_id,
                )
                # Rejected candidates still count towards the audit trail
                current = current.model_copy(update={"metadata": candidate.metadata})
                break

            record = RefinementIteration(
                iteration=iteration,
                confidence_before=confidence,
                confidence_after=candidate_confidence,
                improvement=improvement,
                steps=self.settings.refinement_steps,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            current = candidate.model_copy(update={
                "refinement_context": None,
                "refinement_iterations": [*current.refinement_iterations, record],
            })
            confidence = candidate_confidence
            logger.info("Refinement iteration accepted", iteration=iteration, improvement=improvement, workflow_id=workflow_id)

        logger.info(
            "Iterative refinement completed",
            iterations=iteration,
            accepted=len(current.refinement_iterations) - len(state.refinement_iterations),
            final_confidence=confidence,
            workflow_id=workflow_id,
        )
        return current.model_copy(update={"refinement_context": None})
