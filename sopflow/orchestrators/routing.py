"""Routing decisions for the workflow graph.

All functions are pure: they read the state and settings and return the name
of the next node, or ``END``.
"""

from __future__ import annotations

from typing import Dict

from langgraph.graph import END

from sopflow.common.settings import WorkflowSettings
from sopflow.orchestrators.coverage import decide_route
from sopflow.schemas.workflow_state import NodeName, WorkflowState

OPTIONAL_STAGES = (
    NodeName.FACT_CHECKING,
    NodeName.SOURCE_VALIDATION,
    NodeName.FOLLOW_UP_GENERATION,
)

# Every possible destination, for LangGraph conditional edge path maps
PATH_MAP: Dict[str, str] = {**{node.value: node.value for node in NodeName}, END: END}


def is_early_exit(state: WorkflowState, settings: WorkflowSettings) -> bool:
    """Whether an assessed state is strong enough to go straight to synthesis."""
    coverage = state.coverage_analysis
    return (
        settings.routing.enable_early_exit
        and coverage.overall_confidence > settings.routing.super_high_confidence_threshold
        and coverage.response_strategy == "full_answer"
        and not coverage.gaps
        and len(state.evidence_references) >= 1
    )


def stage_enabled(node: NodeName, settings: WorkflowSettings) -> bool:
    routing = settings.routing
    if node == NodeName.FACT_CHECKING:
        return routing.enable_fact_checking
    if node == NodeName.SOURCE_VALIDATION:
        return routing.enable_source_validation
    if node == NodeName.FOLLOW_UP_GENERATION:
        return routing.enable_follow_up_generation
    return True


def route_after_coverage(state: WorkflowState, settings: WorkflowSettings) -> NodeName:
    coverage = state.coverage_analysis
    target = decide_route(
        coverage.response_strategy,
        coverage.overall_confidence,
        len(state.evidence_references),
        len(coverage.gaps),
    )
    if target in OPTIONAL_STAGES and not stage_enabled(target, settings):
        return NodeName.RESPONSE_SYNTHESIS
    return target


def route_after(node: NodeName, state: WorkflowState, settings: WorkflowSettings) -> str:
    """Next node after ``node`` has run, or ``END``."""
    if state.should_retry:
        if state.retry_count < settings.retry.retry_limit:
            return NodeName.QUERY_ANALYSIS.value
        return END
    if state.should_exit:
        return END

    if node == NodeName.QUERY_ANALYSIS:
        return NodeName.EVIDENCE_ASSESSMENT.value
    if node == NodeName.EVIDENCE_ASSESSMENT:
        if is_early_exit(state, settings):
            return NodeName.RESPONSE_SYNTHESIS.value
        return NodeName.COVERAGE_EVALUATION.value
    if node == NodeName.COVERAGE_EVALUATION:
        return route_after_coverage(state, settings).value
    if node in OPTIONAL_STAGES:
        return NodeName.RESPONSE_SYNTHESIS.value
    if node == NodeName.RESPONSE_SYNTHESIS:
        return END
    raise ValueError(f"Unknown node: {node!r}")


def route_entry(state: WorkflowState, settings: WorkflowSettings) -> str:
    """Where a run starts: query analysis for a fresh state, else after the last completed node."""
    if state.current_node is None:
        return NodeName.QUERY_ANALYSIS.value
    return route_after(state.current_node, state, settings)
