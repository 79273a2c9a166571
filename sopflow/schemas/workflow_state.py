"""Workflow state schema for the SOP answering graph.

This module defines the record that flows through the LangGraph orchestrator.
Nodes never mutate it in place: each node returns a partial update which the
graph merges over the previous value, later fields winning.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

CoverageLevel = Literal["high", "medium", "low"]
ResponseStrategy = Literal["full_answer", "partial_answer", "escape_hatch"]
ClaimStatus = Literal["VERIFIED", "QUESTIONABLE", "CONFLICT"]


class NodeName(str, Enum):
    """Closed set of graph nodes."""

    QUERY_ANALYSIS = "query_analysis"
    EVIDENCE_ASSESSMENT = "evidence_assessment"
    COVERAGE_EVALUATION = "coverage_evaluation"
    FACT_CHECKING = "fact_checking"
    SOURCE_VALIDATION = "source_validation"
    FOLLOW_UP_GENERATION = "follow_up_generation"
    RESPONSE_SYNTHESIS = "response_synthesis"


def now_ms() -> int:
    return int(time.time() * 1000)


def estimate_tokens(text: str) -> int:
    """Rough token estimate (1 token per 4 characters)."""
    return math.ceil(len(text or "") / 4)


class Document(BaseModel):
    """Procedure document as returned by the document store."""

    id: str
    title: str
    content: str = ""


class ConversationMessage(BaseModel):
    role: Literal["user", "assistant", "system"] = "user"
    content: str = ""


class EvidenceReference(BaseModel):
    """A retrieved document with its assessed relevance."""

    id: str = Field(description="Document identifier")
    title: str = Field(default="", description="Document title")
    sections: List[str] = Field(default_factory=list, description="Relevant section names")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0, description="Relevance confidence")
    key_points: List[str] = Field(default_factory=list)
    applicability: str = Field(default="", description="How the document applies to the query")
    content: Optional[str] = Field(default=None, description="Full document text, dropped from checkpoints")


class CoverageAnalysis(BaseModel):
    """Assessed sufficiency of the evidence for answering the query."""

    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    coverage_level: CoverageLevel = "low"
    gaps: List[str] = Field(default_factory=list)
    response_strategy: ResponseStrategy = "escape_hatch"
    query_intent: str = ""
    key_topics: List[str] = Field(default_factory=list)
    specificity: Optional[str] = None


class LLMCallRecord(BaseModel):
    node: NodeName
    model: str
    tokens_in: int = 0
    tokens_out: int = 0
    duration_ms: float = 0.0
    timestamp: int = Field(default_factory=now_ms)


class ConfidenceEntry(BaseModel):
    """One step of the confidence audit trail.

    ``confidence`` is the run's high-water mark after the step; ``observed`` is
    the raw value the node produced.
    """

    node: NodeName
    confidence: float
    observed: float
    reason: str = ""
    timestamp: int = Field(default_factory=now_ms)


class ParallelOperationInfo(BaseModel):
    operation: str
    duration_ms: float
    success: bool
    timestamp: int = Field(default_factory=now_ms)
    error: Optional[str] = None


class ProcessingMetadata(BaseModel):
    """Append-only audit trail for a run."""

    workflow_id: Optional[str] = None
    mode: Literal["standard", "deep"] = "standard"
    start_time: int = Field(default_factory=now_ms)
    end_time: Optional[int] = None
    tokens_used: int = 0
    nodes_executed: List[NodeName] = Field(default_factory=list)
    llm_calls: List[LLMCallRecord] = Field(default_factory=list)
    confidence_history: List[ConfidenceEntry] = Field(default_factory=list)
    parallel_operations: List[ParallelOperationInfo] = Field(default_factory=list)

    def with_llm_call(self, record: LLMCallRecord) -> "ProcessingMetadata":
        return self.model_copy(update={
            "llm_calls": [*self.llm_calls, record],
            "tokens_used": self.tokens_used + record.tokens_in + record.tokens_out,
        })

    def with_confidence(self, entry: ConfidenceEntry) -> "ProcessingMetadata":
        return self.model_copy(update={"confidence_history": [*self.confidence_history, entry]})

    def with_node_executed(self, node: NodeName) -> "ProcessingMetadata":
        return self.model_copy(update={"nodes_executed": [*self.nodes_executed, node]})

    def with_parallel_operations(self, infos: List[ParallelOperationInfo]) -> "ProcessingMetadata":
        return self.model_copy(update={"parallel_operations": [*self.parallel_operations, *infos]})


class FactCheckResult(BaseModel):
    claim_id: str
    claim: str
    status: ClaimStatus
    confidence: float = Field(ge=0.0, le=1.0)


class SourceValidationResult(BaseModel):
    consistency_score: float = Field(default=0.5, ge=0.0, le=1.0)
    conflicts: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    primary_source_id: Optional[str] = None
    cross_reference_ids: List[str] = Field(default_factory=list)


class RefinementIteration(BaseModel):
    """An accepted refinement pass."""

    iteration: int
    confidence_before: float
    confidence_after: float
    improvement: float
    steps: List[NodeName]
    duration_ms: float = 0.0


class WorkflowState(BaseModel):
    """State threaded through every node of the workflow graph."""

    # Inputs
    query: str = Field(description="User question")
    conversation_context: List[ConversationMessage] = Field(default_factory=list)
    session_id: Optional[str] = Field(default=None, description="Session used for checkpoints")

    # Evidence and coverage
    evidence_references: List[EvidenceReference] = Field(default_factory=list)
    coverage_analysis: CoverageAnalysis = Field(default_factory=CoverageAnalysis)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0, description="High-water mark of overall confidence")
    preloaded_documents: Optional[List[Document]] = Field(
        default=None, description="Documents fetched alongside query analysis"
    )

    # Optional stage outputs
    fact_check_results: List[FactCheckResult] = Field(default_factory=list)
    source_validation_result: Optional[SourceValidationResult] = None
    follow_up_suggestions: List[str] = Field(default_factory=list)

    # Output
    response: str = ""
    metadata: ProcessingMetadata = Field(default_factory=ProcessingMetadata)

    # Refinement
    refinement_context: Optional[str] = Field(default=None, description="Prior answer injected by a refinement pass")
    refinement_iterations: List[RefinementIteration] = Field(default_factory=list)

    # Failure bookkeeping
    errors: List[str] = Field(default_factory=list)
    retry_count: int = 0

    # Control flow
    current_node: Optional[NodeName] = None
    completed_nodes: List[NodeName] = Field(default_factory=list)
    should_retry: bool = False
    should_exit: bool = False


class QueryResult(BaseModel):
    """Caller-facing result of one workflow run."""

    answer: str
    evidence_references: List[EvidenceReference] = Field(default_factory=list)
    coverage_analysis: CoverageAnalysis = Field(default_factory=CoverageAnalysis)
    confidence: float = 0.0
    processing_time_ms: float = 0.0
    tokens_used: int = 0
    follow_up_suggestions: List[str] = Field(default_factory=list)
    refinement_iterations: List[RefinementIteration] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    workflow_id: Optional[str] = None
    session_id: Optional[str] = None
    mode: Literal["standard", "deep"] = "standard"
    resumed: bool = False
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def create_initial_state(
    query: str,
    conversation_context: Optional[List[Dict[str, Any]]] = None,
    session_id: Optional[str] = None,
    workflow_id: Optional[str] = None,
    mode: Literal["standard", "deep"] = "standard",
) -> WorkflowState:
    """Create initial state for a new query."""
    return WorkflowState(
        query=query,
        conversation_context=[
            m if isinstance(m, ConversationMessage) else ConversationMessage(**m)
            for m in (conversation_context or [])
        ],
        session_id=session_id,
        metadata=ProcessingMetadata(workflow_id=workflow_id, mode=mode),
    )


def record_confidence(
    state: WorkflowState,
    node: NodeName,
    observed: float,
    reason: str,
    metadata: Optional[ProcessingMetadata] = None,
) -> Dict[str, Any]:
    """Raise the confidence high-water mark and log the step.

    Returns the ``confidence`` and ``metadata`` fields of a node update.
    """
    confidence = max(state.confidence, observed)
    base = metadata or state.metadata
    entry = ConfidenceEntry(node=node, confidence=confidence, observed=observed, reason=reason)
    return {"confidence": confidence, "metadata": base.with_confidence(entry)}


def degrade_coverage(coverage: CoverageAnalysis, gap: str) -> CoverageAnalysis:
    """Downgrade coverage to the escape hatch with an explanatory gap."""
    gaps = coverage.gaps if gap in coverage.gaps else [*coverage.gaps, gap]
    return coverage.model_copy(update={
        "overall_confidence": 0.0,
        "coverage_level": "low",
        "response_strategy": "escape_hatch",
        "gaps": gaps,
    })
