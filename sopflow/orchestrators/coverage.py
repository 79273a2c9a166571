"""Coverage evaluation: fuse model confidence with structural evidence signals.

Pure functions with no inference calls. Evaluating the same inputs twice
always yields the same tier and route.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from pydantic import BaseModel

from sopflow.common.settings import CoverageThresholds
from sopflow.schemas.workflow_state import (
    CoverageLevel,
    EvidenceReference,
    NodeName,
    ResponseStrategy,
)

FACT_CHECK_MIN_CONFIDENCE = 0.8


class CoverageEvaluation(BaseModel):
    adjusted_confidence: float
    coverage_level: CoverageLevel
    response_strategy: ResponseStrategy
    reasons: List[str]
    next_node: NodeName

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)


def classify_tier(confidence: float, thresholds: CoverageThresholds) -> Tuple[CoverageLevel, ResponseStrategy]:
    if confidence >= thresholds.high_confidence:
        return "high", "full_answer"
    if confidence >= thresholds.medium_confidence:
        return "medium", "partial_answer"
    return "low", "escape_hatch"


def decide_route(
    strategy: ResponseStrategy,
    confidence: float,
    evidence_count: int,
    gap_count: int,
) -> NodeName:
    """Pick the stage that follows coverage evaluation."""
    if strategy == "full_answer" and evidence_count > 1 and confidence > FACT_CHECK_MIN_CONFIDENCE:
        return NodeName.FACT_CHECKING
    if strategy == "partial_answer" and gap_count > 0 and evidence_count > 1:
        return NodeName.SOURCE_VALIDATION
    if strategy == "escape_hatch" and gap_count > 2:
        return NodeName.FOLLOW_UP_GENERATION
    return NodeName.RESPONSE_SYNTHESIS


def evaluate_coverage(
    confidence: float,
    evidence: Sequence[EvidenceReference],
    gaps: Sequence[str],
    thresholds: CoverageThresholds,
) -> CoverageEvaluation:
    """Two-pass evaluation: tier the raw confidence, adjust it, then re-tier and route."""
    _, strategy = classify_tier(confidence, thresholds)
    reasons = [f"{_tier_label(strategy)} confidence ({confidence:.2f})"]
    adjusted = confidence

    if not evidence:
        adjusted = min(adjusted, 0.2)
        reasons.append("No relevant documents found")
    elif len(evidence) == 1:
        single = evidence[0].confidence
        if single < 0.6:
            adjusted = min(adjusted, 0.5)
            reasons.append("Single document with low confidence")
        else:
            reasons.append(f"Single high-confidence document ({single:.2f})")
    else:
        mean = sum(e.confidence for e in evidence) / len(evidence)
        if mean > 0.7:
            adjusted = min(adjusted + 0.1, 1.0)
            reasons.append(f"Multiple high-confidence documents (avg: {mean:.2f})")
        else:
            reasons.append(f"Multiple documents with moderate confidence (avg: {mean:.2f})")

    if not gaps:
        adjusted = min(adjusted + 0.05, 1.0)
        reasons.append("No coverage gaps identified")
    elif len(gaps) > 3:
        adjusted = max(adjusted - 0.1, 0.0)
        reasons.append(f"Multiple coverage gaps ({len(gaps)})")
    else:
        reasons.append(f"Some coverage gaps identified ({len(gaps)})")

    adjusted = round(adjusted, 4)
    level, strategy = classify_tier(adjusted, thresholds)
    if not evidence:
        # The gap bonus must not lift an evidence-free answer over the cap
        adjusted = min(adjusted, 0.2)
        level, strategy = "low", "escape_hatch"

    return CoverageEvaluation(
        adjusted_confidence=adjusted,
        coverage_level=level,
        response_strategy=strategy,
        reasons=reasons,
        next_node=decide_route(strategy, adjusted, len(evidence), len(gaps)),
    )


def _tier_label(strategy: ResponseStrategy) -> str:
    return {"full_answer": "High", "partial_answer": "Medium", "escape_hatch": "Low"}[strategy]
