"""Decoders for model output.

Model text is untrusted input. Every function here either returns a
well-formed structure or raises ``OutputParseError``; none of them trust the
model to respect value ranges.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from sopflow.orchestrators.errors import OutputParseError
from sopflow.schemas.workflow_state import Document, EvidenceReference, FactCheckResult

_INTERROGATIVE = re.compile(r"\b(how|what|why|when|where|which|who)\b", re.IGNORECASE)
_CODE_FENCE_START = re.compile(r"^```(?:xml)?\s*\n?")
_CODE_FENCE_END = re.compile(r"\n?```\s*$")

_CLAIM_CONFIDENCE = {"VERIFIED": 0.9, "QUESTIONABLE": 0.6, "CONFLICT": 0.3}
_CLAIM_LINE = re.compile(r"^\s*[-*]?\s*([^:\n]+?):\s*(.+?)\s*-\s*(VERIFIED|QUESTIONABLE|CONFLICT)\b", re.IGNORECASE)
_CONFIDENCE_LINE = re.compile(r"Confidence:\s*([0-9.]+)", re.IGNORECASE)


class QueryAnalysisOutput(BaseModel):
    intent: str
    key_topics: List[str] = Field(default_factory=list)
    specificity: str = "Medium"


class AssessmentOutput(BaseModel):
    intent: Optional[str] = None
    key_topics: List[str] = Field(default_factory=list)
    evidence: List[EvidenceReference] = Field(default_factory=list)
    overall_confidence: float = 0.0
    gaps: List[str] = Field(default_factory=list)


class SourceValidationOutput(BaseModel):
    consistency_score: float = 0.5
    conflicts: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _to_float(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        return float(raw.strip())
    except ValueError:
        return None


def _split_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def extract_section(text: str, name: str) -> Optional[str]:
    """Find the single-line value of a labelled section such as ``Intent: ...``."""
    escaped = re.escape(name)
    patterns = [
        rf"\*\*{escaped}\*\*:?\s*([^\n]+)",
        rf"\d+\.\s*{escaped}:?\s*([^\n]+)",
        rf"{escaped}:?\s*([^\n]+)",
    ]
    for pattern in patterns:
        match = re.search(pattern, text, re.IGNORECASE)
        if match:
            value = match.group(1).strip().strip("*:").strip()
            if value:
                return value
    return None


def calculate_query_confidence(query: str, topic_count: int, specificity: str) -> float:
    """Initial confidence from surface features of the query."""
    confidence = 0.3

    word_count = len(query.split())
    if word_count > 5:
        confidence += 0.1
    if word_count > 10:
        confidence += 0.1

    if topic_count > 1:
        confidence += 0.1
    if topic_count > 3:
        confidence += 0.1

    level = specificity.lower()
    if "high" in level:
        confidence += 0.2
    elif "medium" in level:
        confidence += 0.1

    if _INTERROGATIVE.search(query):
        confidence += 0.1

    return min(round(confidence, 4), 1.0)


def parse_query_analysis(text: str) -> QueryAnalysisOutput:
    if not text or not text.strip():
        raise OutputParseError("Empty query analysis output")
    return QueryAnalysisOutput(
        intent=extract_section(text, "Intent") or "Unknown intent",
        key_topics=_split_list(extract_section(text, "Key Topics")),
        specificity=extract_section(text, "Specificity Level") or "Medium",
    )


def strip_code_fence(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _CODE_FENCE_END.sub("", _CODE_FENCE_START.sub("", cleaned))
    return cleaned


def _tag(text: str, name: str) -> Optional[str]:
    match = re.search(rf"<{name}>(.*?)</{name}>", text, re.DOTALL)
    return match.group(1).strip() if match else None


def parse_evidence_assessment(text: str, documents: Dict[str, Document]) -> AssessmentOutput:
    """Decode the XML evidence assessment.

    Document references to ids absent from ``documents`` are dropped, and the
    full document content is attached to each kept reference.

    Raises:
        OutputParseError: if the output carries no recognisable assessment
    """
    cleaned = strip_code_fence(text or "")
    raw_confidence = _tag(cleaned, "overall_confidence")
    document_blocks = re.findall(
        r'<document id="([^"]+)" confidence="([^"]*)">(.*?)</document>', cleaned, re.DOTALL
    )
    if raw_confidence is None and not document_blocks:
        raise OutputParseError("No assessment structure found in model output")

    overall = _to_float(raw_confidence) if raw_confidence is not None else 0.0
    if overall is None:
        raise OutputParseError(f"Invalid overall_confidence: {raw_confidence!r}")

    evidence: List[EvidenceReference] = []
    for doc_id, raw_doc_confidence, body in document_blocks:
        document = documents.get(doc_id.strip())
        if document is None:
            continue
        evidence.append(EvidenceReference(
            id=document.id,
            title=document.title,
            sections=_split_list(_tag(body, "relevant_sections")),
            confidence=clamp(_to_float(raw_doc_confidence) or 0.0),
            key_points=_split_list(_tag(body, "key_points")),
            applicability=_tag(body, "applicability") or "Unknown",
            content=document.content,
        ))

    return AssessmentOutput(
        intent=_tag(cleaned, "intent"),
        key_topics=_split_list(_tag(cleaned, "key_topics")),
        evidence=evidence,
        overall_confidence=clamp(overall),
        gaps=_split_list(_tag(cleaned, "gaps")),
    )


def parse_fact_check(text: str) -> List[FactCheckResult]:
    """Decode ``ID: claim - STATUS`` blocks with optional ``Confidence:`` lines."""
    results: List[FactCheckResult] = []
    current: Optional[Dict[str, object]] = None

    for line in (text or "").splitlines():
        match = _CLAIM_LINE.match(line)
        if match:
            if current:
                results.append(FactCheckResult(**current))
            status = match.group(3).upper()
            current = {
                "claim_id": match.group(1).strip(),
                "claim": match.group(2).strip(),
                "status": status,
                "confidence": _CLAIM_CONFIDENCE[status],
            }
            continue
        if current:
            confidence = _to_float(_first_group(_CONFIDENCE_LINE, line))
            if confidence is not None:
                current["confidence"] = clamp(confidence)

    if current:
        results.append(FactCheckResult(**current))
    return results


def _first_group(pattern: re.Pattern, line: str) -> Optional[str]:
    match = pattern.search(line)
    return match.group(1) if match else None


def _bullets(section: Optional[str]) -> List[str]:
    if not section:
        return []
    items = []
    for line in section.splitlines():
        line = line.strip()
        if not line.startswith("-"):
            continue
        item = line.lstrip("-").strip()
        if item and item.lower().rstrip(".") not in ("none", "n/a"):
            items.append(item)
    return items


def parse_source_validation(text: str) -> SourceValidationOutput:
    text = text or ""
    score_match = re.search(r"CONSISTENCY_SCORE:\s*([0-9.]+)", text, re.IGNORECASE)
    score = _to_float(score_match.group(1)) if score_match else None

    conflicts = re.search(
        r"CONFLICTS:(.*?)(?=COVERAGE_IMPROVEMENTS:|RECOMMENDATIONS:|$)", text, re.IGNORECASE | re.DOTALL
    )
    recommendations = re.search(
        r"RECOMMENDATIONS:(.*?)(?=CONFIDENCE_ADJUSTMENT:|$)", text, re.IGNORECASE | re.DOTALL
    )
    return SourceValidationOutput(
        consistency_score=clamp(score) if score is not None else 0.5,
        conflicts=_bullets(conflicts.group(1) if conflicts else None),
        recommendations=_bullets(recommendations.group(1) if recommendations else None),
    )


def parse_follow_up_questions(text: str, limit: int = 5) -> List[str]:
    text = text or ""
    questions: List[str] = []

    section = re.search(r"FOLLOW_UP_QUESTIONS:(.*?)(?:\n\s*\n|$)", text, re.IGNORECASE | re.DOTALL)
    if section:
        for line in section.group(1).splitlines():
            match = re.match(r"^\d+\.\s*(.+)$", line.strip())
            if match and len(match.group(1).strip()) > 10:
                questions.append(match.group(1).strip())

    if not questions:
        for line in text.splitlines():
            line = line.strip()
            if line.endswith("?") and len(line) > 15:
                questions.append(re.sub(r"^\d+\.\s*", "", line).strip())

    return questions[:limit]

