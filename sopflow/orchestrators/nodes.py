"""Node executors for the SOP answering workflow.

Every node takes the current ``WorkflowState`` and returns a partial update.
Nodes raise on transient failures (inference errors, undecodable output);
``wrap_node`` turns those into retry signals. Failures with a defined
fallback are handled here.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from langsmith import traceable

from sopflow.common.settings import WorkflowSettings
from sopflow.composer.prompts import render_prompt
from sopflow.llm.inference import InferenceClient, InferenceResult
from sopflow.orchestrators.coverage import classify_tier, evaluate_coverage
from sopflow.orchestrators.errors import InferenceError, OutputParseError
from sopflow.orchestrators.parallel import run_in_parallel
from sopflow.orchestrators.parsing import (
    QueryAnalysisOutput,
    calculate_query_confidence,
    parse_evidence_assessment,
    parse_fact_check,
    parse_follow_up_questions,
    parse_query_analysis,
    parse_source_validation,
)
from sopflow.schemas.workflow_state import (
    CoverageAnalysis,
    Document,
    EvidenceReference,
    LLMCallRecord,
    NodeName,
    ProcessingMetadata,
    SourceValidationResult,
    WorkflowState,
    degrade_coverage,
    now_ms,
    record_confidence,
)
from sopflow.stores.documents import DocumentStore

logger = structlog.get_logger(__name__)

NO_DOCUMENTS_GAP = "No documents available"
PARSE_FAILURE_GAP = "Unable to analyze documents due to processing error"
SYNTHESIS_FAILURE_GAP = "Response generation failed"
MAX_GAPS = 5
ASSESSMENT_CONTENT_CHARS = 3000
FACT_CHECK_CONTENT_CHARS = 1500


def _fallback_questions(intent: str) -> List[str]:
    intent = intent.lower()
    questions: List[str] = []
    if "process" in intent or "procedure" in intent:
        questions.append("What specific process stage or step are you most concerned about?")
        questions.append("Are there any constraints or requirements specific to your project?")
    if "problem" in intent or "issue" in intent or "challenge" in intent:
        questions.append("Can you describe the specific symptoms or impacts you're experiencing?")
        questions.append("What have you already tried to address this issue?")
    if "decision" in intent or "choose" in intent or "approach" in intent:
        questions.append("What are the main factors or criteria driving this decision?")
        questions.append("What are the potential risks or constraints you need to consider?")
    questions.append("What is the timeline or urgency level for this situation?")
    questions.append("Which stakeholders or team members are involved?")
    return questions[:5]


class WorkflowNodes:
    """The seven workflow stages, bound to their collaborators."""

    def __init__(
        self,
        settings: WorkflowSettings,
        inference: InferenceClient,
        document_store: DocumentStore,
    ):
        self.settings = settings
        self.inference = inference
        self.document_store = document_store

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _infer(
        self,
        node: NodeName,
        template: str,
        temperature: float,
        max_tokens: int,
        **variables: str,
    ) -> Tuple[InferenceResult, LLMCallRecord]:
        system_prompt, user_prompt = render_prompt(template, **variables)
        model = self.settings.llm.model
        start_time = time.time()
        try:
            result = await self.inference.invoke(
                system_prompt,
                user_prompt,
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except Exception as e:
            raise InferenceError(f"{node.value} inference failed: {e}") from e
        if not result.text or not result.text.strip():
            raise InferenceError(f"No response from model for {node.value}")

        record = LLMCallRecord(
            node=node,
            model=model,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return result, record

    def escape_hatch_answer(self, state: WorkflowState, follow_ups: Sequence[str] = ()) -> str:
        """Gap-acknowledgement message for queries the documents cannot answer."""
        intent = state.coverage_analysis.query_intent
        topic = intent if intent and intent != "Unknown intent" else f'"{state.query}"'
        escape_hatch = self.settings.escape_hatch
        answer = escape_hatch.message_template.format(topic=topic)
        if escape_hatch.request_feedback:
            answer += " " + escape_hatch.feedback_prompt
        if follow_ups:
            answer += "\n\nTo help me find a better answer:\n" + "\n".join(f"- {q}" for q in follow_ups)
        return answer

    def _retier(self, coverage: CoverageAnalysis, confidence: float, **changes: Any) -> CoverageAnalysis:
        level, strategy = classify_tier(confidence, self.settings.coverage)
        return coverage.model_copy(update={
            "overall_confidence": confidence,
            "coverage_level": level,
            "response_strategy": strategy,
            **changes,
        })

    @staticmethod
    def _conversation_block(state: WorkflowState) -> str:
        if not state.conversation_context:
            return ""
        lines = "\n".join(f"{m.role}: {m.content}" for m in state.conversation_context)
        return f"\n\nConversation Context:\n{lines}"

    @staticmethod
    def _refinement_block(state: WorkflowState) -> str:
        if not state.refinement_context:
            return ""
        return f"\n\nRefinement Context:\n{state.refinement_context}"

    @staticmethod
    def _format_evidence(evidence: Sequence[EvidenceReference], content_chars: int) -> str:
        blocks = []
        for ref in evidence:
            blocks.append(
                f"{ref.id} - {ref.title} ({ref.confidence:.2f} confidence)\n"
                f"Key Points: {', '.join(ref.key_points)}\n"
                f"Relevant Sections: {', '.join(ref.sections)}\n"
                f"Content: {(ref.content or '')[:content_chars]}"
            )
        return "\n---\n".join(blocks)

    # ------------------------------------------------------------------
    # Query analysis
    # ------------------------------------------------------------------

    async def _analyze_query(self, state: WorkflowState) -> Tuple[QueryAnalysisOutput, LLMCallRecord]:
        result, record = await self._infer(
            NodeName.QUERY_ANALYSIS,
            "query_analysis",
            self.settings.llm.query_analysis_temperature,
            self.settings.llm.query_analysis_max_tokens,
            query=state.query,
            conversation=self._conversation_block(state),
        )
        return parse_query_analysis(result.text), record

    @traceable(run_type="chain", name="query_analysis", tags=["workflow", "node"])
    async def query_analysis(self, state: WorkflowState) -> Dict[str, Any]:
        """Derive intent, key topics and an initial confidence for the query.

        When parallel execution is enabled the document store is read at the
        same time, and the documents are handed to evidence assessment.
        """
        start_time = time.time()
        logger.info(
            "query_analysis start",
            query_preview=state.query[:50],
            retry_count=state.retry_count,
            workflow_id=state.metadata.workflow_id,
        )

        metadata = state.metadata
        preloaded: Optional[List[Document]] = None
        if self.settings.parallel.enabled:
            results = await run_in_parallel(
                {
                    "query_analysis": self._analyze_query(state),
                    "document_loading": self.document_store.get_all_active(),
                },
                timeout=self.settings.parallel.timeout_seconds,
                log_results=self.settings.parallel.log_results,
            )
            metadata = metadata.with_parallel_operations(
                [outcome.to_info(name) for name, outcome in results.items()]
            )
            analysis_outcome = results["query_analysis"]
            if not analysis_outcome.success:
                raise InferenceError(f"Query analysis failed: {analysis_outcome.error}")
            analysis, record = analysis_outcome.result
            if results["document_loading"].success:
                preloaded = results["document_loading"].result
        else:
            analysis, record = await self._analyze_query(state)

        confidence = calculate_query_confidence(state.query, len(analysis.key_topics), analysis.specificity)
        level, strategy = classify_tier(confidence, self.settings.coverage)
        coverage = CoverageAnalysis(
            overall_confidence=confidence,
            coverage_level=level,
            response_strategy=strategy,
            query_intent=analysis.intent,
            key_topics=analysis.key_topics,
            specificity=analysis.specificity,
        )

        logger.info(
            "query_analysis completed",
            intent=analysis.intent,
            topics=len(analysis.key_topics),
            confidence=confidence,
            preloaded_documents=len(preloaded) if preloaded is not None else None,
            duration_ms=round((time.time() - start_time) * 1000, 2),
            workflow_id=state.metadata.workflow_id,
        )

        # A restart after failure discards earlier-stage results but keeps errors
        return {
            "coverage_analysis": coverage,
            "preloaded_documents": preloaded,
            "evidence_references": [],
            "fact_check_results": [],
            "source_validation_result": None,
            "follow_up_suggestions": [],
            "response": "",
            "completed_nodes": [],
            **record_confidence(
                state,
                NodeName.QUERY_ANALYSIS,
                confidence,
                f"Query analysis: {len(analysis.key_topics)} topics, {analysis.specificity} specificity",
                metadata=metadata.with_llm_call(record),
            ),
        }

    # ------------------------------------------------------------------
    # Evidence assessment
    # ------------------------------------------------------------------

    def _escape_immediately(
        self,
        state: WorkflowState,
        confidence: float,
        gap: str,
        metadata: ProcessingMetadata,
    ) -> Dict[str, Any]:
        coverage = state.coverage_analysis.model_copy(update={
            "overall_confidence": confidence,
            "coverage_level": "low",
            "response_strategy": "escape_hatch",
            "gaps": [gap],
        })
        escaped = state.model_copy(update={"coverage_analysis": coverage})
        return {
            "evidence_references": [],
            "coverage_analysis": coverage,
            "response": self.escape_hatch_answer(escaped),
            "should_exit": True,
            **record_confidence(state, NodeName.EVIDENCE_ASSESSMENT, confidence, gap, metadata=metadata),
        }

    @traceable(run_type="chain", name="evidence_assessment", tags=["workflow", "node"])
    async def evidence_assessment(self, state: WorkflowState) -> Dict[str, Any]:
        start_time = time.time()
        documents = state.preloaded_documents
        if documents is None:
            documents = await self.document_store.get_all_active()

        if not documents:
            logger.warning("No documents available, using escape hatch", workflow_id=state.metadata.workflow_id)
            return self._escape_immediately(state, 0.0, NO_DOCUMENTS_GAP, state.metadata)

        coverage = state.coverage_analysis
        document_text = "\n---\n".join(
            f'<document id="{d.id}">\nTitle: {d.title}\n{d.content[:ASSESSMENT_CONTENT_CHARS]}\n</document>'
            for d in documents
        )
        result, record = await self._infer(
            NodeName.EVIDENCE_ASSESSMENT,
            "evidence_assessment",
            self.settings.llm.evidence_assessment_temperature,
            self.settings.llm.evidence_assessment_max_tokens,
            query=state.query,
            intent=coverage.query_intent,
            key_topics=", ".join(coverage.key_topics),
            conversation=self._conversation_block(state),
            refinement=self._refinement_block(state),
            documents=document_text,
        )
        metadata = state.metadata.with_llm_call(record)

        try:
            assessment = parse_evidence_assessment(result.text, {d.id: d for d in documents})
        except OutputParseError as e:
            logger.warning("Evidence assessment output unparseable", error=str(e), workflow_id=state.metadata.workflow_id)
            return self._escape_immediately(state, 0.1, PARSE_FAILURE_GAP, metadata)

        updated = self._retier(
            coverage,
            assessment.overall_confidence,
            gaps=assessment.gaps[:MAX_GAPS],
            query_intent=assessment.intent or coverage.query_intent,
            key_topics=assessment.key_topics or coverage.key_topics,
        )

        logger.info(
            "evidence_assessment completed",
            documents=len(documents),
            evidence=len(assessment.evidence),
            confidence=assessment.overall_confidence,
            strategy=updated.response_strategy,
            duration_ms=round((time.time() - start_time) * 1000, 2),
            workflow_id=state.metadata.workflow_id,
        )
        return {
            "evidence_references": assessment.evidence,
            "coverage_analysis": updated,
            **record_confidence(
                state,
                NodeName.EVIDENCE_ASSESSMENT,
                assessment.overall_confidence,
                f"Assessed {len(documents)} documents, {len(assessment.evidence)} relevant",
                metadata=metadata,
            ),
        }

    # ------------------------------------------------------------------
    # Coverage evaluation
    # ------------------------------------------------------------------

    @traceable(run_type="chain", name="coverage_evaluation", tags=["workflow", "node"])
    async def coverage_evaluation(self, state: WorkflowState) -> Dict[str, Any]:
        coverage = state.coverage_analysis
        evaluation = evaluate_coverage(
            coverage.overall_confidence,
            state.evidence_references,
            coverage.gaps,
            self.settings.coverage,
        )
        logger.info(
            "coverage_evaluation completed",
            original_confidence=coverage.overall_confidence,
            adjusted_confidence=evaluation.adjusted_confidence,
            strategy=evaluation.response_strategy,
            next_node=evaluation.next_node.value,
            reasons=evaluation.reason,
            workflow_id=state.metadata.workflow_id,
        )
        return {
            "coverage_analysis": coverage.model_copy(update={
                "overall_confidence": evaluation.adjusted_confidence,
                "coverage_level": evaluation.coverage_level,
                "response_strategy": evaluation.response_strategy,
            }),
            **record_confidence(state, NodeName.COVERAGE_EVALUATION, evaluation.adjusted_confidence, evaluation.reason),
        }

    # ------------------------------------------------------------------
    # Optional verification stages
    # ------------------------------------------------------------------

    @traceable(run_type="chain", name="fact_checking", tags=["workflow", "node"])
    async def fact_checking(self, state: WorkflowState) -> Dict[str, Any]:
        """Cross-check claims across the strongest evidence and adjust confidence."""
        coverage = state.coverage_analysis
        if coverage.response_strategy != "full_answer" or len(state.evidence_references) <= 1:
            logger.debug("Skipping fact checking", strategy=coverage.response_strategy)
            return {}

        top = sorted(state.evidence_references, key=lambda e: e.confidence, reverse=True)[:3]
        result, record = await self._infer(
            NodeName.FACT_CHECKING,
            "fact_checking",
            self.settings.llm.fact_checking_temperature,
            self.settings.llm.fact_checking_max_tokens,
            query=state.query,
            intent=coverage.query_intent,
            documents=self._format_evidence(top, FACT_CHECK_CONTENT_CHARS),
        )
        claims = parse_fact_check(result.text)
        mean = sum(c.confidence for c in claims) / len(claims) if claims else 1.0

        base = coverage.overall_confidence
        if mean < 0.7:
            adjusted = max(base * 0.8, 0.4)
            reason = "Fact-checking revealed potential inconsistencies"
        elif mean > 0.9:
            adjusted = min(base + 0.05, 1.0)
            reason = "Fact-checking confirmed high accuracy"
        else:
            adjusted = base
            reason = "Fact-checking completed with acceptable results"
        adjusted = round(adjusted, 4)

        logger.info(
            "fact_checking completed",
            claims=len(claims),
            mean_claim_confidence=round(mean, 3),
            confidence_before=base,
            confidence_after=adjusted,
            workflow_id=state.metadata.workflow_id,
        )
        return {
            "fact_check_results": claims,
            "coverage_analysis": self._retier(coverage, adjusted),
            **record_confidence(
                state,
                NodeName.FACT_CHECKING,
                adjusted,
                f"{reason} (avg: {mean:.2f})",
                metadata=state.metadata.with_llm_call(record),
            ),
        }

    @traceable(run_type="chain", name="source_validation", tags=["workflow", "node"])
    async def source_validation(self, state: WorkflowState) -> Dict[str, Any]:
        """Cross-reference the primary document against the others for conflicts."""
        coverage = state.coverage_analysis
        evidence = state.evidence_references
        if coverage.response_strategy != "partial_answer" or not coverage.gaps or len(evidence) <= 1:
            logger.debug("Skipping source validation", strategy=coverage.response_strategy)
            return {}

        primary, cross_references = evidence[0], evidence[1:4]
        result, record = await self._infer(
            NodeName.SOURCE_VALIDATION,
            "source_validation",
            self.settings.llm.source_validation_temperature,
            self.settings.llm.source_validation_max_tokens,
            query=state.query,
            intent=coverage.query_intent,
            gaps=", ".join(coverage.gaps),
            primary=self._format_evidence([primary], 1200),
            cross_references=self._format_evidence(cross_references, 800),
        )
        parsed = parse_source_validation(result.text)

        base = coverage.overall_confidence
        if parsed.consistency_score < 0.6:
            adjusted = max(base * 0.7, 0.3)
        elif parsed.consistency_score > 0.8 and not parsed.conflicts:
            adjusted = min(base + 0.1, 0.9)
        elif parsed.conflicts:
            adjusted = max(base * 0.85, 0.4)
        else:
            adjusted = base
        adjusted = round(adjusted, 4)

        gaps = list(coverage.gaps)
        for conflict in parsed.conflicts:
            if len(gaps) >= MAX_GAPS:
                break
            gaps.append(f"Conflict: {conflict}")

        logger.info(
            "source_validation completed",
            consistency_score=parsed.consistency_score,
            conflicts=len(parsed.conflicts),
            confidence_before=base,
            confidence_after=adjusted,
            workflow_id=state.metadata.workflow_id,
        )
        return {
            "source_validation_result": SourceValidationResult(
                consistency_score=parsed.consistency_score,
                conflicts=parsed.conflicts,
                recommendations=parsed.recommendations,
                primary_source_id=primary.id,
                cross_reference_ids=[e.id for e in cross_references],
            ),
            "coverage_analysis": self._retier(coverage, adjusted, gaps=gaps),
            **record_confidence(
                state,
                NodeName.SOURCE_VALIDATION,
                adjusted,
                f"Source validation consistency {parsed.consistency_score:.2f}, {len(parsed.conflicts)} conflicts",
                metadata=state.metadata.with_llm_call(record),
            ),
        }

    @traceable(run_type="chain", name="follow_up_generation", tags=["workflow", "node"])
    async def follow_up_generation(self, state: WorkflowState) -> Dict[str, Any]:
        """Produce clarifying questions for a query the documents cannot answer."""
        coverage = state.coverage_analysis
        if coverage.response_strategy != "escape_hatch" or len(coverage.gaps) <= 2:
            logger.debug("Skipping follow-up generation", strategy=coverage.response_strategy)
            return {}

        metadata = state.metadata
        questions: List[str] = []
        try:
            result, record = await self._infer(
                NodeName.FOLLOW_UP_GENERATION,
                "follow_up_generation",
                self.settings.llm.follow_up_temperature,
                self.settings.llm.follow_up_max_tokens,
                query=state.query,
                intent=coverage.query_intent,
                key_topics=", ".join(coverage.key_topics),
                gaps=", ".join(coverage.gaps),
            )
            metadata = metadata.with_llm_call(record)
            questions = parse_follow_up_questions(result.text)
        except InferenceError as e:
            logger.warning("Follow-up generation failed, using template questions", error=str(e))

        if len(questions) < 3:
            for fallback in _fallback_questions(coverage.query_intent):
                if len(questions) >= 5:
                    break
                if fallback not in questions:
                    questions.append(fallback)

        logger.info("follow_up_generation completed", questions=len(questions), workflow_id=state.metadata.workflow_id)
        return {"follow_up_suggestions": questions, "metadata": metadata}

    # ------------------------------------------------------------------
    # Response synthesis
    # ------------------------------------------------------------------

    @traceable(run_type="chain", name="response_synthesis", tags=["workflow", "node"])
    async def response_synthesis(self, state: WorkflowState) -> Dict[str, Any]:
        start_time = time.time()
        coverage = state.coverage_analysis

        if coverage.response_strategy == "escape_hatch":
            logger.info("response_synthesis escape hatch", gaps=len(coverage.gaps), workflow_id=state.metadata.workflow_id)
            return {
                "response": self.escape_hatch_answer(state, state.follow_up_suggestions),
                "metadata": state.metadata.model_copy(update={"end_time": now_ms()}),
            }

        try:
            result, record = await self._infer(
                NodeName.RESPONSE_SYNTHESIS,
                "response_synthesis",
                self.settings.llm.synthesis_temperature,
                self.settings.llm.synthesis_max_tokens,
                query=state.query,
                intent=coverage.query_intent,
                coverage_level=coverage.coverage_level,
                confidence=f"{coverage.overall_confidence:.2f}",
                strategy=coverage.response_strategy,
                gaps=", ".join(coverage.gaps) or "None",
                conversation=self._conversation_block(state),
                refinement=self._refinement_block(state),
                documents=self._format_evidence(state.evidence_references, ASSESSMENT_CONTENT_CHARS),
            )
        except InferenceError as e:
            logger.error("Response synthesis failed, using escape hatch", error=str(e), workflow_id=state.metadata.workflow_id)
            degraded = degrade_coverage(coverage, SYNTHESIS_FAILURE_GAP)
            return {
                "response": self.escape_hatch_answer(state.model_copy(update={"coverage_analysis": degraded})),
                "coverage_analysis": degraded,
                "errors": [*state.errors, f"{NodeName.RESPONSE_SYNTHESIS.value}: {e}"],
                "metadata": state.metadata.model_copy(update={"end_time": now_ms()}),
            }

        logger.info(
            "response_synthesis completed",
            answer_length=len(result.text),
            strategy=coverage.response_strategy,
            duration_ms=round((time.time() - start_time) * 1000, 2),
            workflow_id=state.metadata.workflow_id,
        )
        metadata = state.metadata.with_llm_call(record)
        return {
            "response": result.text.strip(),
            "metadata": metadata.model_copy(update={"end_time": now_ms()}),
        }
