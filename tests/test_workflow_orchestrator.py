"""
End-to-end tests for WorkflowOrchestrator.process_query.

The full LangGraph workflow runs against a scripted inference client, an
in-memory document store and a fakeredis checkpoint store.
"""

from unittest.mock import patch

import pytest

from conftest import (
    FACT_CHECK_OUTPUT,
    FOLLOW_UP_OUTPUT,
    QUERY_ANALYSIS_OUTPUT,
    SOURCE_VALIDATION_OUTPUT,
    SYNTHESIS_OUTPUT,
    ScriptedInference,
    assessment_xml,
)
from sopflow.orchestrators.checkpointing import Checkpoint, CheckpointSnapshot, CheckpointStore
from sopflow.orchestrators.nodes import NO_DOCUMENTS_GAP
from sopflow.orchestrators.workflow_orchestrator import SYSTEM_ERROR_GAP, WorkflowOrchestrator
from sopflow.schemas.workflow_state import (
    CoverageAnalysis,
    EvidenceReference,
    NodeName,
    ProcessingMetadata,
    WorkflowState,
    now_ms,
)
from sopflow.stores.documents import InMemoryDocumentStore

QUERY = "What is the procedure for a project kickoff meeting with stakeholders?"
SESSION = "session-abc"


def scripted(**overrides):
    responses = {
        "query_analysis": QUERY_ANALYSIS_OUTPUT,
        "evidence_assessment": assessment_xml({"SOP-001": 0.9, "SOP-002": 0.85, "SOP-003": 0.8}, 0.7),
        "fact_checking": FACT_CHECK_OUTPUT,
        "source_validation": SOURCE_VALIDATION_OUTPUT,
        "follow_up_generation": FOLLOW_UP_OUTPUT,
        "response_synthesis": SYNTHESIS_OUTPUT,
    }
    responses.update(overrides)
    return ScriptedInference(responses)


def called_nodes(inference):
    return [c["node"] for c in inference.calls]


@pytest.fixture
def orchestrator(settings, scripted_inference, document_store):
    return WorkflowOrchestrator(settings, scripted_inference, document_store)


class TestStandardRun:
    @pytest.mark.asyncio
    async def test_high_confidence_run_is_fact_checked(self, orchestrator, scripted_inference):
        result = await orchestrator.process_query(QUERY)

        assert result.answer == SYNTHESIS_OUTPUT
        assert called_nodes(scripted_inference) == [
            "query_analysis",
            "evidence_assessment",
            "fact_checking",
            "response_synthesis",
        ]
        assert result.coverage_analysis.response_strategy == "full_answer"
        assert result.coverage_analysis.coverage_level == "high"
        assert result.coverage_analysis.overall_confidence == pytest.approx(0.9)
        assert result.confidence == pytest.approx(0.9)
        assert [e.id for e in result.evidence_references] == ["SOP-001", "SOP-002", "SOP-003"]
        assert result.tokens_used == 600
        assert result.processing_time_ms >= 0
        assert result.workflow_id.startswith("workflow-")
        assert result.mode == "standard"
        assert result.errors == []
        assert result.resumed is False

    @pytest.mark.asyncio
    async def test_no_documents_returns_escape_hatch(self, settings, scripted_inference):
        orchestrator = WorkflowOrchestrator(settings, scripted_inference, InMemoryDocumentStore([]))

        result = await orchestrator.process_query(QUERY)

        assert result.coverage_analysis.response_strategy == "escape_hatch"
        assert result.coverage_analysis.coverage_level == "low"
        assert NO_DOCUMENTS_GAP in result.coverage_analysis.gaps
        assert result.answer.startswith(
            "The Playbook does not explicitly provide guidance for Understand the project kickoff procedure."
        )
        assert called_nodes(scripted_inference) == ["query_analysis"]

    @pytest.mark.asyncio
    async def test_partial_answer_is_source_validated(self, settings, document_store):
        inference = scripted(
            evidence_assessment=assessment_xml({"SOP-001": 0.6, "SOP-002": 0.5}, 0.55, gaps="Budget approval"),
        )
        result = await WorkflowOrchestrator(settings, inference, document_store).process_query(QUERY)

        assert "source_validation" in called_nodes(inference)
        assert "fact_checking" not in called_nodes(inference)
        assert result.answer == SYNTHESIS_OUTPUT
        assert result.coverage_analysis.response_strategy == "partial_answer"
        assert result.coverage_analysis.overall_confidence == pytest.approx(0.65)

    @pytest.mark.asyncio
    async def test_unanswerable_query_gets_follow_ups(self, settings, document_store):
        inference = scripted(
            evidence_assessment=assessment_xml(
                {"SOP-001": 0.3, "SOP-002": 0.3}, 0.2, gaps="Travel policy, Per diem rates, Approvers",
            ),
        )
        result = await WorkflowOrchestrator(settings, inference, document_store).process_query(QUERY)

        nodes = called_nodes(inference)
        assert "fact_checking" not in nodes
        assert "source_validation" not in nodes
        assert "response_synthesis" not in nodes
        assert result.coverage_analysis.response_strategy == "escape_hatch"
        assert len(result.follow_up_suggestions) == 3
        assert "To help me find a better answer:" in result.answer
        assert "gap in our Playbook" in result.answer

    @pytest.mark.asyncio
    async def test_early_exit_skips_coverage_evaluation(self, make_settings, document_store):
        settings = make_settings(routing={"enable_early_exit": True})
        inference = scripted(evidence_assessment=assessment_xml({"SOP-001": 0.95}, 0.95))

        result = await WorkflowOrchestrator(settings, inference, document_store).process_query(QUERY)

        assert called_nodes(inference) == ["query_analysis", "evidence_assessment", "response_synthesis"]
        # coverage evaluation would have added the no-gap bonus
        assert result.coverage_analysis.overall_confidence == pytest.approx(0.95)
        assert result.answer == SYNTHESIS_OUTPUT

    @pytest.mark.asyncio
    async def test_conversation_context_reaches_prompts(self, orchestrator, scripted_inference):
        await orchestrator.process_query(
            QUERY,
            [{"role": "user", "content": "We are starting the Atlas project."}],
        )

        prompt = scripted_inference.calls_for("query_analysis")[0]["user_prompt"]
        assert "Conversation Context:\nuser: We are starting the Atlas project." in prompt


class TestFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_restarts_from_query_analysis(self, settings, document_store):
        inference = scripted(
            evidence_assessment=[
                RuntimeError("model overloaded"),
                assessment_xml({"SOP-001": 0.9, "SOP-002": 0.85, "SOP-003": 0.8}, 0.7),
            ],
        )
        result = await WorkflowOrchestrator(settings, inference, document_store).process_query(QUERY)

        assert result.answer == SYNTHESIS_OUTPUT
        assert len(inference.calls_for("query_analysis")) == 2
        assert len(result.errors) == 1
        assert result.errors[0].startswith("evidence_assessment:")

    @pytest.mark.asyncio
    async def test_retry_exhaustion_returns_degraded_answer(self, settings, document_store):
        inference = scripted(evidence_assessment=RuntimeError("model unavailable"))

        result = await WorkflowOrchestrator(settings, inference, document_store).process_query(QUERY)

        assert len(inference.calls_for("query_analysis")) == 3
        assert len(inference.calls_for("evidence_assessment")) == 3
        assert len(result.errors) == 3
        assert "gap in our Playbook" in result.answer
        coverage = result.coverage_analysis
        assert coverage.response_strategy == "escape_hatch"
        assert coverage.overall_confidence == 0.0
        assert "Processing failed after 3 attempts" in coverage.gaps

    @pytest.mark.asyncio
    async def test_synthesis_failure_returns_escape_hatch(self, settings, document_store):
        inference = scripted(response_synthesis=RuntimeError("timeout"))

        result = await WorkflowOrchestrator(settings, inference, document_store).process_query(QUERY)

        assert "gap in our Playbook" in result.answer
        assert result.coverage_analysis.response_strategy == "escape_hatch"
        assert "Response generation failed" in result.coverage_analysis.gaps

    @pytest.mark.asyncio
    async def test_unexpected_error_never_raises(self, orchestrator):
        with patch.object(orchestrator, "_run_graph", side_effect=RuntimeError("graph exploded")):
            result = await orchestrator.process_query(QUERY, session_id=SESSION)

        assert f'"{QUERY}"' in result.answer
        assert result.coverage_analysis.response_strategy == "escape_hatch"
        assert result.coverage_analysis.gaps == [SYSTEM_ERROR_GAP]
        assert result.errors == ["graph exploded"]
        assert result.session_id == SESSION

    @pytest.mark.asyncio
    async def test_empty_query(self, orchestrator, scripted_inference):
        result = await orchestrator.process_query("   ")

        assert result.coverage_analysis.response_strategy == "escape_hatch"
        assert result.errors == ["Empty query"]
        assert scripted_inference.calls == []


class TestDeepMode:
    @pytest.mark.asyncio
    async def test_refinement_rejected_without_improvement(self, settings, document_store):
        inference = scripted(
            evidence_assessment=assessment_xml({"SOP-001": 0.6, "SOP-002": 0.5}, 0.55, gaps="Budget approval"),
        )

        result = await WorkflowOrchestrator(settings, inference, document_store).process_query(QUERY, mode="deep")

        assert result.mode == "deep"
        assert result.refinement_iterations == []
        assert result.coverage_analysis.overall_confidence == pytest.approx(0.65)
        assert len(inference.calls_for("evidence_assessment")) == 2
        refinement_prompt = inference.calls_for("evidence_assessment")[1]["user_prompt"]
        assert "Refinement Context:" in refinement_prompt
        assert "achieved confidence 0.65" in refinement_prompt

    @pytest.mark.asyncio
    async def test_refinement_accepted_on_improvement(self, settings, document_store):
        inference = scripted(
            evidence_assessment=[
                assessment_xml({"SOP-001": 0.6, "SOP-002": 0.5}, 0.55, gaps="Budget approval"),
                assessment_xml({"SOP-001": 0.9, "SOP-002": 0.9}, 0.9),
            ],
        )

        result = await WorkflowOrchestrator(settings, inference, document_store).process_query(QUERY, mode="deep")

        assert len(result.refinement_iterations) == 1
        iteration = result.refinement_iterations[0]
        assert iteration.confidence_before == pytest.approx(0.65)
        assert iteration.confidence_after == pytest.approx(1.0)
        assert result.coverage_analysis.overall_confidence == pytest.approx(1.0)
        assert result.answer == SYNTHESIS_OUTPUT

    @pytest.mark.asyncio
    async def test_confident_answer_is_not_refined(self, orchestrator, scripted_inference):
        result = await orchestrator.process_query(QUERY, mode="deep")

        assert len(scripted_inference.calls_for("evidence_assessment")) == 1
        assert result.refinement_iterations == []

    @pytest.mark.asyncio
    async def test_unknown_mode_runs_standard(self, orchestrator):
        result = await orchestrator.process_query(QUERY, mode="turbo")

        assert result.mode == "standard"


def checkpoint_state(**fields):
    defaults = {
        "query": QUERY,
        "session_id": SESSION,
        "evidence_references": [
            EvidenceReference(id="SOP-001", title="Project Kickoff", confidence=0.9),
            EvidenceReference(id="SOP-002", title="Project Charter", confidence=0.85),
            EvidenceReference(id="SOP-003", title="Stakeholder Register", confidence=0.8),
        ],
        "coverage_analysis": CoverageAnalysis(
            overall_confidence=0.7,
            coverage_level="high",
            response_strategy="full_answer",
            query_intent="Understand the project kickoff procedure",
        ),
        "confidence": 0.9,
        "current_node": NodeName.EVIDENCE_ASSESSMENT,
        "completed_nodes": [NodeName.QUERY_ANALYSIS, NodeName.EVIDENCE_ASSESSMENT],
        "metadata": ProcessingMetadata(workflow_id="wf-resume"),
    }
    defaults.update(fields)
    return WorkflowState(**defaults)


class TestCheckpointing:
    @pytest.fixture
    def checkpoint_store(self, redis_client, settings):
        return CheckpointStore(redis_client, settings.checkpoint)

    @pytest.fixture
    def inference(self):
        return scripted()

    @pytest.fixture
    def orchestrator(self, settings, inference, document_store, checkpoint_store):
        return WorkflowOrchestrator(settings, inference, document_store, checkpoint_store)

    @pytest.mark.asyncio
    async def test_run_writes_checkpoints(self, orchestrator):
        result = await orchestrator.process_query(QUERY, session_id=SESSION, enable_checkpointing=True)

        stats = await orchestrator.get_workflow_stats(SESSION)
        assert stats["checkpoint_count"] >= 3
        assert {entry["workflow_id"] for entry in stats["history"]} == {result.workflow_id}
        assert "response_synthesis" in {entry["node"] for entry in stats["history"]}

    @pytest.mark.asyncio
    async def test_checkpointing_disabled_by_default(self, orchestrator):
        await orchestrator.process_query(QUERY, session_id=SESSION)

        stats = await orchestrator.get_workflow_stats(SESSION)
        assert stats["checkpoint_count"] == 0

    @pytest.mark.asyncio
    async def test_resume_continues_after_last_checkpoint(self, orchestrator, checkpoint_store, inference):
        await checkpoint_store.save(SESSION, "wf-resume", checkpoint_state(), NodeName.EVIDENCE_ASSESSMENT)

        result = await orchestrator.process_query(QUERY, session_id=SESSION, enable_checkpointing=True)

        assert result.resumed is True
        assert result.workflow_id == "wf-resume"
        assert called_nodes(inference) == ["fact_checking", "response_synthesis"]
        # document content stripped from the checkpoint is restored from the store
        fact_check_prompt = inference.calls_for("fact_checking")[0]["user_prompt"]
        assert "Every project starts with a kickoff meeting." in fact_check_prompt
        assert result.answer == SYNTHESIS_OUTPUT

    @pytest.mark.asyncio
    async def test_stale_checkpoint_starts_fresh(self, orchestrator, redis_client, settings, inference):
        stale = Checkpoint(
            session_id=SESSION,
            workflow_id="wf-resume",
            timestamp=now_ms() - 2 * 60 * 60 * 1000,
            current_node=NodeName.EVIDENCE_ASSESSMENT,
            state=CheckpointSnapshot.from_state(checkpoint_state(), settings.checkpoint),
        )
        await redis_client.lpush(f"session:{SESSION}:checkpoints", stale.model_dump_json())

        result = await orchestrator.process_query(QUERY, session_id=SESSION, enable_checkpointing=True)

        assert result.resumed is False
        assert called_nodes(inference)[0] == "query_analysis"

    @pytest.mark.asyncio
    async def test_different_query_starts_fresh(self, orchestrator, checkpoint_store, inference):
        await checkpoint_store.save(SESSION, "wf-resume", checkpoint_state(), NodeName.EVIDENCE_ASSESSMENT)

        result = await orchestrator.process_query(
            "How do I register project stakeholders?", session_id=SESSION, enable_checkpointing=True
        )

        assert result.resumed is False
        assert called_nodes(inference)[0] == "query_analysis"

    @pytest.mark.asyncio
    async def test_finished_checkpoint_returns_stored_answer(self, orchestrator, checkpoint_store, inference):
        finished = checkpoint_state(
            current_node=NodeName.RESPONSE_SYNTHESIS,
            response="Hold the kickoff within two weeks.",
            should_exit=True,
        )
        await checkpoint_store.save(SESSION, "wf-resume", finished, NodeName.RESPONSE_SYNTHESIS)

        result = await orchestrator.process_query(QUERY, session_id=SESSION, enable_checkpointing=True)

        assert result.resumed is True
        assert result.answer == "Hold the kickoff within two weeks."
        assert inference.calls == []

    @pytest.mark.asyncio
    async def test_clear_session(self, orchestrator, checkpoint_store):
        await checkpoint_store.save(SESSION, "wf-resume", checkpoint_state(), NodeName.EVIDENCE_ASSESSMENT)

        await orchestrator.clear_session(SESSION)

        assert (await orchestrator.get_workflow_stats(SESSION))["checkpoint_count"] == 0


def test_process_query_sync(settings, document_store):
    inference = scripted()
    result = WorkflowOrchestrator(settings, inference, document_store).process_query_sync(QUERY)

    assert result.answer == SYNTHESIS_OUTPUT


def test_export_graph_diagram(orchestrator):
    diagram = orchestrator.export_graph_diagram()

    for node in NodeName:
        assert node.value in diagram


def test_logging_configured_from_settings(make_settings, scripted_inference, document_store):
    settings = make_settings(log_level="DEBUG")

    with patch("sopflow.orchestrators.workflow_orchestrator.configure_logging") as mock_configure:
        WorkflowOrchestrator(settings, scripted_inference, document_store)

    mock_configure.assert_called_once_with("DEBUG")
