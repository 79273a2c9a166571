"""Workflow orchestrator for answering questions from SOP documents.

Composes the node executors, router, refinement loop and checkpointing into a
single entry point, ``WorkflowOrchestrator.process_query``, which always
returns a ``QueryResult`` and never raises.
"""

from __future__ import annotations

import asyncio
import functools
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from langgraph.graph import END, StateGraph

from sopflow.caching.redis_client import get_redis_client
from sopflow.common.logging import configure_logging
from sopflow.common.settings import WorkflowSettings, get_settings
from sopflow.llm.inference import ChatModelInference, InferenceClient
from sopflow.orchestrators.checkpointing import (
    CheckpointStore,
    PersistenceManager,
    generate_workflow_id,
)
from sopflow.orchestrators.errors import wrap_node
from sopflow.orchestrators.nodes import WorkflowNodes
from sopflow.orchestrators.refinement import RefinementLoop
from sopflow.orchestrators.routing import PATH_MAP, route_after, route_entry
from sopflow.schemas.workflow_state import (
    CoverageAnalysis,
    NodeName,
    QueryResult,
    WorkflowState,
    create_initial_state,
    degrade_coverage,
)
from sopflow.stores.documents import DocumentStore, InMemoryDocumentStore

logger = structlog.get_logger(__name__)

SYSTEM_ERROR_GAP = "System error during processing"
NO_RESPONSE_GAP = "No response generated"
MODES = ("standard", "deep")


class WorkflowOrchestrator:
    """Confidence-driven workflow over SOP documents, built on LangGraph.

    Settings are fixed for the lifetime of an orchestrator; to pick up new
    configuration, construct a new one.
    """

    def __init__(
        self,
        settings: Optional[WorkflowSettings] = None,
        inference: Optional[InferenceClient] = None,
        document_store: Optional[DocumentStore] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
    ):
        self.settings = settings or get_settings()
        configure_logging(self.settings.log_level)
        self.inference = inference or ChatModelInference(self.settings.llm)
        self.document_store = document_store or InMemoryDocumentStore()
        self.checkpoint_store = checkpoint_store
        self.nodes = WorkflowNodes(self.settings, self.inference, self.document_store)

        self.graph = self._build_graph()
        self.refinement_graph = self._build_refinement_graph(self.settings.refinement.refinement_steps)
        self.refinement = RefinementLoop(
            self.settings.refinement,
            functools.partial(self._run_graph, self.refinement_graph),
        )

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    def _wrapped(self, node: NodeName):
        return wrap_node(
            node,
            getattr(self.nodes, node.value),
            self.settings.retry.retry_limit,
            self.nodes.escape_hatch_answer,
        )

    def _build_graph(self):
        """Build and compile the main state machine."""
        graph = StateGraph(WorkflowState)
        for node in NodeName:
            graph.add_node(node.value, self._wrapped(node))

        graph.set_conditional_entry_point(
            lambda state: route_entry(state, self.settings),
            PATH_MAP,
        )
        for node in NodeName:
            graph.add_conditional_edges(
                node.value,
                functools.partial(self._route_from, node),
                PATH_MAP,
            )
        return graph.compile()

    def _route_from(self, node: NodeName, state: WorkflowState) -> str:
        return route_after(node, state, self.settings)

    def _build_refinement_graph(self, steps: Sequence[NodeName]):
        """Linear graph over the refinement steps, stopping early on failure or exit."""
        graph = StateGraph(WorkflowState)
        for node in steps:
            graph.add_node(node.value, self._wrapped(node))
        graph.set_entry_point(steps[0].value)

        for index, node in enumerate(steps):
            following = steps[index + 1].value if index + 1 < len(steps) else END

            def _next(state: WorkflowState, following: str = following) -> str:
                if state.should_retry or state.should_exit:
                    return END
                return following

            graph.add_conditional_edges(node.value, _next, {following: following, END: END})
        return graph.compile()

    async def _run_graph(
        self,
        graph,
        state: WorkflowState,
        persistence: Optional[PersistenceManager] = None,
    ) -> WorkflowState:
        """Run a compiled graph, folding each node's update into the state."""
        config = {"recursion_limit": self.settings.retry.recursion_limit}
        async for chunk in graph.astream(state, config=config, stream_mode="updates"):
            for node_name, update in chunk.items():
                if not update or node_name not in PATH_MAP or node_name == END:
                    continue
                state = state.model_copy(update=update)
                if persistence is not None:
                    persistence.on_node_complete(state.metadata.workflow_id, NodeName(node_name), state)
        return state

    def export_graph_diagram(self) -> str:
        """Mermaid representation of the main workflow graph."""
        return self.graph.get_graph().draw_mermaid()

    # ------------------------------------------------------------------
    # Checkpointing
    # ------------------------------------------------------------------

    async def _get_checkpoint_store(self) -> Optional[CheckpointStore]:
        if self.checkpoint_store is None:
            client = await get_redis_client(self.settings)
            if client is not None:
                self.checkpoint_store = CheckpointStore(client, self.settings.checkpoint)
        return self.checkpoint_store

    async def _persistence_for(
        self,
        session_id: Optional[str],
        enable_checkpointing: Optional[bool],
    ) -> Optional[PersistenceManager]:
        enabled = self.settings.checkpoint.enabled if enable_checkpointing is None else enable_checkpointing
        if not enabled or not session_id:
            return None
        store = await self._get_checkpoint_store()
        if store is None:
            logger.warning("Checkpointing requested but no store is available", session_id=session_id)
            return None
        return PersistenceManager(store, session_id, self.settings)

    async def _rehydrate_evidence(self, state: WorkflowState) -> WorkflowState:
        """Restore document content that checkpoints strip."""
        evidence = []
        for ref in state.evidence_references:
            document = await self.document_store.find_by_id(ref.id)
            evidence.append(ref.model_copy(update={"content": document.content if document else ref.content}))
        return state.model_copy(update={"evidence_references": evidence})

    async def _resume_or_start(
        self,
        query: str,
        conversation_context: Optional[List[Dict[str, Any]]],
        session_id: Optional[str],
        workflow_id: Optional[str],
        explicit_workflow_id: bool,
        mode: str,
        persistence: Optional[PersistenceManager],
    ) -> Tuple[WorkflowState, bool]:
        fresh = create_initial_state(query, conversation_context, session_id, workflow_id, mode)
        if persistence is None:
            return fresh, False

        resume_point = await persistence.resume(workflow_id if explicit_workflow_id else None)
        if resume_point is None:
            return fresh, False

        restored = resume_point.state
        if restored.query != query or (restored.should_retry and restored.should_exit):
            logger.info(
                "Checkpoint not resumable, starting fresh",
                session_id=session_id,
                checkpoint_workflow_id=resume_point.checkpoint.workflow_id,
            )
            return fresh, False
        if restored.should_exit and not restored.response:
            return fresh, False

        logger.info(
            "Resuming workflow from checkpoint",
            session_id=session_id,
            workflow_id=resume_point.checkpoint.workflow_id,
            last_node=resume_point.checkpoint.current_node.value,
            next_node=resume_point.next_node,
        )
        if conversation_context:
            restored = restored.model_copy(update={"conversation_context": fresh.conversation_context})
        restored = restored.model_copy(update={
            "metadata": restored.metadata.model_copy(update={"mode": mode}),
        })
        return await self._rehydrate_evidence(restored), True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process_query(
        self,
        query: str,
        conversation_context: Optional[List[Dict[str, Any]]] = None,
        *,
        session_id: Optional[str] = None,
        mode: str = "standard",
        enable_checkpointing: Optional[bool] = None,
        workflow_id: Optional[str] = None,
    ) -> QueryResult:
        """Answer a query. Always returns a result; failures become an escape-hatch answer."""
        start_time = time.time()
        if mode not in MODES:
            logger.warning("Unknown processing mode, using standard", mode=mode)
            mode = "standard"
        explicit_workflow_id = workflow_id is not None
        workflow_id = workflow_id or generate_workflow_id()

        logger.info(
            "Starting workflow",
            workflow_id=workflow_id,
            session_id=session_id,
            mode=mode,
            query_preview=(query or "")[:50],
        )

        if not query or not query.strip():
            return self._fallback_result(query or "", start_time, workflow_id, session_id, mode, "Empty query")

        try:
            persistence = await self._persistence_for(session_id, enable_checkpointing)
            state, resumed = await self._resume_or_start(
                query,
                conversation_context,
                session_id,
                workflow_id,
                explicit_workflow_id,
                mode,
                persistence,
            )

            if resumed and state.should_exit:
                logger.info("Checkpointed run already finished", workflow_id=state.metadata.workflow_id)
                return self._to_result(state, start_time, resumed=True)

            if persistence is not None:
                persistence.reset_counter()
            state = await self._run_graph(self.graph, state, persistence)

            if mode == "deep" and not state.should_retry:
                state = await self.refinement.run(state)

            if persistence is not None:
                await persistence.flush()

            state = self._ensure_answer(state)
            result = self._to_result(state, start_time, resumed=resumed)
            logger.info(
                "Workflow completed",
                workflow_id=result.workflow_id,
                strategy=result.coverage_analysis.response_strategy,
                confidence=result.confidence,
                tokens_used=result.tokens_used,
                processing_time_ms=result.processing_time_ms,
                errors=len(result.errors),
            )
            return result

        except Exception as e:
            logger.error(
                "Workflow failed",
                workflow_id=workflow_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return self._fallback_result(query, start_time, workflow_id, session_id, mode, str(e))

    def process_query_sync(self, query: str, conversation_context: Optional[List[Dict[str, Any]]] = None, **options: Any) -> QueryResult:
        """Blocking wrapper around ``process_query`` for callers without an event loop."""
        return asyncio.run(self.process_query(query, conversation_context, **options))

    async def get_workflow_stats(self, session_id: str) -> Dict[str, Any]:
        """Checkpoint count, newest checkpoint age and history summary for a session."""
        store = await self._get_checkpoint_store()
        if store is None:
            return {"session_id": session_id, "checkpoint_count": 0, "last_checkpoint_age_minutes": None, "history": []}
        return await PersistenceManager(store, session_id, self.settings).stats()

    async def clear_session(self, session_id: str) -> None:
        store = await self._get_checkpoint_store()
        if store is not None:
            await store.clear(session_id)

    # ------------------------------------------------------------------
    # Result conversion
    # ------------------------------------------------------------------

    def _ensure_answer(self, state: WorkflowState) -> WorkflowState:
        if state.response.strip():
            return state
        logger.warning("Run ended without a response, using escape hatch", workflow_id=state.metadata.workflow_id)
        degraded = degrade_coverage(state.coverage_analysis, NO_RESPONSE_GAP)
        return state.model_copy(update={
            "coverage_analysis": degraded,
            "response": self.nodes.escape_hatch_answer(state.model_copy(update={"coverage_analysis": degraded})),
        })

    @staticmethod
    def _to_result(state: WorkflowState, start_time: float, resumed: bool = False) -> QueryResult:
        return QueryResult(
            answer=state.response,
            evidence_references=state.evidence_references,
            coverage_analysis=state.coverage_analysis,
            confidence=state.confidence,
            processing_time_ms=round((time.time() - start_time) * 1000, 2),
            tokens_used=state.metadata.tokens_used,
            follow_up_suggestions=state.follow_up_suggestions,
            refinement_iterations=state.refinement_iterations,
            errors=state.errors,
            workflow_id=state.metadata.workflow_id,
            session_id=state.session_id,
            mode=state.metadata.mode,
            resumed=resumed,
        )

    def _fallback_result(
        self,
        query: str,
        start_time: float,
        workflow_id: str,
        session_id: Optional[str],
        mode: str,
        error: str,
    ) -> QueryResult:
        return QueryResult(
            answer=self.settings.escape_hatch.fallback_template.format(query=query),
            coverage_analysis=CoverageAnalysis(
                overall_confidence=0.0,
                coverage_level="low",
                response_strategy="escape_hatch",
                gaps=[SYSTEM_ERROR_GAP],
            ),
            processing_time_ms=round((time.time() - start_time) * 1000, 2),
            errors=[error],
            workflow_id=workflow_id,
            session_id=session_id,
            mode=mode,
        )
