"""
Checkpoint persistence for workflow runs.

Checkpoints are appended to a Redis list per session (newest first), in the
same sliding-window style as conversation memory. The persisted record holds
a ``CheckpointSnapshot``: a lossy projection of ``WorkflowState`` with the
conversation trimmed and document content stripped. The authoritative state
is never persisted directly.
"""

from __future__ import annotations

import asyncio
import secrets
from typing import List, Optional, Set

import structlog
from pydantic import BaseModel, Field, ValidationError

from sopflow.common.settings import CheckpointSettings, WorkflowSettings
from sopflow.orchestrators.routing import route_entry
from sopflow.schemas.workflow_state import (
    ConversationMessage,
    CoverageAnalysis,
    EvidenceReference,
    FactCheckResult,
    NodeName,
    ProcessingMetadata,
    RefinementIteration,
    SourceValidationResult,
    WorkflowState,
    now_ms,
)

logger = structlog.get_logger(__name__)

CHECKPOINT_VERSION = 1


class CheckpointSnapshot(BaseModel):
    """Persistable projection of a workflow state."""

    query: str
    conversation_context: List[ConversationMessage] = Field(default_factory=list)
    session_id: Optional[str] = None
    evidence_references: List[EvidenceReference] = Field(default_factory=list)
    coverage_analysis: CoverageAnalysis = Field(default_factory=CoverageAnalysis)
    confidence: float = 0.0
    response: str = ""
    metadata: ProcessingMetadata = Field(default_factory=ProcessingMetadata)
    fact_check_results: List[FactCheckResult] = Field(default_factory=list)
    source_validation_result: Optional[SourceValidationResult] = None
    follow_up_suggestions: List[str] = Field(default_factory=list)
    refinement_iterations: List[RefinementIteration] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    retry_count: int = 0
    current_node: Optional[NodeName] = None
    completed_nodes: List[NodeName] = Field(default_factory=list)
    should_retry: bool = False
    should_exit: bool = False

    @classmethod
    def from_state(cls, state: WorkflowState, settings: CheckpointSettings) -> "CheckpointSnapshot":
        kept = settings.conversation_messages_kept
        messages = state.conversation_context[-kept:] if kept else []
        return cls(
            query=state.query,
            conversation_context=[
                m.model_copy(update={"content": m.content[: settings.message_char_limit]}) for m in messages
            ],
            session_id=state.session_id,
            evidence_references=[e.model_copy(update={"content": None}) for e in state.evidence_references],
            coverage_analysis=state.coverage_analysis,
            confidence=state.confidence,
            response=state.response,
            metadata=state.metadata,
            fact_check_results=state.fact_check_results,
            source_validation_result=state.source_validation_result,
            follow_up_suggestions=state.follow_up_suggestions,
            refinement_iterations=state.refinement_iterations,
            errors=state.errors,
            retry_count=state.retry_count,
            current_node=state.current_node,
            completed_nodes=state.completed_nodes,
            should_retry=state.should_retry,
            should_exit=state.should_exit,
        )

    def to_state(self) -> WorkflowState:
        """Rebuild a workflow state. Document content and preloads are not restored."""
        return WorkflowState(**self.model_dump())


class Checkpoint(BaseModel):
    session_id: str
    workflow_id: str
    timestamp: int = Field(default_factory=now_ms, description="Epoch milliseconds")
    current_node: NodeName
    completed_nodes: List[NodeName] = Field(default_factory=list)
    state: CheckpointSnapshot
    version: int = CHECKPOINT_VERSION


class ResumePoint(BaseModel):
    checkpoint: Checkpoint
    state: WorkflowState
    next_node: str


def generate_workflow_id() -> str:
    """Unique workflow identifier: ``workflow-<epoch ms>-<random>``."""
    return f"workflow-{now_ms()}-{secrets.token_hex(5)[:9]}"


def checkpoint_age_minutes(checkpoint: Checkpoint, now: Optional[int] = None) -> float:
    current = now if now is not None else now_ms()
    return (current - checkpoint.timestamp) / 60000


def is_stale(checkpoint: Checkpoint, max_age_minutes: float = 60, now: Optional[int] = None) -> bool:
    return checkpoint_age_minutes(checkpoint, now) > max_age_minutes


def validate_checkpoint(checkpoint: Checkpoint) -> bool:
    return bool(
        checkpoint.version == CHECKPOINT_VERSION
        and checkpoint.session_id
        and checkpoint.workflow_id
        and checkpoint.timestamp
        and checkpoint.state.query
    )


class CheckpointStore:
    """
    Redis-backed checkpoint store.

    Each session owns one list, so concurrent runs for different sessions never
    touch the same key. I/O failures are logged and never raised.

    Usage:
        store = CheckpointStore(redis_client, settings.checkpoint)
        await store.save(session_id, workflow_id, state, NodeName.COVERAGE_EVALUATION)
        checkpoint = await store.load(session_id)
    """

    def __init__(self, redis_client, settings: Optional[CheckpointSettings] = None):
        self.redis = redis_client
        self.settings = settings or CheckpointSettings()

    @staticmethod
    def _key(session_id: str) -> str:
        return f"session:{session_id}:checkpoints"

    async def save(self, session_id: str, workflow_id: str, state: WorkflowState, current_node: NodeName) -> bool:
        """Append a checkpoint. Returns False when it could not be written."""
        checkpoint = Checkpoint(
            session_id=session_id,
            workflow_id=workflow_id,
            current_node=current_node,
            completed_nodes=state.completed_nodes,
            state=CheckpointSnapshot.from_state(state, self.settings),
        )
        key = self._key(session_id)
        try:
            await self.redis.lpush(key, checkpoint.model_dump_json())
            await self.redis.ltrim(key, 0, self.settings.max_checkpoints_per_session - 1)
            await self.redis.expire(key, self.settings.ttl_seconds)
        except Exception as e:
            logger.warning(
                "Checkpoint save failed",
                session_id=session_id,
                workflow_id=workflow_id,
                node=current_node.value,
                error=str(e),
            )
            return False

        logger.debug("Checkpoint saved", session_id=session_id, workflow_id=workflow_id, node=current_node.value)
        return True

    async def history(self, session_id: str) -> List[Checkpoint]:
        """All valid checkpoints for the session, newest first."""
        try:
            raw_entries = await self.redis.lrange(self._key(session_id), 0, -1)
        except Exception as e:
            logger.warning("Checkpoint read failed", session_id=session_id, error=str(e))
            return []

        checkpoints = []
        for raw in raw_entries:
            try:
                checkpoint = Checkpoint.model_validate_json(raw)
            except ValidationError as e:
                logger.warning("Discarding malformed checkpoint", session_id=session_id, error=str(e))
                continue
            if not validate_checkpoint(checkpoint):
                logger.warning(
                    "Discarding invalid checkpoint",
                    session_id=session_id,
                    workflow_id=checkpoint.workflow_id,
                    version=checkpoint.version,
                )
                continue
            checkpoints.append(checkpoint)
        return sorted(checkpoints, key=lambda c: c.timestamp, reverse=True)

    async def load(self, session_id: str, workflow_id: Optional[str] = None) -> Optional[Checkpoint]:
        """Most recent checkpoint for the session, or for one workflow if given."""
        for checkpoint in await self.history(session_id):
            if workflow_id is None or checkpoint.workflow_id == workflow_id:
                return checkpoint
        return None

    async def clear(self, session_id: str) -> None:
        try:
            await self.redis.delete(self._key(session_id))
            logger.info("Checkpoints cleared", session_id=session_id)
        except Exception as e:
            logger.warning("Checkpoint clear failed", session_id=session_id, error=str(e))


class PersistenceManager:
    """Decides when to checkpoint a run and how to resume one.

    A checkpoint is taken every ``interval`` completed nodes, after any
    important node, and whenever the run is about to exit. Saves run as
    background tasks; ``flush`` waits for the outstanding ones.
    """

    def __init__(
        self,
        store: CheckpointStore,
        session_id: str,
        settings: WorkflowSettings,
        enabled: bool = True,
    ):
        self.store = store
        self.session_id = session_id
        self.settings = settings
        self.enabled = enabled
        self.node_count = 0
        self._pending: Set[asyncio.Task] = set()

    def is_important(self, node: NodeName) -> bool:
        return node in self.settings.checkpoint.important_nodes

    def on_node_complete(self, workflow_id: str, node: NodeName, state: WorkflowState) -> bool:
        """Record a completed node; schedules a save when one is due."""
        self.node_count += 1
        due = self.enabled and (
            self.node_count % self.settings.checkpoint.interval == 0
            or self.is_important(node)
            or state.should_exit
        )
        if not due:
            return False

        task = asyncio.create_task(self.store.save(self.session_id, workflow_id, state, node))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def reset_counter(self) -> None:
        self.node_count = 0

    async def resume(self, workflow_id: Optional[str] = None) -> Optional[ResumePoint]:
        """Latest fresh checkpoint and the node to continue from, if any."""
        if not self.enabled:
            return None

        checkpoint = await self.store.load(self.session_id, workflow_id)
        if checkpoint is None:
            return None

        age = checkpoint_age_minutes(checkpoint)
        if is_stale(checkpoint, self.settings.checkpoint.max_age_minutes):
            logger.info(
                "Ignoring stale checkpoint",
                session_id=self.session_id,
                workflow_id=checkpoint.workflow_id,
                age_minutes=round(age, 1),
            )
            return None

        state = checkpoint.state.to_state()
        return ResumePoint(checkpoint=checkpoint, state=state, next_node=route_entry(state, self.settings))

    async def history(self) -> List[Checkpoint]:
        return await self.store.history(self.session_id)

    async def stats(self) -> dict:
        history = await self.history()
        return {
            "session_id": self.session_id,
            "checkpoint_count": len(history),
            "last_checkpoint_age_minutes": round(checkpoint_age_minutes(history[0]), 2) if history else None,
            "history": [
                {
                    "workflow_id": c.workflow_id,
                    "node": c.current_node.value,
                    "timestamp": c.timestamp,
                    "confidence": c.state.confidence,
                }
                for c in history
            ],
        }
