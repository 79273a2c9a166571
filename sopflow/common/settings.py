"""Workflow settings loaded from the environment.

Settings are immutable once loaded. Components receive a ``WorkflowSettings``
instance explicitly; reloading configuration means building a new
orchestrator with a freshly constructed settings object.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sopflow.schemas.workflow_state import NodeName


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class CoverageThresholds(_FrozenModel):
    """Tier boundaries for overall confidence."""

    high_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    medium_confidence: float = Field(default=0.4, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_order(self) -> "CoverageThresholds":
        if self.medium_confidence > self.high_confidence:
            raise ValueError("medium_confidence must not exceed high_confidence")
        return self


class RoutingSettings(_FrozenModel):
    enable_early_exit: bool = False
    super_high_confidence_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    enable_fact_checking: bool = True
    enable_source_validation: bool = True
    enable_follow_up_generation: bool = True


class RetrySettings(_FrozenModel):
    retry_limit: int = Field(default=3, ge=0)
    # Upper bound on graph steps per run, passed to LangGraph
    recursion_limit: int = Field(default=50, ge=10)


class LLMSettings(_FrozenModel):
    """Model parameters for each inference-backed node."""

    model: str = "gpt-4o"
    max_attempts: int = Field(default=2, ge=1)
    request_timeout_seconds: float = Field(default=60.0, gt=0)

    query_analysis_temperature: float = 0.1
    query_analysis_max_tokens: int = 500
    evidence_assessment_temperature: float = 0.1
    evidence_assessment_max_tokens: int = 2000
    fact_checking_temperature: float = 0.1
    fact_checking_max_tokens: int = 2000
    source_validation_temperature: float = 0.2
    source_validation_max_tokens: int = 1500
    follow_up_temperature: float = 0.6
    follow_up_max_tokens: int = 1000
    synthesis_temperature: float = 0.3
    synthesis_max_tokens: int = 2000


class ParallelSettings(_FrozenModel):
    enabled: bool = True
    timeout_seconds: float = Field(default=30.0, gt=0)
    log_results: bool = True


class RefinementSettings(_FrozenModel):
    enabled: bool = True
    max_iterations: int = Field(default=2, ge=0)
    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    improvement_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    timeout_per_iteration_ms: int = Field(default=60000, gt=0)
    refinement_steps: List[NodeName] = Field(
        default_factory=lambda: [
            NodeName.EVIDENCE_ASSESSMENT,
            NodeName.COVERAGE_EVALUATION,
            NodeName.RESPONSE_SYNTHESIS,
        ]
    )


class CheckpointSettings(_FrozenModel):
    enabled: bool = False
    interval: int = Field(default=3, ge=1)
    max_age_minutes: float = Field(default=60.0, gt=0)
    max_checkpoints_per_session: int = Field(default=50, ge=1)
    ttl_seconds: int = Field(default=86400, gt=0)
    conversation_messages_kept: int = Field(default=5, ge=0)
    message_char_limit: int = Field(default=500, ge=0)
    important_nodes: List[NodeName] = Field(
        default_factory=lambda: [
            NodeName.EVIDENCE_ASSESSMENT,
            NodeName.COVERAGE_EVALUATION,
            NodeName.RESPONSE_SYNTHESIS,
        ]
    )


class EscapeHatchSettings(_FrozenModel):
    message_template: str = (
        "The Playbook does not explicitly provide guidance for {topic}.\n\n"
        "This appears to be a gap in our Playbook."
    )
    feedback_prompt: str = "Please leave feedback so we can add appropriate guidance for this topic."
    fallback_template: str = (
        'I encountered an error processing your query: "{query}". Please try '
        "rephrasing your question or leave feedback so we can investigate and "
        "improve the system."
    )
    request_feedback: bool = True


class WorkflowSettings(BaseSettings):
    """Settings for the SOP answering workflow."""

    model_config = SettingsConfigDict(
        env_prefix="SOPFLOW_",
        env_nested_delimiter="__",
        env_file=None,
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    app_env: Literal["development", "staging", "production", "test"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    redis_url: Optional[str] = None

    coverage: CoverageThresholds = Field(default_factory=CoverageThresholds)
    routing: RoutingSettings = Field(default_factory=RoutingSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    parallel: ParallelSettings = Field(default_factory=ParallelSettings)
    refinement: RefinementSettings = Field(default_factory=RefinementSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    escape_hatch: EscapeHatchSettings = Field(default_factory=EscapeHatchSettings)


@lru_cache
def get_settings() -> WorkflowSettings:
    """Get cached settings instance loaded from the environment."""
    return WorkflowSettings()
