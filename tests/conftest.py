"""
Pytest configuration and fixtures for sopflow tests.

Provides shared fixtures for:
- Fake Redis client (fakeredis)
- Scripted inference client returning canned model output per node
- In-memory document store with sample SOPs
- Workflow settings for tests
"""

import asyncio
from typing import Dict, List, Union

import pytest

from sopflow.common.settings import WorkflowSettings
from sopflow.llm.inference import InferenceResult
from sopflow.schemas.workflow_state import Document
from sopflow.stores.documents import InMemoryDocumentStore

Scripted = Union[str, Exception, List[Union[str, Exception]]]


def classify_prompt(user_prompt: str) -> str:
    """Name of the node that rendered ``user_prompt``."""
    if "CONSISTENCY_SCORE" in user_prompt:
        return "source_validation"
    if "FOLLOW_UP_QUESTIONS" in user_prompt:
        return "follow_up_generation"
    if "VERIFIED/QUESTIONABLE/CONFLICT" in user_prompt:
        return "fact_checking"
    if "<analysis>" in user_prompt:
        return "evidence_assessment"
    if "Available SOP Content" in user_prompt:
        return "response_synthesis"
    if "Specificity Level" in user_prompt:
        return "query_analysis"
    raise AssertionError(f"Unrecognised prompt: {user_prompt[:80]}")


class ScriptedInference:
    """InferenceClient returning canned text per node.

    A list of responses is consumed in order, the last one repeating.
    Exceptions are raised instead of returned. ``delay`` (seconds) slows
    down every call.
    """

    def __init__(self, responses: Dict[str, Scripted], delay: float = 0.0):
        self.responses = dict(responses)
        self.delay = delay
        self.calls: List[Dict[str, object]] = []

    def calls_for(self, node: str) -> List[Dict[str, object]]:
        return [c for c in self.calls if c["node"] == node]

    async def invoke(self, system_prompt, user_prompt, *, model, temperature, max_tokens):
        node = classify_prompt(user_prompt)
        self.calls.append({
            "node": node,
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.delay:
            await asyncio.sleep(self.delay)

        scripted = self.responses.get(node)
        if scripted is None:
            raise AssertionError(f"No scripted response for {node}")
        if isinstance(scripted, list):
            scripted = scripted.pop(0) if len(scripted) > 1 else scripted[0]
        if isinstance(scripted, Exception):
            raise scripted
        return InferenceResult(text=scripted, tokens_in=100, tokens_out=50)


QUERY_ANALYSIS_OUTPUT = """1. Intent: Understand the project kickoff procedure
2. Key Topics: project kickoff, stakeholders, charter
3. Specificity Level: High"""


def assessment_xml(
    documents: Dict[str, float],
    overall: float,
    gaps: str = "",
    strategy: str = "full_answer",
) -> str:
    blocks = "\n".join(
        f"""  <document id="{doc_id}" confidence="{confidence}">
    <relevant_sections>Overview, Steps</relevant_sections>
    <key_points>Hold a kickoff meeting, Agree the charter</key_points>
    <applicability>Describes the kickoff process</applicability>
  </document>"""
        for doc_id, confidence in documents.items()
    )
    return f"""```xml
<analysis>
  <intent>Understand the project kickoff procedure</intent>
  <key_topics>project kickoff, charter</key_topics>
{blocks}
  <overall_confidence>{overall}</overall_confidence>
  <coverage_level>high</coverage_level>
  <gaps>{gaps}</gaps>
  <response_strategy>{strategy}</response_strategy>
</analysis>
```"""


FACT_CHECK_OUTPUT = """SOP-001: Kickoff meetings are mandatory - VERIFIED
- Details: Stated in section 2
- Confidence: 0.95
SOP-002: The charter is signed by the sponsor - VERIFIED
- Details: Consistent across documents
- Confidence: 0.95"""

SOURCE_VALIDATION_OUTPUT = """CONSISTENCY_SCORE: 0.9

CONFLICTS:
- None

RECOMMENDATIONS:
- Lead with the kickoff checklist"""

FOLLOW_UP_OUTPUT = """FOLLOW_UP_QUESTIONS:
1. Which project phase are you currently in?
2. Who is the sponsor for this project?
3. Is this an internal or client-facing project?"""

SYNTHESIS_OUTPUT = "Start with a kickoff meeting, then agree the project charter with the sponsor."


@pytest.fixture
def documents():
    return [
        Document(id="SOP-001", title="Project Kickoff", content="Every project starts with a kickoff meeting."),
        Document(id="SOP-002", title="Project Charter", content="The sponsor signs the project charter."),
        Document(id="SOP-003", title="Stakeholder Register", content="List stakeholders before kickoff."),
    ]


@pytest.fixture
def document_store(documents):
    return InMemoryDocumentStore(documents)


@pytest.fixture
def settings():
    return WorkflowSettings(app_env="test")


@pytest.fixture
def make_settings():
    """Build test settings with nested overrides, e.g. ``make_settings(routing={"enable_early_exit": True})``."""

    def _make(**overrides):
        return WorkflowSettings(**{"app_env": "test", **overrides})

    return _make


@pytest.fixture
def scripted_inference():
    """Scripted inference for a run that reaches fact checking."""
    return ScriptedInference({
        "query_analysis": QUERY_ANALYSIS_OUTPUT,
        "evidence_assessment": assessment_xml({"SOP-001": 0.9, "SOP-002": 0.85, "SOP-003": 0.8}, 0.7),
        "fact_checking": FACT_CHECK_OUTPUT,
        "source_validation": SOURCE_VALIDATION_OUTPUT,
        "follow_up_generation": FOLLOW_UP_OUTPUT,
        "response_synthesis": SYNTHESIS_OUTPUT,
    })


@pytest.fixture
async def redis_client():
    """
    Provide fakeredis client for testing.

    This avoids requiring an actual Redis server during tests.
    """
    from fakeredis import aioredis as fakeredis

    client = fakeredis.FakeRedis(decode_responses=True)

    yield client

    await client.flushdb()
    await client.aclose()


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("SOPFLOW_APP_ENV", "test")
    monkeypatch.setenv("LANGCHAIN_TRACING_V2", "false")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
