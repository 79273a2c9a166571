"""
Prompt templates for the SOP answering workflow.

Each inference-backed node has one ChatPromptTemplate with a system and a
human message. The output formats requested here are the contracts decoded by
``sopflow.orchestrators.parsing``; change both together.
"""

from typing import Dict, Tuple

from langchain_core.prompts import ChatPromptTemplate

PMO_SYSTEM_PROMPT = """You are an expert PMO consultant who answers questions using the company's Standard Operating Procedures (SOPs).
Only state what the provided SOPs support. When the SOPs do not cover something, say so plainly."""


QUERY_ANALYSIS_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", PMO_SYSTEM_PROMPT),
    ("human", """Analyze this user query to understand what SOP information they need.

User Query: "{query}"{conversation}

Provide:
1. Intent: What SOP information is the user looking for?
2. Key Topics: What specific terms/concepts should we search for in the SOPs? (comma-separated)
3. Specificity Level: How specific is this request? (High, Medium or Low)

Answer each item on its own line using the labels above."""),
])


EVIDENCE_ASSESSMENT_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", PMO_SYSTEM_PROMPT + """

When assessing documents:
1. Read each document carefully and judge whether it helps answer the question
2. Set confidence based on how well the document answers the question
3. Use the XML structure exactly as specified"""),
    ("human", """User Query: "{query}"
Query Intent: {intent}
Key Topics: {key_topics}{conversation}{refinement}

Available SOPs:
{documents}

Analyze the provided SOPs and determine their relevance to the user query.

Respond with the following XML structure:
<analysis>
  <intent>What the user is trying to find out</intent>
  <key_topics>topic1, topic2, topic3</key_topics>

  <document id="DOCUMENT-ID" confidence="0.0-1.0">
    <relevant_sections>Section names that apply, comma-separated</relevant_sections>
    <key_points>Key relevant points, comma-separated</key_points>
    <applicability>How this document addresses the query</applicability>
  </document>

  <overall_confidence>0.0-1.0</overall_confidence>
  <coverage_level>high|medium|low</coverage_level>
  <gaps>Missing information, comma-separated</gaps>
  <response_strategy>full_answer|partial_answer|escape_hatch</response_strategy>
</analysis>"""),
])


FACT_CHECK_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", PMO_SYSTEM_PROMPT),
    ("human", """You are performing fact-checking on Standard Operating Procedures.

Query: "{query}"
Intent: "{intent}"

Please fact-check the following SOPs for consistency and accuracy:

{documents}

For each SOP, identify:
1. Key claims or procedures described
2. Any conflicts or inconsistencies between SOPs
3. Verification of factual accuracy

Respond in this format, one block per claim, using the document id exactly as given:
DOCUMENT-ID: [Claim] - VERIFIED/QUESTIONABLE/CONFLICT
- Details: [explanation]
- Confidence: [0.0-1.0]"""),
])


SOURCE_VALIDATION_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", PMO_SYSTEM_PROMPT),
    ("human", """You are performing source validation and cross-referencing.

Query: "{query}"
Intent: "{intent}"
Identified Gaps: {gaps}

PRIMARY SOP:
{primary}

CROSS-REFERENCE SOPs:
{cross_references}

Please analyze:
1. Consistency between the primary SOP and cross-reference SOPs
2. Any conflicts or contradictions in procedures or guidance
3. Recommendations for improving response accuracy

Respond in this format:

CONSISTENCY_SCORE: [0.0-1.0]

CONFLICTS:
- [Specific conflict description]

RECOMMENDATIONS:
- [Specific recommendation for response generation]"""),
])


FOLLOW_UP_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", PMO_SYSTEM_PROMPT),
    ("human", """The SOPs could not fully answer this question.

Query: "{query}"
Intent: "{intent}"
Key Topics: {key_topics}
Identified Gaps: {gaps}

Generate 3-5 clarifying questions that would help narrow down what the user needs.

Respond in this format:
FOLLOW_UP_QUESTIONS:
1. [question]
2. [question]
3. [question]"""),
])


RESPONSE_SYNTHESIS_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", """You are an expert PMO consultant. Your role is to directly answer the user's specific question by synthesizing relevant information from the company's SOPs. Focus on what the user asked for, not general SOP descriptions."""),
    ("human", """User Query: "{query}"
Query Intent: {intent}

Based on the SOPs provided, directly answer the user's question.

Coverage: {coverage_level} (confidence {confidence})
Response Strategy: {strategy}
Known Gaps: {gaps}{conversation}{refinement}

Available SOP Content:
{documents}"""),
])


_TEMPLATES: Dict[str, ChatPromptTemplate] = {
    "query_analysis": QUERY_ANALYSIS_TEMPLATE,
    "evidence_assessment": EVIDENCE_ASSESSMENT_TEMPLATE,
    "fact_checking": FACT_CHECK_TEMPLATE,
    "source_validation": SOURCE_VALIDATION_TEMPLATE,
    "follow_up_generation": FOLLOW_UP_TEMPLATE,
    "response_synthesis": RESPONSE_SYNTHESIS_TEMPLATE,
}


def get_prompt_template(template_name: str) -> ChatPromptTemplate:
    """
    Get a prompt template by name.

    Raises:
        ValueError: If template_name is not found
    """
    if template_name not in _TEMPLATES:
        raise ValueError(f"Unknown template: {template_name}. Available: {list(_TEMPLATES.keys())}")
    return _TEMPLATES[template_name]


def render_prompt(template_name: str, **variables: str) -> Tuple[str, str]:
    """Render a template into ``(system_prompt, user_prompt)`` strings."""
    messages = get_prompt_template(template_name).format_messages(**variables)
    return messages[0].content, messages[1].content
