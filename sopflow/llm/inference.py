"""Language model inference capability.

Nodes depend only on the ``InferenceClient`` protocol: given a system prompt,
a user prompt and sampling parameters it returns text plus token counts.
``ChatModelInference`` is the production adapter over LangChain's ``ChatOpenAI``.
"""

from __future__ import annotations

import time
from typing import Dict, Optional, Protocol, Tuple

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from sopflow.common.settings import LLMSettings
from sopflow.schemas.workflow_state import estimate_tokens

logger = structlog.get_logger(__name__)


class InferenceResult(BaseModel):
    text: str
    tokens_in: int = 0
    tokens_out: int = 0


class InferenceClient(Protocol):
    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> InferenceResult:
        ...


class ChatModelInference:
    """InferenceClient backed by OpenAI chat models."""

    def __init__(self, settings: Optional[LLMSettings] = None):
        self.settings = settings or LLMSettings()
        self._models: Dict[Tuple[str, float, int], ChatOpenAI] = {}

    def _get_model(self, model: str, temperature: float, max_tokens: int) -> ChatOpenAI:
        key = (model, temperature, max_tokens)
        if key not in self._models:
            self._models[key] = ChatOpenAI(
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=self.settings.request_timeout_seconds,
                max_retries=0,
            )
        return self._models[key]

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> InferenceResult:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=5),
            reraise=True,
        ):
            with attempt:
                result = await self._invoke_once(system_prompt, user_prompt, model, temperature, max_tokens)
        return result

    async def _invoke_once(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> InferenceResult:
        start_time = time.time()
        llm = self._get_model(model, temperature, max_tokens)
        response = await llm.ainvoke([
            SystemMessage(content=system_prompt),
            HumanMessage(content=user_prompt),
        ])

        text = response.content if isinstance(response.content, str) else str(response.content)
        usage = getattr(response, "usage_metadata", None) or {}
        tokens_in = usage.get("input_tokens") or estimate_tokens(system_prompt + user_prompt)
        tokens_out = usage.get("output_tokens") or estimate_tokens(text)

        logger.debug(
            "Inference call completed",
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return InferenceResult(text=text, tokens_in=tokens_in, tokens_out=tokens_out)
