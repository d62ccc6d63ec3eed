"""Pluggable text-comparison / match-evaluation provider layer.

Usage:
  from app.services.llm_providers import get_text_provider
  provider = get_text_provider()          # None when no provider is configured
  result = await provider.compare_descriptions(lost, found)

Providers:
    - OpenAITextProvider: OpenAI Chat Completions (JSON mode)

Add new provider by implementing BaseTextProvider. Both operations raise
ProviderUnavailable (network/auth/quota) or MalformedProviderResponse.
"""
from __future__ import annotations
from typing import Dict, List, Optional
import abc
import json
import re
import time

import openai
from pydantic import BaseModel, StrictBool, StrictStr, ValidationError

from config import settings
from app.domain.errors import MalformedProviderResponse, ProviderUnavailable
from app.domain.items import Item
from app.models.matches import MatchEvaluation, TextComparison, VisualComparison
from app.services import prompt_builder
from app.scripts.logging_config import get_logger

logger = get_logger("matching.llm")

ChatMessage = Dict[str, str]  # {role: user|assistant|system, content: str}

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


class _RawComparison(BaseModel):
    isTextLikelyMatch: StrictBool
    reason: StrictStr
    confidence: float


class _RawEvaluation(BaseModel):
    confidenceScore: float
    reasoning: StrictStr


def extract_json_object(provider: str, text: Optional[str]) -> dict:
    """Pull the JSON object out of a model reply (code fences and chatter tolerated)."""
    if not text:
        raise MalformedProviderResponse(provider, "empty reply", text)
    cleaned = _FENCE_RE.sub("", text).replace("`", "").strip()
    match = _OBJECT_RE.search(cleaned)
    if not match:
        raise MalformedProviderResponse(provider, "no JSON object in reply", text)
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise MalformedProviderResponse(provider, f"invalid JSON: {e.msg}", text) from e
    if not isinstance(data, dict):
        raise MalformedProviderResponse(provider, "reply is not a JSON object", text)
    return data


def parse_comparison(provider: str, text: Optional[str]) -> TextComparison:
    data = extract_json_object(provider, text)
    try:
        raw = _RawComparison.model_validate(data)
    except ValidationError as e:
        raise MalformedProviderResponse(provider, f"schema mismatch: {e.error_count()} error(s)", text) from e
    return TextComparison(
        is_likely_match=raw.isTextLikelyMatch,
        reason=raw.reason,
        confidence=min(100.0, max(0.0, raw.confidence)),
        source="provider",
    )


def parse_evaluation(provider: str, text: Optional[str]) -> MatchEvaluation:
    data = extract_json_object(provider, text)
    try:
        raw = _RawEvaluation.model_validate(data)
    except ValidationError as e:
        raise MalformedProviderResponse(provider, f"schema mismatch: {e.error_count()} error(s)", text) from e
    return MatchEvaluation(score=min(100.0, max(0.0, raw.confidenceScore)), reasoning=raw.reasoning)


class BaseTextProvider(abc.ABC):
    name: str

    @abc.abstractmethod
    async def compare_descriptions(self, lost: Item, found: Item,
                                   hints: Optional[Dict[str, str]] = None) -> TextComparison:
        ...

    @abc.abstractmethod
    async def evaluate_match(self, lost: Item, found: Item, text_result: TextComparison,
                             visual_result: VisualComparison,
                             hints: Optional[Dict[str, str]] = None) -> MatchEvaluation:
        ...


class OpenAITextProvider(BaseTextProvider):
    name = "openai"

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 timeout: Optional[float] = None):
        key = api_key if api_key is not None else settings.OPENAI_API_KEY
        if not key:
            raise ProviderUnavailable(self.name, "OPENAI_API_KEY missing")
        self.model = model or settings.OPENAI_MODEL_NAME
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self.client = openai.AsyncOpenAI(api_key=key, timeout=self.timeout, max_retries=1)

    async def _complete(self, messages: List[ChatMessage]) -> str:
        start = time.time()
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0,
                response_format={"type": "json_object"},
            )
        except openai.APIError as e:
            dur = time.time() - start
            logger.warning("openai error model=%s latency=%.2fs type=%s msg=%s",
                           self.model, dur, type(e).__name__, str(e)[:180])
            raise ProviderUnavailable(self.name, f"{type(e).__name__}: {str(e)[:180]}") from e
        dur = time.time() - start
        out = resp.choices[0].message.content if resp.choices else None
        logger.debug("openai done model=%s latency=%.2fs chars=%d", self.model, dur, len(out) if out else 0)
        return out or ""

    async def compare_descriptions(self, lost: Item, found: Item,
                                   hints: Optional[Dict[str, str]] = None) -> TextComparison:
        reply = await self._complete(prompt_builder.build_compare_messages(lost, found, hints))
        return parse_comparison(self.name, reply)

    async def evaluate_match(self, lost: Item, found: Item, text_result: TextComparison,
                             visual_result: VisualComparison,
                             hints: Optional[Dict[str, str]] = None) -> MatchEvaluation:
        messages = prompt_builder.build_evaluation_messages(lost, found, text_result, visual_result, hints)
        reply = await self._complete(messages)
        return parse_evaluation(self.name, reply)


_singleton: Optional[BaseTextProvider] = None
_initialized = False


def get_text_provider() -> Optional[BaseTextProvider]:
    """Process-wide provider, or None when nothing is configured (fallback scoring)."""
    global _singleton, _initialized
    if _initialized:
        return _singleton
    try:
        _singleton = OpenAITextProvider()
    except ProviderUnavailable as e:
        logger.warning("text provider disabled, fallback scoring only: %s", e)
        _singleton = None
    _initialized = True
    return _singleton
