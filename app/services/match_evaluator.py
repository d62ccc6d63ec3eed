"""Final 0-100 confidence for a (lost, found) pair.

Primary path: the text provider scores the pair against a fixed rubric
(visual 45%, category/description 35%, temporal 10%, location 10%).
Fallback path (``fallback_score``): deterministic and synchronous,
    category exact match   +40
    location               +40 at 0 km, falling linearly to 0 at 100 km
    description overlap    +5 per shared token (>2 chars), capped at 20
"""
from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from config import settings
from app.domain.errors import MalformedProviderResponse, ProviderUnavailable
from app.domain.items import Item, as_utc
from app.domain.match_tables import brand_groups_in
from app.models.matches import MatchEvaluation, TextComparison, VisualComparison
from app.services.geo import distance_km
from app.services.llm_providers import BaseTextProvider
from app.services.text_analyzer import tokenize
from app.scripts.logging_config import get_logger

logger = get_logger("matching.evaluator")

CATEGORY_POINTS = 40.0
LOCATION_POINTS = 40.0
LOCATION_DECAY_PER_KM = 0.4
TOKEN_POINTS = 5.0
DESCRIPTION_CAP = 20.0


def _clamp(score: float) -> float:
    return max(0.0, min(100.0, score))


def shared_tokens(a: Optional[str], b: Optional[str]) -> List[str]:
    tokens_b = set(tokenize(b))
    seen: List[str] = []
    for t in tokenize(a):
        if t in tokens_b and t not in seen:
            seen.append(t)
    return seen


def fallback_breakdown(lost: Item, found: Item) -> Dict[str, float]:
    category = CATEGORY_POINTS if lost.category and lost.category == found.category else 0.0
    km = distance_km(lost.location, found.location)
    location = max(0.0, LOCATION_POINTS - LOCATION_DECAY_PER_KM * km) if km is not None else 0.0
    description = min(DESCRIPTION_CAP, TOKEN_POINTS * len(shared_tokens(lost.description, found.description)))
    return {"category": category, "location": location, "description": description}


def fallback_score(lost: Item, found: Item) -> float:
    """Deterministic score in [0, 100]; a pair with no usable fields scores 0."""
    return _clamp(sum(fallback_breakdown(lost, found).values()))


def fallback_reasoning(lost: Item, found: Item) -> str:
    parts = fallback_breakdown(lost, found)
    return ("Fallback scoring: category {category:.0f}, location {location:.1f}, "
            "description {description:.0f}").format(**parts)


def brand_relations(lost: Item, found: Item) -> List[str]:
    """Brand groups where one side names a brand and the other a descriptor (or brand) of it."""
    text_lost = " ".join(filter(None, (lost.description, lost.category)))
    text_found = " ".join(filter(None, (found.description, found.category)))
    groups_lost, groups_found = brand_groups_in(text_lost), brand_groups_in(text_found)
    return sorted(set(groups_lost) & set(groups_found))


def build_hints(lost: Item, found: Item) -> Dict[str, str]:
    hints: Dict[str, str] = {}
    km = distance_km(lost.location, found.location)
    if km is not None:
        hints["distance_km"] = f"{km:.2f}"
    lost_at, found_at = as_utc(lost.timestamp), as_utc(found.timestamp)
    if lost_at and found_at:
        hints["hours_between_reports"] = f"{(found_at - lost_at).total_seconds() / 3600:.1f}"
    relations = brand_relations(lost, found)
    if relations:
        hints["brand_relations"] = ", ".join(relations)
    return hints


class MatchEvaluator:
    """Scores one pair. ``ProviderUnavailable`` escapes so the caller can switch
    the whole batch to ``fallback_score``."""

    def __init__(self, provider: Optional[BaseTextProvider], timeout: Optional[float] = None):
        self.provider = provider
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

    @property
    def available(self) -> bool:
        return self.provider is not None

    async def evaluate(self, lost: Item, found: Item, text_result: TextComparison,
                       visual_result: VisualComparison) -> MatchEvaluation:
        if self.provider is None:
            raise ProviderUnavailable("evaluator", "no provider configured")
        provider_name = getattr(self.provider, "name", "evaluator")
        try:
            result = await asyncio.wait_for(
                self.provider.evaluate_match(lost, found, text_result, visual_result, build_hints(lost, found)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(provider_name, f"timeout after {self.timeout}s") from e
        except MalformedProviderResponse as e:
            logger.warning("malformed evaluation lost=%s found=%s: %s", lost.id, found.id, e.detail)
            return MatchEvaluation(score=0, reasoning="")
        return MatchEvaluation(score=_clamp(result.score), reasoning=result.reasoning)

    def evaluate_fallback(self, lost: Item, found: Item) -> MatchEvaluation:
        return MatchEvaluation(score=fallback_score(lost, found), reasoning=fallback_reasoning(lost, found))
