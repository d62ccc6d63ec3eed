import asyncio

import pytest

from app.domain.errors import MalformedProviderResponse, ProviderUnavailable
from app.models.matches import TextComparison, VisualComparison
from app.services.llm_providers import parse_evaluation
from app.services.match_evaluator import (
    MatchEvaluator, brand_relations, build_hints, fallback_breakdown, fallback_score,
)

from conftest import FakeTextProvider

TEXT = TextComparison(is_likely_match=True, reason="same", confidence=80)
VISUAL = VisualComparison(score=70)


def test_wallet_scenario_fallback(make_item):
    lost, found = make_item("l1", "lost"), make_item("f1", "found")
    parts = fallback_breakdown(lost, found)
    assert parts["category"] == 40
    assert 39 < parts["location"] < 40
    assert fallback_score(lost, found) >= 79


def test_all_fields_absent_scores_zero(make_item):
    lost = make_item("l1", "lost", category=None, location=None, timestamp=None, description=None)
    found = make_item("f1", "found", category=None, location=None, timestamp=None, description=None)
    assert fallback_score(lost, found) == 0


def test_description_points_are_capped(make_item):
    text = "black leather wallet with zipper and coins inside"
    lost = make_item("l1", "lost", category=None, location=None, description=text)
    found = make_item("f1", "found", category=None, location=None, description=text.upper())
    assert fallback_score(lost, found) == 20


def test_location_decays_to_zero(make_item):
    lost = make_item("l1", "lost", category=None, location={"lat": 0.0, "lng": 0.0})
    found = make_item("f1", "found", category=None, location={"lat": 0.0, "lng": 0.9})
    # ~100 km apart
    assert 0 <= fallback_score(lost, found) < 1


def test_brand_relations(make_item):
    lost = make_item("l1", "lost", description="designer wallet, black")
    found = make_item("f1", "found", description="Gucci wallet")
    assert brand_relations(lost, found) == ["luxury"]
    hints = build_hints(lost, found)
    assert hints["brand_relations"] == "luxury"
    assert hints["hours_between_reports"] == "1.0"
    assert "distance_km" in hints


def test_primary_score_is_clamped(make_item):
    class Overconfident(FakeTextProvider):
        async def evaluate_match(self, lost, found, text_result, visual_result, hints=None):
            return parse_evaluation(self.name, '{"confidenceScore": 130, "reasoning": "sure"}')

    evaluator = MatchEvaluator(Overconfident())
    result = asyncio.run(evaluator.evaluate(make_item("l1", "lost"), make_item("f1", "found"), TEXT, VISUAL))
    assert result.score == 100


def test_malformed_output_scores_zero(make_item):
    class Garbled(FakeTextProvider):
        async def evaluate_match(self, lost, found, text_result, visual_result, hints=None):
            raise MalformedProviderResponse(self.name, "no JSON object in reply", "???")

    evaluator = MatchEvaluator(Garbled())
    result = asyncio.run(evaluator.evaluate(make_item("l1", "lost"), make_item("f1", "found"), TEXT, VISUAL))
    assert result.score == 0
    assert result.reasoning == ""


def test_unavailable_provider_propagates(make_item):
    with pytest.raises(ProviderUnavailable):
        asyncio.run(MatchEvaluator(None).evaluate(make_item("l1", "lost"), make_item("f1", "found"), TEXT, VISUAL))


def test_timeout_counts_as_unavailable(make_item):
    evaluator = MatchEvaluator(FakeTextProvider(delay=0.5), timeout=0.01)
    with pytest.raises(ProviderUnavailable):
        asyncio.run(evaluator.evaluate(make_item("l1", "lost"), make_item("f1", "found"), TEXT, VISUAL))
