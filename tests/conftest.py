import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.domain.errors import ProviderUnavailable
from app.domain.items import Item, ItemType, VisualSignature
from app.models.matches import MatchEvaluation
from app.services.llm_providers import BaseTextProvider, parse_comparison
from app.services.match_evaluator import MatchEvaluator
from app.services.matching import MatchOrchestrator
from app.services.signature_cache import SignatureCache
from app.services.text_analyzer import TextAnalyzer
from app.services.vision_provider import BaseVisualProvider
from app.services.visual_analyzer import VisualAnalyzer

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeVisionProvider(BaseVisualProvider):
    name = "fake_vision"

    def __init__(self, signatures=None, error=None, delay=0.0):
        self.signatures = signatures or {}
        self.error = error
        self.delay = delay
        self.calls = []

    async def analyze(self, image_ref):
        self.calls.append(image_ref)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.signatures.get(image_ref, VisualSignature(labels=["Object"]))


class FakeTextProvider(BaseTextProvider):
    """compare_reply is raw model text (parsed like a real reply); evaluate_fn(lost, found, text_result) -> score."""
    name = "fake_text"

    def __init__(self, compare_reply=None, compare_error=None, evaluate_fn=None, delay=0.0):
        self.compare_reply = compare_reply or '{"isTextLikelyMatch": true, "reason": "same wallet", "confidence": 90}'
        self.compare_error = compare_error
        self.evaluate_fn = evaluate_fn or (lambda lost, found, text_result: 80.0)
        self.delay = delay
        self.evaluations = []
        self.active = 0
        self.max_active = 0

    async def compare_descriptions(self, lost, found, hints=None):
        if self.compare_error is not None:
            raise self.compare_error
        return parse_comparison(self.name, self.compare_reply)

    async def evaluate_match(self, lost, found, text_result, visual_result, hints=None):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.evaluations.append((lost.id, found.id, text_result, visual_result))
            score = self.evaluate_fn(lost, found, text_result)
        finally:
            self.active -= 1
        return MatchEvaluation(score=score, reasoning=f"scored {found.id}")


def _item(id, item_type="lost", **kw):
    kw.setdefault("user_id", f"user-{id}")
    kw.setdefault("category", "Wallet")
    kw.setdefault("image_url", f"https://img.example.com/{id}.jpg")
    if "timestamp" not in kw:
        kw["timestamp"] = T0 if item_type == "lost" else T0 + timedelta(hours=1)
    if "location" not in kw:
        kw["location"] = {"lat": 40.0, "lng": -73.0} if item_type == "lost" else {"lat": 40.01, "lng": -73.01}
    return Item(id=id, item_type=ItemType(item_type), **kw)


@pytest.fixture
def make_item():
    return _item


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_vision():
    return FakeVisionProvider()


@pytest.fixture
def fake_text():
    return FakeTextProvider()


@pytest.fixture
def build_orchestrator(fake_vision):
    def _build(text_provider=None, vision_provider=fake_vision, **kw):
        return MatchOrchestrator(
            visual_analyzer=VisualAnalyzer(vision_provider, SignatureCache(ttl_seconds=60), timeout=1.0),
            text_analyzer=TextAnalyzer(text_provider, timeout=1.0),
            evaluator=MatchEvaluator(text_provider, timeout=1.0),
            **kw,
        )
    return _build


@pytest.fixture
def unavailable():
    return ProviderUnavailable("fake_text", "quota exceeded")
