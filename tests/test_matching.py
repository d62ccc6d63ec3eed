import asyncio
import gc
from datetime import timedelta

import pytest

from app.domain.errors import ProviderUnavailable
from app.services import matching, vision_provider

from conftest import FakeTextProvider, FakeVisionProvider


def _scores(mapping, default=0.0):
    return lambda lost, found, text_result: mapping.get(found.id, default)


def test_wallet_scenarios_with_fallback(make_item, build_orchestrator):
    target = make_item("l1", "lost")
    pool = [
        make_item("f-near", "found"),
        make_item("f-early", "found", timestamp=target.timestamp - timedelta(hours=1)),
        make_item("f-bag", "found", category="Backpack"),
        make_item("l2", "lost"),
        make_item("f-done", "found", is_resolved=True),
    ]
    report = asyncio.run(build_orchestrator(text_provider=None).match(target, pool))
    assert [m.item.id for m in report.matches] == ["f-near"]
    assert report.matches[0].final_score >= 79
    assert report.matches[0].scorer == "fallback"
    assert report.used_fallback is True


def test_sorted_above_threshold_and_stable(make_item, build_orchestrator):
    target = make_item("l1", "lost")
    pool = [make_item(i, "found") for i in ("f1", "f2", "f3", "f4")]
    provider = FakeTextProvider(evaluate_fn=_scores({"f1": 60, "f2": 90, "f3": 40, "f4": 90}))
    matches = asyncio.run(build_orchestrator(text_provider=provider).find_matches(target, pool))
    assert [m.item.id for m in matches] == ["f2", "f4", "f1"]
    assert all(m.final_score >= 55 for m in matches)
    assert all(m.scorer == "primary" for m in matches)


def test_found_target_matches_lost_pool(make_item, build_orchestrator):
    target = make_item("f1", "found")
    pool = [make_item("l1", "lost"), make_item("f2", "found")]
    provider = FakeTextProvider(evaluate_fn=_scores({}, default=70))
    matches = asyncio.run(build_orchestrator(text_provider=provider).find_matches(target, pool))
    assert [m.item.id for m in matches] == ["l1"]
    lost_id, found_id, _, _ = provider.evaluations[0]
    assert (lost_id, found_id) == ("l1", "f1")


def test_subsystem_failure_reruns_everything_with_fallback(make_item, build_orchestrator, unavailable):
    def evaluate(lost, found, text_result):
        if found.id == "f2":
            raise unavailable
        return 99.0

    target = make_item("l1", "lost")
    pool = [make_item(i, "found") for i in ("f1", "f2", "f3")]
    report = asyncio.run(build_orchestrator(text_provider=FakeTextProvider(evaluate_fn=evaluate)).match(target, pool))
    assert report.used_fallback is True
    assert [m.item.id for m in report.matches] == ["f1", "f2", "f3"]
    assert {m.scorer for m in report.matches} == {"fallback"}
    assert all(m.final_score < 99 for m in report.matches)


def test_one_bad_candidate_is_skipped(make_item, build_orchestrator):
    def evaluate(lost, found, text_result):
        if found.id == "f2":
            raise RuntimeError("corrupt record")
        return 80.0

    target = make_item("l1", "lost")
    pool = [make_item(i, "found") for i in ("f1", "f2", "f3")]
    report = asyncio.run(build_orchestrator(text_provider=FakeTextProvider(evaluate_fn=evaluate)).match(target, pool))
    assert report.used_fallback is False
    assert [m.item.id for m in report.matches] == ["f1", "f3"]


def test_malformed_text_reply_pipeline_continues(make_item, build_orchestrator):
    provider = FakeTextProvider(compare_reply="not json at all", evaluate_fn=_scores({}, default=70))
    target = make_item("l1", "lost", description="black wallet")
    pool = [make_item("f1", "found", description="black wallet")]
    matches = asyncio.run(build_orchestrator(text_provider=provider).find_matches(target, pool))
    assert [m.item.id for m in matches] == ["f1"]
    _, _, text_result, visual_result = provider.evaluations[0]
    assert text_result.is_likely_match is False
    assert "Malformed" in text_result.reason
    assert visual_result.available is True


def test_high_confidence_matches_produce_intents(make_item, build_orchestrator):
    target = make_item("l1", "lost", user_id="alice")
    pool = [make_item("f1", "found", user_id="bob"), make_item("f2", "found", user_id="carol")]
    provider = FakeTextProvider(evaluate_fn=_scores({"f1": 80, "f2": 60}))
    report = asyncio.run(build_orchestrator(text_provider=provider).match(target, pool))
    assert [m.item.id for m in report.matches] == ["f1", "f2"]
    assert [i.user_id for i in report.notifications] == ["alice", "bob"]
    assert report.notifications[0].data == {"lost_item_id": "l1", "found_item_id": "f1", "score": 80.0,
                                            "scorer": "primary"}


def test_target_without_image_returns_empty(make_item, build_orchestrator, fake_text):
    target = make_item("l1", "lost", image_url=None)
    report = asyncio.run(build_orchestrator(text_provider=fake_text).match(target, [make_item("f1", "found")]))
    assert report.matches == []
    assert fake_text.evaluations == []


def test_empty_pool_is_not_an_error(make_item, build_orchestrator, fake_text):
    assert asyncio.run(build_orchestrator(text_provider=fake_text).find_matches(make_item("l1", "lost"), [])) == []


def test_concurrency_is_bounded(make_item, build_orchestrator):
    provider = FakeTextProvider(delay=0.02)
    target = make_item("l1", "lost")
    pool = [make_item(f"f{i}", "found") for i in range(8)]
    matches = asyncio.run(build_orchestrator(text_provider=provider, max_concurrency=2).find_matches(target, pool))
    assert len(matches) == 8
    assert provider.max_active <= 2


def test_caller_cancellation_propagates(make_item, build_orchestrator):
    provider = FakeTextProvider(delay=5.0)
    orchestrator = build_orchestrator(text_provider=provider)
    target = make_item("l1", "lost")
    pool = [make_item("f1", "found"), make_item("f2", "found")]

    async def run():
        task = asyncio.create_task(orchestrator.match(target, pool))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return len(orchestrator.visual.cache)

    # signatures fetched before cancellation stay cached
    assert asyncio.run(run()) == 3


def test_target_signature_fetched_once_per_run(make_item, build_orchestrator):
    vision = FakeVisionProvider(delay=0.02)
    target = make_item("l1", "lost")
    pool = [make_item(f"f{i}", "found") for i in range(6)]
    orchestrator = build_orchestrator(text_provider=FakeTextProvider(), vision_provider=vision)
    matches = asyncio.run(orchestrator.find_matches(target, pool))
    assert len(matches) == 6
    assert vision.calls.count(target.image_url) == 1
    assert len(vision.calls) == 7


def test_failing_vision_is_not_retried_per_candidate(make_item, build_orchestrator):
    vision = FakeVisionProvider(error=ProviderUnavailable("fake_vision", "429"))
    provider = FakeTextProvider()
    target = make_item("l1", "lost")
    pool = [make_item(f"f{i}", "found") for i in range(4)]
    orchestrator = build_orchestrator(text_provider=provider, vision_provider=vision)
    asyncio.run(orchestrator.find_matches(target, pool))
    assert vision.calls == [target.image_url]
    assert all(visual.available is False for _, _, _, visual in provider.evaluations)


def test_simultaneous_unavailable_errors_are_all_retrieved(make_item, build_orchestrator, unavailable):
    def evaluate(lost, found, text_result):
        raise unavailable

    target = make_item("l1", "lost")
    pool = [make_item(i, "found") for i in ("f1", "f2", "f3")]
    orchestrator = build_orchestrator(text_provider=FakeTextProvider(evaluate_fn=evaluate))
    unhandled = []

    async def run():
        asyncio.get_running_loop().set_exception_handler(lambda loop, ctx: unhandled.append(ctx))
        report = await orchestrator.match(target, pool)
        gc.collect()
        await asyncio.sleep(0)
        return report

    report = asyncio.run(run())
    assert report.used_fallback is True
    assert [ctx.get("message") for ctx in unhandled] == []


def test_build_orchestrator_uses_shared_vision_provider(monkeypatch):
    monkeypatch.setattr(vision_provider, "_singleton", None)
    monkeypatch.setattr(matching.settings, "GOOGLE_CLOUD_VISION_API_KEY", "test-key")
    monkeypatch.setattr(matching, "get_text_provider", lambda: None)
    first = matching.build_orchestrator()
    second = matching.build_orchestrator()
    assert first.visual.provider is vision_provider.get_visual_provider()
    assert second.visual.provider is first.visual.provider
