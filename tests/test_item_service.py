import asyncio
import time

import pytest

from app.domain.errors import ItemNotFound, NotItemOwner
from app.domain.items import ItemType
from app.scripts.reconcile_matches import reconcile
from app.services.item_service import ItemService
from app.services.item_store import InMemoryItemStore
from app.services.notifications import CooldownTracker, NotificationDispatcher

from test_notifications import RecordingSink


def _service(build_orchestrator, clock, store=None):
    sink = RecordingSink()
    dispatcher = NotificationDispatcher(sink, CooldownTracker(cooldown_seconds=5, clock=clock))
    service = ItemService(store or InMemoryItemStore(), build_orchestrator(text_provider=None), dispatcher)
    return service, sink


def test_register_matches_and_notifies(make_item, build_orchestrator, clock):
    service, sink = _service(build_orchestrator, clock)
    asyncio.run(service.register_item(make_item("l1", "lost", user_id="alice")))
    report = asyncio.run(service.register_item(make_item("f1", "found", user_id="bob")))

    assert [m.item.id for m in report.matches] == ["l1"]
    assert service.store.get("f1").matched_item_id == "l1"
    assert sorted(uid for uid, _ in sink.sent) == ["alice", "bob"]


def test_resolve_cascades_to_matched_item(make_item, build_orchestrator, clock):
    service, _ = _service(build_orchestrator, clock)
    asyncio.run(service.register_item(make_item("l1", "lost", user_id="alice")))
    asyncio.run(service.register_item(make_item("f1", "found", user_id="bob")))

    resolved = service.resolve_item("f1", "bob")
    assert [i.id for i in resolved] == ["f1", "l1"]
    assert service.store.find_candidates(ItemType.LOST) == []


def test_resolve_checks_owner(make_item, build_orchestrator, clock):
    service, _ = _service(build_orchestrator, clock)
    asyncio.run(service.register_item(make_item("l1", "lost", user_id="alice")))
    with pytest.raises(NotItemOwner):
        service.resolve_item("l1", "mallory")
    with pytest.raises(ItemNotFound):
        service.resolve_item("nope", "alice")


def test_update_does_not_rematch(make_item):
    store = InMemoryItemStore([make_item("l1", "lost")])
    updated = store.update("l1", description="now with a red strap")
    assert updated.description == "now with a red strap"
    assert updated.matched_item_id is None


def test_reconcile_dry_run_writes_nothing(make_item, build_orchestrator, clock):
    store = InMemoryItemStore([make_item("l1", "lost"), make_item("l2", "lost"), make_item("f1", "found")])
    sink = RecordingSink()
    dispatcher = NotificationDispatcher(sink, CooldownTracker(cooldown_seconds=5, clock=clock))
    stats = asyncio.run(reconcile(store, build_orchestrator(text_provider=None), dispatcher, dry_run=True))
    assert stats["checked"] == 2
    assert stats["with_matches"] == 2
    assert sink.sent == []
    assert store.get("l1").matched_item_id is None


def test_reconcile_records_matches_and_respects_limit(make_item, build_orchestrator, clock):
    store = InMemoryItemStore([make_item("l1", "lost"), make_item("l2", "lost"), make_item("f1", "found")])
    sink = RecordingSink()
    dispatcher = NotificationDispatcher(sink, CooldownTracker(cooldown_seconds=5, clock=clock))
    stats = asyncio.run(reconcile(store, build_orchestrator(text_provider=None), dispatcher, limit=1))
    assert stats["checked"] == 1
    assert store.get("l1").matched_item_id == "f1"
    assert store.get("l2").matched_item_id is None
    assert len(sink.sent) == 2


class SlowSink(RecordingSink):
    def emit(self, user_id, payload):
        time.sleep(0.3)
        super().emit(user_id, payload)


def test_dispatch_does_not_block_event_loop(make_item, build_orchestrator, clock):
    store = InMemoryItemStore([make_item("l1", "lost", user_id="alice")])
    sink = SlowSink()
    dispatcher = NotificationDispatcher(sink, CooldownTracker(cooldown_seconds=5, clock=clock))
    service = ItemService(store, build_orchestrator(text_provider=None), dispatcher)

    async def run():
        gaps = []
        done = asyncio.Event()

        async def ticker():
            last = time.monotonic()
            while not done.is_set():
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        tick = asyncio.create_task(ticker())
        await service.register_item(make_item("f1", "found", user_id="bob"))
        done.set()
        await tick
        return max(gaps)

    longest_stall = asyncio.run(run())
    assert len(sink.sent) == 2
    assert longest_stall < 0.2


def test_match_below_orchestrator_threshold_is_not_recorded(make_item, build_orchestrator, clock):
    sink = RecordingSink()
    dispatcher = NotificationDispatcher(sink, CooldownTracker(cooldown_seconds=5, clock=clock))
    store = InMemoryItemStore([make_item("l1", "lost", user_id="alice")])
    orchestrator = build_orchestrator(text_provider=None, high_confidence_score=90)
    service = ItemService(store, orchestrator, dispatcher)

    report = asyncio.run(service.register_item(make_item("f1", "found", user_id="bob")))
    assert [m.item.id for m in report.matches] == ["l1"]
    assert report.matches[0].final_score < 90
    assert store.get("f1").matched_item_id is None
    assert sink.sent == []
