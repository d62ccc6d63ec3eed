"""Batch re-matching job.

1. Load every unresolved lost item from the item store.
2. Match each one against the unresolved found pool.
3. Record the best high-confidence match and hand intents to the dispatcher
   (one cooldown tracker for the whole run, so a user gets one alert per window).

Run from the project root:
    python -m app.scripts.reconcile_matches --limit 50 --dry-run
"""
from __future__ import annotations

import argparse
import asyncio
import time
from typing import Dict, Optional

from app.domain.items import ItemType
from app.services.item_service import ItemService
from app.services.item_store import BaseItemStore, FirestoreItemStore
from app.services.matching import MatchOrchestrator, build_orchestrator
from app.services.notifications import (
    CooldownTracker, EmailNotificationSink, FirestoreNotificationSink,
    LoggingNotificationSink, NotificationDispatcher,
)
from app.scripts.logging_config import get_logger, log_match_event, setup_logging

logger = get_logger("matching.reconcile")

SINKS = {
    "log": LoggingNotificationSink,
    "firestore": FirestoreNotificationSink,
    "email": EmailNotificationSink,
}


async def reconcile(store: BaseItemStore, orchestrator: MatchOrchestrator,
                    dispatcher: Optional[NotificationDispatcher], limit: Optional[int] = None,
                    dry_run: bool = False) -> Dict[str, int]:
    start = time.time()
    service = ItemService(store, orchestrator, None if dry_run else dispatcher)
    lost_items = store.find_candidates(ItemType.LOST, exclude_resolved=True)
    if limit is not None:
        lost_items = lost_items[:limit]

    stats = {"checked": 0, "with_matches": 0, "notifications": 0, "fallback_runs": 0}
    for item in lost_items:
        if dry_run:
            pool = store.find_candidates(ItemType.FOUND, exclude_resolved=True)
            report = await orchestrator.match(item, pool)
        else:
            report = await service.run_matching(item)
        stats["checked"] += 1
        if report.matches:
            stats["with_matches"] += 1
            top = report.matches[0]
            logger.info("lost=%s top=%s score=%.1f (%d match(es))",
                        item.id, top.item.id, top.final_score, len(report.matches))
        stats["notifications"] += len(report.notifications)
        stats["fallback_runs"] += int(report.used_fallback)

    stats["duration_ms"] = int((time.time() - start) * 1000)
    log_match_event("reconcile_done", {**stats, "dry_run": dry_run})
    return stats


async def _run(limit: Optional[int], dry_run: bool, sink_name: str) -> Dict[str, int]:
    store = FirestoreItemStore()
    orchestrator = build_orchestrator()
    dispatcher = NotificationDispatcher(SINKS[sink_name](), CooldownTracker())
    vision = orchestrator.visual.provider
    if vision is not None and hasattr(vision, "__aenter__"):
        async with vision:
            return await reconcile(store, orchestrator, dispatcher, limit=limit, dry_run=dry_run)
    return await reconcile(store, orchestrator, dispatcher, limit=limit, dry_run=dry_run)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Re-run matching for every unresolved lost item")
    parser.add_argument("--limit", type=int, default=None, help="max lost items to process (default: all)")
    parser.add_argument("--dry-run", action="store_true", help="score only; no writes, no notifications")
    parser.add_argument("--sink", choices=sorted(SINKS), default="firestore", help="notification sink")
    args = parser.parse_args(argv)

    setup_logging()
    stats = asyncio.run(_run(args.limit, args.dry_run, args.sink))
    logger.info("reconcile finished: %s", stats)


if __name__ == "__main__":
    main()
