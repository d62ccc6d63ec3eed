"""Item lifecycle around matching.

register_item: store the item, match it against the opposite pool right away,
remember the best high-confidence match, hand the intents to the dispatcher.
resolve_item: owner-only; also resolves the matched counterpart.
Edits to description/category do not trigger re-matching.
"""
from __future__ import annotations

import asyncio
from typing import List, Optional

from app.domain.errors import ItemNotFound, NotItemOwner
from app.domain.items import Item
from app.models.matches import MatchReport
from app.services.item_store import BaseItemStore
from app.services.matching import MatchOrchestrator
from app.services.notifications import NotificationDispatcher
from app.scripts.logging_config import get_logger, log_match_event

logger = get_logger(__name__)


class ItemService:
    def __init__(self, store: BaseItemStore, orchestrator: MatchOrchestrator,
                 dispatcher: Optional[NotificationDispatcher] = None):
        self.store = store
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher

    async def run_matching(self, item: Item, dispatch: bool = True) -> MatchReport:
        pool = self.store.find_candidates(item.item_type.opposite, exclude_resolved=True)
        report = await self.orchestrator.match(item, pool)
        if report.matches and report.matches[0].final_score >= self.orchestrator.high_confidence_score:
            best = report.matches[0]
            if item.matched_item_id != best.item.id:
                self.store.update(item.id, matched_item_id=best.item.id)
                logger.info("item %s matched to %s score=%.1f", item.id, best.item.id, best.final_score)
        if dispatch and self.dispatcher is not None and report.notifications:
            # sinks do blocking I/O (SMTP, Firestore)
            await asyncio.to_thread(self.dispatcher.dispatch, report.notifications)
        return report

    async def register_item(self, item: Item) -> MatchReport:
        self.store.create(item)
        log_match_event("item_registered", {"item_id": item.id, "item_type": item.item_type.value})
        return await self.run_matching(item)

    def resolve_item(self, item_id: str, user_id: str) -> List[Item]:
        """Mark the item (and its matched counterpart, if any) resolved."""
        item = self.store.get(item_id)
        if item is None:
            raise ItemNotFound(item_id)
        if item.user_id != user_id:
            raise NotItemOwner(item_id, user_id)
        resolved = [self.store.update(item_id, is_resolved=True)]
        if item.matched_item_id:
            counterpart = self.store.get(item.matched_item_id)
            if counterpart is None:
                logger.warning("matched item %s of %s no longer exists", item.matched_item_id, item_id)
            elif not counterpart.is_resolved:
                resolved.append(self.store.update(counterpart.id, is_resolved=True))
        log_match_event("item_resolved", {"item_ids": [i.id for i in resolved], "by": user_id})
        return resolved
