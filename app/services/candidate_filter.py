"""Cheap synchronous pre-screen run before any provider call.

Only hard impossibilities reject a pair. A missing field never does: absent
data is scored downstream, not excluded here.
"""
from __future__ import annotations

from typing import Optional

from config import settings
from app.domain.items import Item, as_utc, orient_pair
from app.services.geo import distance_km
from app.scripts.logging_config import get_logger

logger = get_logger("matching.filter")


def rejection_reason(lost: Item, found: Item, max_distance_km: Optional[float] = None) -> Optional[str]:
    """Name of the first reject rule that fires for ``(lost, found)``, else None."""
    if lost.is_resolved or found.is_resolved:
        return "resolved"
    lost_at, found_at = as_utc(lost.timestamp), as_utc(found.timestamp)
    if lost_at and found_at and found_at < lost_at:
        return "found_before_lost"
    if lost.category and found.category and lost.category != found.category:
        return "category_mismatch"
    limit = settings.MAX_MATCH_DISTANCE_KM if max_distance_km is None else max_distance_km
    km = distance_km(lost.location, found.location)
    if km is not None and km > limit:
        return "too_far"
    return None


def should_skip_comparison(lost: Item, found: Item) -> bool:
    reason = rejection_reason(lost, found)
    if reason:
        logger.debug("skip lost=%s found=%s rule=%s", lost.id, found.id, reason)
        return True
    return False


def should_skip(candidate: Item, target: Item) -> bool:
    """Same gate with the pair given as (candidate, target) in any orientation."""
    lost, found = orient_pair(candidate, target)
    return should_skip_comparison(lost, found)
