"""Match orchestration: filter -> (visual || text) -> evaluate -> rank.

One run scores a target item against a pool of candidates. Candidates are
scored concurrently (bounded by a semaphore); a failing candidate is logged and
dropped. When the evaluator itself is unavailable the in-flight work is
cancelled and every surviving candidate is rescored with the deterministic
fallback, so one report never mixes the two scoring paths.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from typing import Dict, List, Optional, Sequence, Tuple

from config import settings
from app.domain.errors import InvalidItemData, ProviderUnavailable
from app.domain.items import Item, VisualSignature, orient_pair
from app.models.matches import MatchCandidate, MatchReport, NotificationIntent
from app.services.candidate_filter import should_skip_comparison
from app.services.llm_providers import get_text_provider
from app.services.match_evaluator import MatchEvaluator, build_hints
from app.services.signature_cache import SignatureCache
from app.services.text_analyzer import TextAnalyzer
from app.services.vision_provider import get_visual_provider
from app.services.visual_analyzer import VisualAnalyzer
from app.scripts.logging_config import get_logger, log_match_event, log_run_summary, set_run_id

logger = get_logger("matching.orchestrator")


class MatchOrchestrator:
    def __init__(self, visual_analyzer: VisualAnalyzer, text_analyzer: TextAnalyzer,
                 evaluator: MatchEvaluator, max_concurrency: Optional[int] = None,
                 significant_score: Optional[float] = None,
                 high_confidence_score: Optional[float] = None):
        self.visual = visual_analyzer
        self.text = text_analyzer
        self.evaluator = evaluator
        self.max_concurrency = max_concurrency or settings.MATCH_MAX_CONCURRENCY
        self.significant_score = (settings.SIGNIFICANT_MATCH_SCORE
                                  if significant_score is None else significant_score)
        self.high_confidence_score = (settings.HIGH_CONFIDENCE_SCORE
                                      if high_confidence_score is None else high_confidence_score)

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------
    @staticmethod
    def candidate_pool(target: Item, pool: Sequence[Item]) -> List[Item]:
        """Opposite-type, unresolved items other than the target, in pool order."""
        opposite = target.item_type.opposite
        return [c for c in pool if c.item_type is opposite and not c.is_resolved and c.id != target.id]

    @staticmethod
    def _survivors(target: Item, candidates: Sequence[Item]) -> List[Item]:
        kept = []
        for candidate in candidates:
            lost, found = orient_pair(target, candidate)
            if not should_skip_comparison(lost, found):
                kept.append(candidate)
        return kept

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    async def _score_one(self, target: Item, target_signature: Optional[VisualSignature],
                         candidate: Item, sem: asyncio.Semaphore) -> MatchCandidate:
        lost, found = orient_pair(target, candidate)
        async with sem:
            visual, text = await asyncio.gather(
                self.visual.compare_against(target, target_signature, candidate),
                self.text.compare(lost, found, build_hints(lost, found)),
            )
            evaluation = await self.evaluator.evaluate(lost, found, text, visual)
        logger.debug("scored candidate=%s visual=%d text=%.0f(%s) final=%.1f",
                     candidate.id, visual.score, text.confidence, text.source, evaluation.score)
        return MatchCandidate(
            item=candidate,
            visual_score=visual.score,
            text_score=text.confidence,
            final_score=evaluation.score,
            reasoning=evaluation.reasoning,
            scorer="primary",
        )

    async def _score_primary(self, target: Item, survivors: List[Item]) -> Tuple[List[Optional[MatchCandidate]], int]:
        """Score concurrently. Raises ProviderUnavailable when the evaluator is down."""
        if not survivors:
            return [], 0
        # fetched once per run, shared by every candidate task
        target_signature = await self.visual.resolve(target)
        sem = asyncio.Semaphore(self.max_concurrency)
        tasks: Dict[asyncio.Task, int] = {
            asyncio.create_task(self._score_one(target, target_signature, c, sem)): i
            for i, c in enumerate(survivors)
        }
        results: List[Optional[MatchCandidate]] = [None] * len(survivors)
        failed = 0
        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                unavailable: Optional[ProviderUnavailable] = None
                for task in done:
                    idx = tasks[task]
                    exc = task.exception()
                    if isinstance(exc, ProviderUnavailable):
                        unavailable = unavailable or exc
                        continue
                    if exc is not None:
                        failed += 1
                        logger.error("scoring failed candidate=%s: %s: %s",
                                     survivors[idx].id, type(exc).__name__, exc, exc_info=exc)
                        continue
                    results[idx] = task.result()
                if unavailable is not None:
                    raise unavailable
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return results, failed

    def _score_fallback(self, target: Item, survivors: List[Item]) -> Tuple[List[Optional[MatchCandidate]], int]:
        results: List[Optional[MatchCandidate]] = []
        failed = 0
        for candidate in survivors:
            try:
                lost, found = orient_pair(target, candidate)
                evaluation = self.evaluator.evaluate_fallback(lost, found)
            except Exception as e:
                failed += 1
                logger.error("fallback scoring failed candidate=%s: %s", candidate.id, e, exc_info=True)
                results.append(None)
                continue
            results.append(MatchCandidate(
                item=candidate,
                final_score=evaluation.score,
                reasoning=evaluation.reasoning,
                scorer="fallback",
            ))
        return results, failed

    # ------------------------------------------------------------------
    # Ranking / intents
    # ------------------------------------------------------------------
    def rank(self, scored: Sequence[Optional[MatchCandidate]]) -> List[MatchCandidate]:
        kept = [m for m in scored if m is not None and m.final_score >= self.significant_score]
        # sorted() is stable, ties keep pool order
        return sorted(kept, key=lambda m: m.final_score, reverse=True)

    def notification_intents(self, target: Item, matches: Sequence[MatchCandidate]) -> List[NotificationIntent]:
        intents: List[NotificationIntent] = []
        for m in matches:
            if m.final_score < self.high_confidence_score:
                continue
            lost, found = orient_pair(target, m.item)
            data = {
                "lost_item_id": lost.id,
                "found_item_id": found.id,
                "score": round(m.final_score, 1),
                "scorer": m.scorer,
            }
            intents.append(NotificationIntent(
                user_id=lost.user_id,
                title="Potential match found",
                message=f"A found item may match your lost {lost.category or 'item'} "
                        f"({m.final_score:.0f}% confidence).",
                data=data,
            ))
            intents.append(NotificationIntent(
                user_id=found.user_id,
                title="Potential owner found",
                message=f"The {found.category or 'item'} you found may belong to someone who reported it lost "
                        f"({m.final_score:.0f}% confidence).",
                data=data,
            ))
        return intents

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def match(self, target: Item, pool: Sequence[Item]) -> MatchReport:
        set_run_id(uuid.uuid4().hex[:8])
        start = time.time()
        summary = {"target_id": target.id, "pool_size": len(pool)}

        if target.is_resolved:
            logger.info("target %s already resolved, nothing to match", target.id)
            log_run_summary({**summary, "duration_ms": int((time.time() - start) * 1000)})
            return MatchReport(target_id=target.id)
        if not target.image_url and target.visual_signature is None:
            err = InvalidItemData(target.id, "no image reference")
            logger.warning("%s", err)
            log_run_summary({**summary, "duration_ms": int((time.time() - start) * 1000)})
            return MatchReport(target_id=target.id)

        candidates = self.candidate_pool(target, pool)
        survivors = self._survivors(target, candidates)
        summary["filtered_out"] = len(candidates) - len(survivors)

        used_fallback = False
        if not self.evaluator.available:
            logger.info("evaluator not configured, fallback scoring for %d candidates", len(survivors))
            used_fallback = True
            scored, failed = self._score_fallback(target, survivors)
        else:
            try:
                scored, failed = await self._score_primary(target, survivors)
            except ProviderUnavailable as e:
                logger.warning("scoring subsystem unavailable (%s), rescoring %d candidates with fallback",
                               e, len(survivors))
                log_match_event("fallback_rerun", {"target_id": target.id, "reason": str(e)})
                used_fallback = True
                scored, failed = self._score_fallback(target, survivors)

        matches = self.rank(scored)
        intents = self.notification_intents(target, matches)
        for m in matches:
            if m.final_score >= self.high_confidence_score:
                log_match_event("high_confidence_match", {
                    "target_id": target.id, "candidate_id": m.item.id,
                    "score": m.final_score, "scorer": m.scorer,
                })

        summary.update({
            "scored": sum(1 for s in scored if s is not None),
            "failed": failed,
            "returned": len(matches),
            "notify": len(intents),
            "used_fallback": used_fallback,
            "duration_ms": int((time.time() - start) * 1000),
        })
        log_run_summary(summary)
        return MatchReport(target_id=target.id, matches=matches, notifications=intents, used_fallback=used_fallback)

    async def find_matches(self, target: Item, pool: Sequence[Item]) -> List[MatchCandidate]:
        return (await self.match(target, pool)).matches


def build_orchestrator(cache: Optional[SignatureCache] = None) -> MatchOrchestrator:
    """Orchestrator wired to the configured providers; missing keys mean degraded paths."""
    vision = get_visual_provider() if settings.GOOGLE_CLOUD_VISION_API_KEY else None
    text_provider = get_text_provider()
    return MatchOrchestrator(
        visual_analyzer=VisualAnalyzer(vision, cache or SignatureCache()),
        text_analyzer=TextAnalyzer(text_provider),
        evaluator=MatchEvaluator(text_provider),
    )
