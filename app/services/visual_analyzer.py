"""Visual similarity between two item photos.

Scoring (0-100):
    label overlap   50%  fuzzy (case-insensitive containment) label matches
    object overlap  50%  same fuzzy matching over detections, weighted by
                         detector confidence on both sides
    score = round((label * 0.5 + object * 0.5) * 100)

Before scoring each signature goes through the correction rule table
(``match_tables.CORRECTION_RULES``). After scoring, photos that fall into
incompatible product buckets have the score cut by ``INCOMPATIBLE_ADJUSTMENT``.
Provider trouble of any kind yields score 0; nothing is raised to the caller.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from config import settings
from app.domain.errors import MalformedProviderResponse, ProviderUnavailable
from app.domain.items import DetectedObject, DominantColor, Item, VisualSignature
from app.domain import match_tables as tables
from app.models.matches import VisualComparison
from app.services.signature_cache import SignatureCache, normalize_image_ref
from app.services.vision_provider import BaseVisualProvider
from app.scripts.logging_config import get_logger, log_degradation

logger = get_logger("matching.visual")

_MAX_RGB_DISTANCE = float(np.sqrt(3 * 255.0 ** 2))
_COLOR_PAIR_THRESHOLD = 0.7


# ------------------------------------------------------------------------------
# Corrections
# ------------------------------------------------------------------------------
def _count_evidence(terms: Iterable[str], vocabulary: Sequence[str]) -> int:
    return sum(1 for t in terms if any(v in t.lower() for v in vocabulary))


def apply_corrections(signature: VisualSignature,
                      rules: Sequence[tables.CorrectionRule] = tables.CORRECTION_RULES) -> VisualSignature:
    """Return a corrected copy of ``signature``; the input is left untouched.

    Applying the result again changes nothing.
    """
    labels = list(signature.labels)
    objects = [o.model_copy() for o in signature.objects]
    evidence = signature.evidence_terms()

    for rule in rules:
        hits = _count_evidence(evidence, rule.evidence_terms)
        if hits < rule.min_evidence:
            continue
        relabel = {r.lower() for r in rule.relabel}
        if relabel:
            has_target = any(o.name.lower() in relabel for o in objects)
            if not has_target:
                continue
            objects = [
                o.model_copy(update={"name": rule.corrected_name, "score": max(o.score, rule.confidence)})
                if o.name.lower() in relabel else o
                for o in objects
            ]
        if rule.add_if_missing and not any(rule.marker in o.name.lower() for o in objects):
            objects.append(DetectedObject(name=rule.corrected_name, score=rule.confidence))
        if rule.add_label and not any(rule.marker in label.lower() for label in labels):
            labels.append(rule.corrected_name)
        logger.debug("correction rule fired rule=%s evidence=%d", rule.name, hits)

    for key, floor in tables.CONFIDENCE_FLOORS.items():
        objects = [
            o.model_copy(update={"score": max(o.score, floor)}) if key in o.name.lower() else o
            for o in objects
        ]
    return signature.model_copy(update={"labels": labels, "objects": objects})


# ------------------------------------------------------------------------------
# Categorisation
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class ProductBucket:
    category: str
    subcategory: Optional[str]
    hits: Tuple[str, ...]

    def keys(self) -> Tuple[str, ...]:
        return tuple(k for k in (self.category, self.subcategory) if k)

    def label(self) -> str:
        return f"{self.category}/{self.subcategory}" if self.subcategory else self.category


def _matching_terms(terms: Sequence[str], detected: Sequence[str]) -> List[str]:
    return [t for t in terms if any(t in d for d in detected)]


def categorize(signature: VisualSignature,
               categories: Sequence[tables.ProductCategory] = tables.PRODUCT_CATEGORIES) -> ProductBucket:
    detected = [t.lower() for t in signature.all_terms()]
    best: Optional[tables.ProductCategory] = None
    best_hits: List[str] = []
    for category in categories:
        hits = _matching_terms(category.terms, detected)
        if len(hits) > len(best_hits):
            best, best_hits = category, hits
    if best is None:
        return ProductBucket(tables.UNKNOWN_CATEGORY, None, ())
    sub_name, sub_hits = None, 0
    for name, terms in best.subcategories.items():
        n = len(_matching_terms(terms, detected))
        if n > sub_hits:
            sub_name, sub_hits = name, n
    return ProductBucket(best.name, sub_name, tuple(best_hits))


def are_incompatible(a: ProductBucket, b: ProductBucket,
                     table: frozenset = tables.INCOMPATIBLE_BUCKETS) -> bool:
    if tables.UNKNOWN_CATEGORY in (a.category, b.category) or a.category == b.category:
        return False
    return any(frozenset({ka, kb}) in table for ka in a.keys() for kb in b.keys())


# ------------------------------------------------------------------------------
# Similarities
# ------------------------------------------------------------------------------
def _fuzzy_equal(a: str, b: str) -> bool:
    a, b = a.lower(), b.lower()
    return a == b or a in b or b in a


def label_similarity(labels_a: Sequence[str], labels_b: Sequence[str]) -> float:
    if not labels_a or not labels_b:
        return 0.0
    matched = sum(1 for la in labels_a if any(_fuzzy_equal(la, lb) for lb in labels_b))
    return min(1.0, matched / min(len(labels_a), len(labels_b)))


def object_similarity(objects_a: Sequence[DetectedObject], objects_b: Sequence[DetectedObject]) -> float:
    if not objects_a or not objects_b:
        return 0.0
    total = 0.0
    for oa in objects_a:
        match = next((ob for ob in objects_b if _fuzzy_equal(oa.name, ob.name)), None)
        if match is not None:
            total += oa.score * match.score
    return min(1.0, total / min(len(objects_a), len(objects_b)))


def color_similarity(colors_a: Sequence[DominantColor], colors_b: Sequence[DominantColor]) -> float:
    """Weighted dominant-colour agreement, 0-100."""
    if not colors_a or not colors_b:
        return 0.0
    rgb_a = np.array([[c.red, c.green, c.blue] for c in colors_a], dtype="float32")
    rgb_b = np.array([[c.red, c.green, c.blue] for c in colors_b], dtype="float32")
    weight_a = np.array([c.score * c.pixel_fraction for c in colors_a], dtype="float32")
    weight_b = np.array([c.score * c.pixel_fraction for c in colors_b], dtype="float32")
    dist = np.linalg.norm(rgb_a[:, None, :] - rgb_b[None, :, :], axis=-1)
    sim = 1.0 - dist / _MAX_RGB_DISTANCE
    mask = sim > _COLOR_PAIR_THRESHOLD
    if not mask.any():
        return 0.0
    weights = (weight_a[:, None] + weight_b[None, :]) / 2.0
    total = float((sim * weights)[mask].sum())
    return min(100.0, total / min(len(colors_a), len(colors_b)) * 100.0)


def compare(signature_a: VisualSignature, signature_b: VisualSignature) -> VisualComparison:
    """Score two signatures. Pure; corrections are applied here."""
    sig_a = apply_corrections(signature_a)
    sig_b = apply_corrections(signature_b)

    label_sim = label_similarity(sig_a.labels, sig_b.labels)
    object_sim = object_similarity(sig_a.objects, sig_b.objects)
    score = round((label_sim * 0.5 + object_sim * 0.5) * 100)

    bucket_a, bucket_b = categorize(sig_a), categorize(sig_b)
    incompatible = are_incompatible(bucket_a, bucket_b)
    adjustment = tables.INCOMPATIBLE_ADJUSTMENT if incompatible else 0.0
    if incompatible:
        score = round(score * (1 + adjustment))
        logger.info("incompatible visual buckets %s vs %s, score cut to %d", bucket_a.label(), bucket_b.label(), score)

    return VisualComparison(
        score=max(0, min(100, score)),
        label_overlap=label_sim,
        object_overlap=object_sim,
        color_similarity=color_similarity(sig_a.dominant_colors, sig_b.dominant_colors),
        category_a=bucket_a.label(),
        category_b=bucket_b.label(),
        incompatible=incompatible,
        adjustment=adjustment,
    )


# ------------------------------------------------------------------------------
# Analyzer
# ------------------------------------------------------------------------------
class VisualAnalyzer:
    """Fetches signatures through the provider (cache first) and compares them."""

    def __init__(self, provider: Optional[BaseVisualProvider], cache: SignatureCache,
                 timeout: Optional[float] = None):
        self.provider = provider
        self.cache = cache
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

    async def signature_for(self, image_ref: Optional[str], item_id: Optional[str] = None) -> Optional[VisualSignature]:
        if not image_ref:
            return None
        cached = self.cache.get(image_ref)
        if cached is not None:
            return cached
        if self.provider is None:
            log_degradation("vision", "no provider configured", item_id)
            return None
        provider_name = getattr(self.provider, "name", "vision")
        try:
            signature = await asyncio.wait_for(self.provider.analyze(image_ref), timeout=self.timeout)
        except asyncio.TimeoutError:
            log_degradation(provider_name, f"timeout after {self.timeout}s ref={normalize_image_ref(image_ref)}", item_id)
            return None
        except (ProviderUnavailable, MalformedProviderResponse) as e:
            log_degradation(provider_name, f"{e} ref={normalize_image_ref(image_ref)}", item_id)
            return None
        except Exception as e:  # third-party providers may raise anything
            logger.exception("vision provider crashed ref=%s item=%s", image_ref, item_id)
            log_degradation(provider_name, f"{type(e).__name__}: {e}", item_id)
            return None
        self.cache.put(image_ref, signature)
        return signature

    async def resolve(self, item: Item) -> Optional[VisualSignature]:
        """Stored signature if the item carries one, else fetched by image reference."""
        if item.visual_signature is not None:
            return item.visual_signature
        return await self.signature_for(item.image_url, item.id)

    def _scored(self, a: Item, sig_a: Optional[VisualSignature],
                b: Item, sig_b: Optional[VisualSignature]) -> VisualComparison:
        if sig_a is None or sig_b is None:
            return VisualComparison(score=0, available=False)
        result = compare(sig_a, sig_b)
        logger.debug("visual %s~%s score=%d labels=%.2f objects=%.2f", a.id, b.id,
                     result.score, result.label_overlap, result.object_overlap)
        return result

    async def compare_items(self, a: Item, b: Item) -> VisualComparison:
        sig_a, sig_b = await asyncio.gather(self.resolve(a), self.resolve(b))
        return self._scored(a, sig_a, b, sig_b)

    async def compare_against(self, target: Item, target_signature: Optional[VisualSignature],
                              candidate: Item) -> VisualComparison:
        """Compare with an already resolved target signature, keeping (lost, found) order.

        A missing target signature scores 0 without fetching the candidate.
        """
        if target_signature is None:
            return VisualComparison(score=0, available=False)
        candidate_signature = await self.resolve(candidate)
        if target.is_lost:
            return self._scored(target, target_signature, candidate, candidate_signature)
        return self._scored(candidate, candidate_signature, target, target_signature)
