"""Description comparison: provider first, lexical Jaccard when it is not usable."""
from __future__ import annotations

import asyncio
import re
from typing import Dict, List, Optional

from config import settings
from app.domain.errors import MalformedProviderResponse, ProviderUnavailable
from app.domain.items import Item
from app.models.matches import TextComparison
from app.services.llm_providers import BaseTextProvider
from app.scripts.logging_config import get_logger, log_degradation

logger = get_logger("matching.text")

MISSING_DESCRIPTION_REASON = "One or both items missing description"

_PUNCT_RE = re.compile(r"[^\w\s]")
_MIN_TOKEN_LEN = 3


def normalize_text(text: Optional[str]) -> str:
    return " ".join(_PUNCT_RE.sub(" ", (text or "").lower()).split())


def tokenize(text: Optional[str]) -> List[str]:
    """Lowercased tokens without punctuation, dropping anything of 2 chars or less."""
    return [t for t in normalize_text(text).split() if len(t) >= _MIN_TOKEN_LEN]


def lexical_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Jaccard index over token sets; identical normalized strings score exactly 1.0."""
    norm_a, norm_b = normalize_text(a), normalize_text(b)
    if norm_a and norm_a == norm_b:
        return 1.0
    tokens_a, tokens_b = set(tokenize(a)), set(tokenize(b))
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def lexical_comparison(lost: Item, found: Item, threshold: Optional[float] = None) -> TextComparison:
    limit = settings.LEXICAL_MATCH_THRESHOLD if threshold is None else threshold
    sim = lexical_similarity(lost.description, found.description)
    return TextComparison(
        is_likely_match=sim >= limit,
        reason=f"Lexical overlap {sim:.2f} (threshold {limit:.2f})",
        confidence=round(100 * sim),
        source="lexical",
    )


class TextAnalyzer:
    def __init__(self, provider: Optional[BaseTextProvider], timeout: Optional[float] = None):
        self.provider = provider
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS

    async def compare(self, lost: Item, found: Item,
                      hints: Optional[Dict[str, str]] = None) -> TextComparison:
        if not (lost.description or "").strip() or not (found.description or "").strip():
            return TextComparison(is_likely_match=False, reason=MISSING_DESCRIPTION_REASON,
                                  confidence=0, source="none")
        if self.provider is None:
            return lexical_comparison(lost, found)

        provider_name = getattr(self.provider, "name", "text")
        try:
            return await asyncio.wait_for(
                self.provider.compare_descriptions(lost, found, hints), timeout=self.timeout)
        except asyncio.TimeoutError:
            log_degradation(provider_name, f"timeout after {self.timeout}s, lexical fallback", found.id)
        except ProviderUnavailable as e:
            log_degradation(provider_name, f"{e}, lexical fallback", found.id)
        except MalformedProviderResponse as e:
            logger.warning("malformed text comparison lost=%s found=%s: %s", lost.id, found.id, e.detail)
            return TextComparison(is_likely_match=False,
                                  reason=f"Malformed provider response: {e.detail}",
                                  confidence=0, source="provider")
        return lexical_comparison(lost, found)
