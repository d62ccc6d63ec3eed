"""Prompt builder for the two LLM calls made during matching.

build_compare_messages    -> description comparison ({isTextLikelyMatch, reason, confidence})
build_evaluation_messages -> final weighted rubric ({confidenceScore, reasoning})

Both return chat-completion message lists. Deterministic hints computed
locally (distance, elapsed time, brand relations) are injected as an extra
system message so the model does not have to guess them.
"""
from __future__ import annotations
from typing import Dict, List, Optional

from app.domain.items import Item, describe_location
from app.domain.match_tables import BRAND_RELATIONSHIPS, MATCH_TABLES_VERSION
from app.models.matches import TextComparison, VisualComparison

MessageDict = Dict[str, str]

COMPARE_SYSTEM_PROMPT = (
    "You are an expert assistant for a Lost & Found platform, specializing in semantic analysis "
    "of item descriptions. You answer with JSON only."
)

EVALUATE_SYSTEM_PROMPT = (
    "You are an expert match evaluator for a Lost & Found platform, specializing in multi-factor "
    "item matching. You answer with JSON only."
)


def _item_block(title: str, item: Item, when_label: str) -> str:
    when = item.timestamp.isoformat() if item.timestamp else "N/A"
    return (
        f"{title}:\n"
        f"Description: \"{item.description or ''}\"\n"
        f"Category: {item.category or 'N/A'}\n"
        f"{when_label}: {when}\n"
        f"Location: {describe_location(item.location)}"
    )


def _brand_rules_text() -> str:
    lines = []
    for group, (generic, brands) in BRAND_RELATIONSHIPS.items():
        lines.append(f"- \"{'/'.join(generic)}\" descriptions match with: {', '.join(b.title() for b in brands)}")
    return "\n".join(lines)


def _hints_message(hints: Optional[Dict[str, str]]) -> List[MessageDict]:
    if not hints:
        return []
    lines = ["[MATCH HINTS]"] + [f"{k}: {v}" for k, v in hints.items()]
    return [{"role": "system", "content": "\n".join(lines)}]


def build_compare_messages(lost: Item, found: Item, hints: Optional[Dict[str, str]] = None) -> List[MessageDict]:
    user = f"""We have two items, one lost and one found. Determine whether they could be the same item.

{_item_block("LOST ITEM DETAILS", lost, "Date Lost")}

{_item_block("FOUND ITEM DETAILS", found, "Date Found")}

Consider:
1. Category match (exact matches are highly significant; related categories count).
2. Key identifying features: color, size, brand, model, distinctive marks, condition, contents.
3. Language variations: synonyms, brand/model variations, misspellings, regional terms.
4. Temporal and spatial logic: the found date must be after the lost date; geography must be feasible.

Respond ONLY with valid JSON, no markdown, no backticks:
{{"isTextLikelyMatch": true/false, "reason": "your reasoning", "confidence": number}}

confidence is between 0 and 100. Set isTextLikelyMatch to true only if there is strong evidence
these are the same item."""
    return [
        {"role": "system", "content": COMPARE_SYSTEM_PROMPT},
        *_hints_message(hints),
        {"role": "user", "content": user},
    ]


def build_evaluation_messages(lost: Item, found: Item, text_result: TextComparison,
                              visual_result: VisualComparison,
                              hints: Optional[Dict[str, str]] = None) -> List[MessageDict]:
    user = f"""Perform a comprehensive analysis of how likely these two items are the same.

{_item_block("LOST ITEM", lost, "Date Lost")}

{_item_block("FOUND ITEM", found, "Date Found")}

TEXT COMPARISON RESULT:
Match Likelihood: {"Likely Match" if text_result.is_likely_match else "Not Likely Match"}
Confidence: {text_result.confidence:.0f}/100
Reasoning: {text_result.reason}

VISUAL SIMILARITY: {visual_result.score}/100 (labels {visual_result.label_overlap:.2f}, objects {visual_result.object_overlap:.2f}, colors {visual_result.color_similarity:.0f}/100, buckets {visual_result.category_a or 'n/a'} vs {visual_result.category_b or 'n/a'}{", INCOMPATIBLE" if visual_result.incompatible else ""})

SCORING COMPONENTS:
1. VISUAL SIMILARITY (45% of total): start from the visual similarity score; only penalize severe visual mismatches.
2. CATEGORY & DESCRIPTION MATCH (35%): exact category 35, related category 25, brand match or related brands +20,
   specific detail matches +10 each.
3. TEMPORAL LOGIC (10%): found after lost is required. Same day 10, within 3 days 8, within a week 6, within a month 3.
4. LOCATION (10%): same place 10, within 1km 8, within 5km 6, same city 3.

BRAND RELATIONSHIP RULES (tables {MATCH_TABLES_VERSION}); treat these as near-matches:
{_brand_rules_text()}

CONFIDENCE GUIDELINES:
95-100 near certain, 85-94 very strong, 75-84 strong, 65-74 probable, 55-64 possible, 0-54 unlikely.

Respond ONLY with valid JSON:
{{"confidenceScore": number, "reasoning": string}}
confidenceScore is between 0 and 100."""
    return [
        {"role": "system", "content": EVALUATE_SYSTEM_PROMPT},
        *_hints_message(hints),
        {"role": "user", "content": user},
    ]
