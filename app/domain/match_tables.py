"""Versioned lookup tables used by the visual analyzer and the match evaluator.

These are hand-curated; bump ``MATCH_TABLES_VERSION`` whenever an entry
changes so that logged scores can be traced back to the table set that
produced them.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

MATCH_TABLES_VERSION = "2024.1"


# ------------------------------------------------------------------------------
# Detection correction rules
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class CorrectionRule:
    """One "misidentification" fix applied to a signature before scoring.

    The rule fires when at least ``min_evidence`` label/web terms contain one
    of ``evidence_terms``. A firing rule renames detections listed in
    ``relabel`` to ``corrected_name``, optionally adds ``corrected_name`` as a
    detection when none exists, and raises matching detections to at least
    ``confidence``.
    """
    name: str
    evidence_terms: Tuple[str, ...]
    corrected_name: str
    confidence: float
    min_evidence: int = 2
    relabel: Tuple[str, ...] = ()
    add_if_missing: bool = True
    add_label: bool = False
    # substring that marks an existing detection as already corrected
    present_marker: Optional[str] = None

    def __post_init__(self):
        if self.min_evidence < 1:
            raise ValueError(f"rule {self.name}: min_evidence must be >= 1")
        if not self.evidence_terms:
            raise ValueError(f"rule {self.name}: evidence_terms must not be empty")
        if not 0.0 < self.confidence <= 1.0:
            raise ValueError(f"rule {self.name}: confidence must be in (0, 1]")

    @property
    def marker(self) -> str:
        return (self.present_marker or self.corrected_name).lower()


CORRECTION_RULES: Tuple[CorrectionRule, ...] = (
    # Dark rectangular speakers are routinely detected as wallets/purses.
    CorrectionRule(
        name="audio_device_as_wallet",
        evidence_terms=("speaker", "audio", "loudspeaker", "sound", "stereo"),
        relabel=("wallet", "purse"),
        corrected_name="Loudspeaker",
        present_marker="speaker",
        confidence=0.95,
        min_evidence=2,
        add_label=True,
    ),
    CorrectionRule(
        name="headphones_missing",
        evidence_terms=("headphone", "earphone", "earbuds", "headset"),
        corrected_name="Headphone",
        present_marker="headphone",
        confidence=0.85,
        min_evidence=2,
    ),
    CorrectionRule(
        name="camera_missing",
        evidence_terms=("camera", "digital camera", "dslr", "photography"),
        corrected_name="Camera",
        present_marker="camera",
        confidence=0.85,
        min_evidence=2,
    ),
)

# Detections whose name contains one of these keys never score below the floor.
CONFIDENCE_FLOORS: Dict[str, float] = {
    "speaker": 0.95,
}


# ------------------------------------------------------------------------------
# Product buckets
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class ProductCategory:
    name: str
    terms: Tuple[str, ...]
    subcategories: Dict[str, Tuple[str, ...]] = field(default_factory=dict)


PRODUCT_CATEGORIES: Tuple[ProductCategory, ...] = (
    ProductCategory(
        name="electronics",
        terms=(
            "speaker", "audio", "sound", "bluetooth", "wireless", "electronics",
            "device", "gadget", "headphone", "earphone", "stereo", "amplifier",
            "electronic device", "technology", "portable speaker", "audio equipment",
            "loudspeaker", "boombox", "subwoofer", "woofer", "tweeter", "soundbar",
            "phone", "smartphone", "cell phone", "mobile phone", "iphone", "android",
            "laptop", "computer", "tablet", "ipad", "camera", "digital camera",
            "video camera", "webcam", "charger", "cable", "usb", "adapter", "power bank",
            "earbuds", "headset", "smartwatch", "wearable", "fitness tracker",
        ),
        subcategories={
            "audio": ("speaker", "headphone", "earphone", "earbuds", "loudspeaker", "soundbar", "audio"),
            "mobile": ("phone", "smartphone", "cell phone", "mobile phone", "iphone", "android"),
            "computing": ("laptop", "computer", "tablet", "ipad"),
            "power": ("charger", "cable", "usb", "adapter", "power bank"),
            "wearable": ("smartwatch", "wearable", "fitness tracker"),
        },
    ),
    ProductCategory(
        name="clothing",
        terms=(
            "clothing", "apparel", "jacket", "coat", "shirt", "tshirt", "t-shirt",
            "sweater", "hoodie", "pants", "jeans", "trousers", "shorts", "skirt",
            "dress", "sock", "glove", "hat", "cap", "beanie", "scarf", "shoe",
            "sneaker", "boot", "sandal", "high heel", "sweatshirt", "belt",
        ),
        subcategories={
            "outerwear": ("jacket", "coat", "sweater", "hoodie"),
            "tops": ("shirt", "tshirt", "t-shirt", "sweatshirt"),
            "bottoms": ("pants", "jeans", "trousers", "shorts", "skirt"),
            "footwear": ("shoe", "sneaker", "boot", "sandal"),
        },
    ),
    ProductCategory(
        name="accessories",
        terms=(
            "bag", "handbag", "purse", "wallet", "backpack", "luggage", "suitcase",
            "umbrella", "jewelry", "necklace", "bracelet", "ring", "earring",
            "watch", "sunglasses", "glasses", "eyeglasses", "keychain", "key",
        ),
        subcategories={
            "wallets": ("wallet", "purse", "card holder"),
            "bags": ("bag", "handbag", "backpack", "luggage", "suitcase"),
            "jewelry": ("jewelry", "necklace", "bracelet", "ring", "earring"),
            "eyewear": ("sunglasses", "glasses", "eyeglasses"),
        },
    ),
    ProductCategory(
        name="documents",
        terms=(
            "document", "paper", "card", "identification", "passport",
            "license", "certificate", "book", "notebook", "diary", "folder",
            "letter", "envelope", "ticket", "receipt", "credit card",
            "debit card", "business card", "id card",
        ),
    ),
)

UNKNOWN_CATEGORY = "unknown"

# Bucket pairs that can never be the same physical item. Keys are category or
# subcategory names from PRODUCT_CATEGORIES; the relation is symmetric.
INCOMPATIBLE_BUCKETS: FrozenSet[FrozenSet[str]] = frozenset({
    frozenset({"electronics", "accessories"}),
    frozenset({"audio", "documents"}),
    frozenset({"mobile", "documents"}),
    frozenset({"audio", "clothing"}),
    frozenset({"computing", "clothing"}),
})

INCOMPATIBLE_ADJUSTMENT = -0.5


# ------------------------------------------------------------------------------
# Brand relationships (evaluator)
# ------------------------------------------------------------------------------
BRAND_RELATIONSHIPS: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    # group: (generic descriptors, brands)
    "luxury": (
        ("designer", "luxury"),
        ("gucci", "prada", "louis vuitton", "chanel", "hermes", "dior", "burberry", "fendi"),
    ),
    "sports": (
        ("sports", "athletic", "sporty"),
        ("nike", "adidas", "puma", "under armour", "reebok", "new balance", "asics"),
    ),
    "tech": (
        ("tech", "electronics", "electronic"),
        ("apple", "samsung", "sony", "bose", "jbl", "lg", "xiaomi", "huawei"),
    ),
}


def brand_groups_in(text: str) -> Dict[str, List[str]]:
    """Map brand group -> terms of that group found in ``text`` (lowercase)."""
    lowered = text.lower()
    found: Dict[str, List[str]] = {}
    for group, (generic, brands) in BRAND_RELATIONSHIPS.items():
        hits = [t for t in (*generic, *brands) if re.search(rf"\b{re.escape(t)}\b", lowered)]
        if hits:
            found[group] = hits
    return found
