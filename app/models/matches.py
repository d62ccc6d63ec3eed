from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional

from app.domain.items import Item


class TextComparison(BaseModel):
    is_likely_match: bool
    reason: str
    confidence: float = Field(default=0.0, ge=0.0, le=100.0)
    source: Literal["provider", "lexical", "none"] = "provider"


class VisualComparison(BaseModel):
    score: int = 0  # 0-100
    label_overlap: float = 0.0
    object_overlap: float = 0.0
    color_similarity: float = 0.0  # 0-100, informational
    category_a: Optional[str] = None
    category_b: Optional[str] = None
    incompatible: bool = False
    adjustment: float = 0.0
    available: bool = True


class MatchEvaluation(BaseModel):
    score: float = Field(ge=0.0, le=100.0)
    reasoning: str = ""


class MatchCandidate(BaseModel):
    item: Item
    visual_score: float = 0.0
    text_score: float = 0.0
    final_score: float = Field(ge=0.0, le=100.0)
    reasoning: str = ""
    scorer: Literal["primary", "fallback"] = "primary"

    @property
    def score(self) -> float:
        return self.final_score


class NotificationIntent(BaseModel):
    user_id: str
    type: Literal["MATCH_FOUND", "MATCH_UPDATED", "SYSTEM_NOTIFICATION"] = "MATCH_FOUND"
    title: str
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)


class MatchReport(BaseModel):
    target_id: str
    matches: List[MatchCandidate] = Field(default_factory=list)
    notifications: List[NotificationIntent] = Field(default_factory=list)
    used_fallback: bool = False
