"""Error taxonomy for the matching core.

Provider errors never reach callers of the orchestrator: analyzers turn them
into degraded scores. Only the evaluator lets ``ProviderUnavailable`` through,
which makes the orchestrator rescore the whole batch with the fallback rubric.
"""
from __future__ import annotations
from typing import Optional


class MatchingError(Exception):
    """Base class for everything raised inside the matching core."""


class ProviderUnavailable(MatchingError):
    """Network, auth, quota or missing-credential failure of a remote provider."""

    def __init__(self, provider: str, detail: str = ""):
        self.provider = provider
        self.detail = detail
        super().__init__(f"{provider} unavailable: {detail}" if detail else f"{provider} unavailable")


class MalformedProviderResponse(MatchingError):
    """Provider answered but the payload does not match the expected schema."""

    def __init__(self, provider: str, detail: str = "", raw: Optional[str] = None):
        self.provider = provider
        self.detail = detail
        self.raw = raw
        super().__init__(f"malformed response from {provider}: {detail}")


class InvalidItemData(MatchingError):
    """Item lacks the fields needed to compare it (e.g. no image reference)."""

    def __init__(self, item_id: Optional[str], detail: str):
        self.item_id = item_id
        self.detail = detail
        super().__init__(f"invalid item {item_id or '<new>'}: {detail}")


class ItemNotFound(MatchingError):
    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"item not found: {item_id}")


class NotItemOwner(MatchingError):
    def __init__(self, item_id: str, user_id: str):
        self.item_id = item_id
        self.user_id = user_id
        super().__init__(f"user {user_id} does not own item {item_id}")
