from __future__ import annotations

import re
import string
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple
from urllib.parse import quote

from config import settings
from app.domain.items import VisualSignature

# characters left unescaped when re-encoding an image reference
_SAFE_URL_CHARS = ":/?#[]@!$&'()*+,;=%~-._"
_UNRESERVED = frozenset(string.ascii_letters + string.digits + "-._~")
_ESCAPE_RE = re.compile(r"%([0-9A-Fa-f]{2})")


def _decode_unreserved(m: "re.Match[str]") -> str:
    ch = chr(int(m.group(1), 16))
    return ch if ch in _UNRESERVED else "%" + m.group(1).upper()


def normalize_image_ref(ref: str) -> str:
    """Canonical cache key for an image reference.

    Backslashes become '/', escapes of unreserved characters are decoded,
    other escapes are upper-cased and kept, remaining unsafe characters are
    escaped, and a trailing slash is dropped. ``a%20b`` and ``a b`` share a
    key; ``%26`` and ``&`` do not.
    """
    text = (ref or "").strip().replace("\\", "/")
    text = quote(_ESCAPE_RE.sub(_decode_unreserved, text), safe=_SAFE_URL_CHARS)
    while text.endswith("/") and not text.endswith("://"):
        text = text[:-1]
    return text


class SignatureCache:
    """Visual signatures keyed by normalized image reference.

    Entries expire ``ttl_seconds`` after being written; expiry is checked on
    read only. Access is guarded by a lock because concurrent scoring tasks
    (and executor threads) share one instance. Entries are immutable, so a
    concurrent overwrite of the same key is harmless.
    """

    def __init__(self, ttl_seconds: Optional[float] = None, maxsize: int = 5000,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(settings.SIGNATURE_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds)
        self.maxsize = maxsize
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, Tuple[float, VisualSignature]]" = OrderedDict()

    def get(self, image_ref: str) -> Optional[VisualSignature]:
        key = normalize_image_ref(image_ref)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            written_at, signature = entry
            if self._clock() - written_at >= self.ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key, last=True)
            return signature

    def put(self, image_ref: str, signature: VisualSignature) -> None:
        key = normalize_image_ref(image_ref)
        with self._lock:
            self._entries[key] = (self._clock(), signature)
            self._entries.move_to_end(key, last=True)
            if len(self._entries) > self.maxsize:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, image_ref: str) -> bool:
        return self.get(image_ref) is not None
