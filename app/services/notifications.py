"""Match notification delivery with a per-recipient cooldown.

The first notification to a user opens a cooldown window; anything else for
that user inside the window is dropped (not queued, not merged). Delivery is
fire-and-forget: sink failures are logged, never raised to the matcher.
"""
from __future__ import annotations

import abc
import asyncio
import smtplib
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Optional, Sequence

from firebase_admin import auth

from config import settings
from app.models.matches import NotificationIntent
from app.scripts.logging_config import get_logger

logger = get_logger("matching.notify")


@dataclass
class CooldownEntry:
    user_id: str
    window_start: float
    active: bool = True


class CooldownTracker:
    def __init__(self, cooldown_seconds: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.cooldown_seconds = float(settings.NOTIFY_COOLDOWN_SECONDS
                                      if cooldown_seconds is None else cooldown_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CooldownEntry] = {}

    def _expired(self, entry: CooldownEntry, now: float) -> bool:
        return now - entry.window_start >= self.cooldown_seconds

    def try_acquire(self, user_id: str) -> bool:
        """Open a window for ``user_id`` unless one is active. Check and set are atomic."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is not None and entry.active and not self._expired(entry, now):
                return False
            self._entries[user_id] = CooldownEntry(user_id=user_id, window_start=now)
            return True

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [uid for uid, e in self._entries.items() if self._expired(e, now)]
            for uid in expired:
                self._entries[uid].active = False
                del self._entries[uid]
        if expired:
            logger.debug("cooldown sweep purged %d window(s)", len(expired))
        return len(expired)

    async def run_sweeper(self) -> None:
        """Sweep every cooldown interval until cancelled."""
        while True:
            await asyncio.sleep(self.cooldown_seconds)
            self.sweep()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ------------------------------------------------------------------------------
# Sinks
# ------------------------------------------------------------------------------
class NotificationSink(abc.ABC):
    @abc.abstractmethod
    def emit(self, user_id: str, payload: Dict[str, Any]) -> None:
        ...


def _payload(intent: NotificationIntent) -> Dict[str, Any]:
    return {"type": intent.type, "title": intent.title, "message": intent.message, "data": intent.data}


class LoggingNotificationSink(NotificationSink):
    def emit(self, user_id: str, payload: Dict[str, Any]) -> None:
        logger.info("notify user=%s type=%s title=%s data=%s",
                    user_id, payload.get("type"), payload.get("title"), payload.get("data"))


class FirestoreNotificationSink(NotificationSink):
    """Writes notification documents the client app reads."""

    def __init__(self, db=None, collection: Optional[str] = None):
        self._db = db
        self.collection = collection or settings.NOTIFICATIONS_COLLECTION

    @property
    def db(self):
        if self._db is None:
            from app.services.item_store import get_db
            self._db = get_db()
        return self._db

    def emit(self, user_id: str, payload: Dict[str, Any]) -> None:
        doc = {
            "user_id": user_id,
            "type": payload.get("type"),
            "title": payload.get("title"),
            "message": payload.get("message"),
            "data": payload.get("data") or {},
            "is_read": False,
            "created_at": datetime.now(timezone.utc),
        }
        self.db.collection(self.collection).add(doc)
        logger.info("notification stored user=%s type=%s", user_id, doc["type"])


def resolve_user_email(user_id: str) -> Optional[str]:
    try:
        rec = auth.get_user(user_id)
    except (auth.UserNotFoundError, ValueError) as e:
        logger.warning("user_email_lookup_failed user=%s err=%s", user_id, e)
        return None
    if not rec.email:
        logger.warning("user_email_missing user=%s", user_id)
    return rec.email


class EmailNotificationSink(NotificationSink):
    def __init__(self, email_resolver: Callable[[str], Optional[str]] = resolve_user_email):
        self.email_resolver = email_resolver

    def send_email(self, to_address: str, subject: str, body: str) -> bool:
        if not settings.SMTP_HOST:
            logger.warning("email_skip_no_smtp to=%s", to_address)
            return False
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = settings.SMTP_SENDER
        msg["To"] = to_address
        msg.set_content(body)
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=20) as server:
            server.starttls()
            if settings.SMTP_USER and settings.SMTP_PASS:
                server.login(settings.SMTP_USER, settings.SMTP_PASS)
            server.send_message(msg)
        logger.info("email_sent to=%s subject=%s size=%d", to_address, subject, len(body))
        return True

    def emit(self, user_id: str, payload: Dict[str, Any]) -> None:
        to_address = self.email_resolver(user_id)
        if not to_address:
            logger.info("email_skip_no_address user=%s", user_id)
            return
        data = payload.get("data") or {}
        body = "\n".join([
            payload.get("message") or "",
            "",
            f"Lost item: {data.get('lost_item_id', '-')}",
            f"Found item: {data.get('found_item_id', '-')}",
            f"Score: {data.get('score', '-')}",
        ])
        self.send_email(to_address, payload.get("title") or "Match notification", body)


# ------------------------------------------------------------------------------
# Dispatcher
# ------------------------------------------------------------------------------
class NotificationDispatcher:
    def __init__(self, sink: NotificationSink, tracker: Optional[CooldownTracker] = None):
        self.sink = sink
        self.tracker = tracker or CooldownTracker()

    def dispatch(self, intents: Sequence[NotificationIntent]) -> List[NotificationIntent]:
        """Deliver what the cooldown admits; returns the intents actually handed to the sink."""
        delivered: List[NotificationIntent] = []
        for intent in intents:
            if not self.tracker.try_acquire(intent.user_id):
                logger.debug("notification suppressed (cooldown) user=%s title=%s", intent.user_id, intent.title)
                continue
            try:
                self.sink.emit(intent.user_id, _payload(intent))
            except Exception as e:
                logger.error("notification sink failed user=%s: %s: %s", intent.user_id, type(e).__name__, e)
                continue
            delivered.append(intent)
        return delivered
