"""Item persistence: an in-memory store for tests/local runs and a Firestore one.

Firestore layout: one document per item in ``settings.ITEMS_COLLECTION``,
document id == item id, fields = ``Item`` dumped in JSON mode (without ``id``).
"""
from __future__ import annotations

import abc
import json
import threading
from typing import Any, Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, firestore

from config import settings
from app.domain.errors import ItemNotFound
from app.domain.items import Item, ItemType
from app.scripts.logging_config import get_logger

logger = get_logger(__name__)


class BaseItemStore(abc.ABC):
    @abc.abstractmethod
    def create(self, item: Item) -> Item:
        ...

    @abc.abstractmethod
    def get(self, item_id: str) -> Optional[Item]:
        ...

    @abc.abstractmethod
    def update(self, item_id: str, **fields: Any) -> Item:
        ...

    @abc.abstractmethod
    def find_candidates(self, item_type: ItemType, exclude_resolved: bool = True) -> List[Item]:
        ...


class InMemoryItemStore(BaseItemStore):
    """Dict-backed store; iteration order is insertion order."""

    def __init__(self, items: Optional[List[Item]] = None):
        self._lock = threading.Lock()
        self._items: Dict[str, Item] = {}
        for item in items or []:
            self.create(item)

    def create(self, item: Item) -> Item:
        with self._lock:
            self._items[item.id] = item.model_copy(deep=True)
        return item

    def get(self, item_id: str) -> Optional[Item]:
        with self._lock:
            item = self._items.get(item_id)
            return item.model_copy(deep=True) if item else None

    def update(self, item_id: str, **fields: Any) -> Item:
        with self._lock:
            current = self._items.get(item_id)
            if current is None:
                raise ItemNotFound(item_id)
            updated = Item.model_validate({**current.model_dump(), **fields})
            self._items[item_id] = updated
            return updated.model_copy(deep=True)

    def find_candidates(self, item_type: ItemType, exclude_resolved: bool = True) -> List[Item]:
        with self._lock:
            return [
                i.model_copy(deep=True) for i in self._items.values()
                if i.item_type is item_type and not (exclude_resolved and i.is_resolved)
            ]


# ------------------------------------------------------------------------------
# Firestore
# ------------------------------------------------------------------------------
def init_firebase() -> bool:
    """Initialise the default firebase app once. Returns False without credentials."""
    if firebase_admin._apps:
        return True
    cred_obj = None
    if settings.FIREBASE_CREDENTIALS_JSON_STRING:
        cred_obj = credentials.Certificate(json.loads(settings.FIREBASE_CREDENTIALS_JSON_STRING))
        logger.info("Firebase credentials loaded from FIREBASE_CREDENTIALS_JSON_STRING.")
    elif settings.GOOGLE_APPLICATION_CREDENTIALS:
        cred_obj = credentials.Certificate(settings.GOOGLE_APPLICATION_CREDENTIALS)
        logger.info("Firebase credentials loaded from GOOGLE_APPLICATION_CREDENTIALS file.")
    if cred_obj is None:
        logger.warning("Firebase credentials not found. Firestore features are disabled.")
        return False
    firebase_admin.initialize_app(cred_obj)
    logger.info("Firebase initialized successfully.")
    return True


_db = None


def get_db():
    global _db
    if _db is None:
        init_firebase()
        _db = firestore.client()
    return _db


def _to_doc(item: Item) -> Dict[str, Any]:
    data = item.model_dump(mode="json", exclude={"id"})
    data["timestamp"] = item.timestamp  # native Firestore timestamp
    return data


def _from_doc(doc_id: str, data: Dict[str, Any]) -> Item:
    return Item.model_validate({**data, "id": doc_id})


class FirestoreItemStore(BaseItemStore):
    def __init__(self, db=None, collection: Optional[str] = None):
        self._db = db
        self.collection = collection or settings.ITEMS_COLLECTION

    @property
    def db(self):
        if self._db is None:
            self._db = get_db()
        return self._db

    def _col(self):
        return self.db.collection(self.collection)

    def create(self, item: Item) -> Item:
        self._col().document(item.id).set(_to_doc(item))
        logger.info("item created id=%s type=%s", item.id, item.item_type.value)
        return item

    def get(self, item_id: str) -> Optional[Item]:
        snap = self._col().document(item_id).get()
        if not snap.exists:
            return None
        return _from_doc(snap.id, snap.to_dict() or {})

    def update(self, item_id: str, **fields: Any) -> Item:
        current = self.get(item_id)
        if current is None:
            raise ItemNotFound(item_id)
        updated = Item.model_validate({**current.model_dump(), **fields})
        self._col().document(item_id).set(_to_doc(updated))
        return updated

    def find_candidates(self, item_type: ItemType, exclude_resolved: bool = True) -> List[Item]:
        query = self._col().where("item_type", "==", item_type.value)
        if exclude_resolved:
            query = query.where("is_resolved", "==", False)
        items: List[Item] = []
        for snap in query.stream():
            try:
                items.append(_from_doc(snap.id, snap.to_dict() or {}))
            except ValueError as e:
                logger.warning("skip unreadable item doc id=%s: %s", snap.id, e)
        return items
