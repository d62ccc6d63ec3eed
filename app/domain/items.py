"""Lost / found item data model.

``Location`` is a closed union discriminated on ``kind``; code that needs
coordinates asks for ``Coordinates`` explicitly and treats every other variant
as "distance unknown".
"""
from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ItemType(str, Enum):
    LOST = "lost"
    FOUND = "found"

    @property
    def opposite(self) -> "ItemType":
        return ItemType.FOUND if self is ItemType.LOST else ItemType.LOST


# ------------------------------------------------------------------------------
# Location
# ------------------------------------------------------------------------------
class UnknownLocation(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["unknown"] = "unknown"


class TextLocation(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["text"] = "text"
    text: str


class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)
    kind: Literal["coordinates"] = "coordinates"
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

    @field_validator("lat", "lng")
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("coordinate must be finite")
        return v


Location = Annotated[Union[UnknownLocation, TextLocation, Coordinates], Field(discriminator="kind")]

UNKNOWN_LOCATION = UnknownLocation()


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _coords_from_mapping(raw: dict) -> Optional[Coordinates]:
    lat = lng = None
    if "lat" in raw and "lng" in raw:
        lat, lng = _as_number(raw.get("lat")), _as_number(raw.get("lng"))
    elif isinstance(raw.get("coordinates"), (list, tuple)) and len(raw["coordinates"]) >= 2:
        # GeoJSON order: [lng, lat]
        lng, lat = _as_number(raw["coordinates"][0]), _as_number(raw["coordinates"][1])
    if lat is None or lng is None:
        return None
    try:
        return Coordinates(lat=lat, lng=lng)
    except ValueError:
        return None


def parse_location(raw: Any) -> Union[UnknownLocation, TextLocation, Coordinates]:
    """Turn a loosely typed location value into the ``Location`` union.

    Accepts an existing variant, ``None``/empty, ``{"lat", "lng"}`` or GeoJSON
    mappings, JSON strings carrying either mapping, and free text. Nothing that
    fails to parse is ever turned into a coordinate.
    """
    if isinstance(raw, (UnknownLocation, TextLocation, Coordinates)):
        return raw
    if raw is None:
        return UNKNOWN_LOCATION
    if isinstance(raw, dict):
        if raw.get("kind") == "text" and isinstance(raw.get("text"), str):
            return parse_location(raw["text"])
        coords = _coords_from_mapping(raw)
        return coords if coords is not None else UNKNOWN_LOCATION
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return UNKNOWN_LOCATION
        if text.startswith("{"):
            try:
                decoded = json.loads(text)
            except ValueError:
                decoded = None
            if isinstance(decoded, dict):
                coords = _coords_from_mapping(decoded)
                if coords is not None:
                    return coords
        return TextLocation(text=text)
    return UNKNOWN_LOCATION


def describe_location(location: Union[UnknownLocation, TextLocation, Coordinates]) -> str:
    if isinstance(location, Coordinates):
        return f"Latitude: {location.lat}, Longitude: {location.lng}"
    if isinstance(location, TextLocation):
        return location.text
    if isinstance(location, UnknownLocation):
        return "N/A"
    raise TypeError(f"unsupported location variant: {type(location).__name__}")


# ------------------------------------------------------------------------------
# Visual signature
# ------------------------------------------------------------------------------
class BoundingBox(BaseModel):
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0


class DetectedObject(BaseModel):
    name: str
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    bounding_box: Optional[BoundingBox] = None


class DominantColor(BaseModel):
    red: float = 0.0
    green: float = 0.0
    blue: float = 0.0
    score: float = 0.0
    pixel_fraction: float = 0.0


class VisualSignature(BaseModel):
    labels: List[str] = Field(default_factory=list)
    objects: List[DetectedObject] = Field(default_factory=list)
    dominant_colors: List[DominantColor] = Field(default_factory=list)
    web_entities: List[str] = Field(default_factory=list)
    best_guess_labels: List[str] = Field(default_factory=list)

    def evidence_terms(self) -> List[str]:
        """Labels and web-derived terms; object names are not evidence for themselves."""
        return [*self.labels, *self.web_entities, *self.best_guess_labels]

    def all_terms(self) -> List[str]:
        return [*self.evidence_terms(), *(o.name for o in self.objects)]


# ------------------------------------------------------------------------------
# Item
# ------------------------------------------------------------------------------
class Item(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str
    user_id: str
    item_type: ItemType
    image_url: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    location: Location = Field(default_factory=UnknownLocation)
    timestamp: Optional[datetime] = None
    visual_signature: Optional[VisualSignature] = None
    is_resolved: bool = False
    matched_item_id: Optional[str] = None

    @field_validator("location", mode="before")
    @classmethod
    def _coerce_location(cls, v: Any):
        return parse_location(v)

    @property
    def is_lost(self) -> bool:
        return self.item_type is ItemType.LOST


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are taken as UTC so mixed records stay comparable."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def orient_pair(a: Item, b: Item) -> tuple[Item, Item]:
    """Return ``(lost, found)`` for two items of opposite type."""
    if a.item_type is b.item_type:
        raise ValueError(f"items {a.id} and {b.id} are both {a.item_type.value}")
    return (a, b) if a.is_lost else (b, a)
