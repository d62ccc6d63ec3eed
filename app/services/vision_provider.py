"""Visual feature provider abstraction.

Usage:
  from app.services.vision_provider import get_visual_provider
  provider = get_visual_provider()
  signature = await provider.analyze("https://.../wallet.jpg")

Providers:
    - GoogleVisionProvider: Google Cloud Vision ``images:annotate`` over REST

Add new provider by implementing BaseVisualProvider. ``analyze`` raises
ProviderUnavailable / MalformedProviderResponse; callers decide how to degrade.
"""
from __future__ import annotations

import abc
import asyncio
import base64
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp

from config import settings
from app.domain.errors import MalformedProviderResponse, ProviderUnavailable
from app.domain.items import BoundingBox, DetectedObject, DominantColor, VisualSignature
from app.scripts.logging_config import get_logger

logger = get_logger("matching.vision")

USER_AGENT = "Mozilla/5.0 (compatible; LostFoundMatcher/1.0)"


class BaseVisualProvider(abc.ABC):
    name: str

    @abc.abstractmethod
    async def analyze(self, image_ref: str) -> VisualSignature:
        ...


def _bounding_box(poly: Optional[Dict[str, Any]]) -> Optional[BoundingBox]:
    vertices = (poly or {}).get("normalizedVertices") or []
    if not vertices:
        return None
    first = vertices[0] if len(vertices) > 0 else {}
    second = vertices[1] if len(vertices) > 1 else {}
    third = vertices[2] if len(vertices) > 2 else {}
    return BoundingBox(
        x=first.get("x", 0.0) or 0.0,
        y=first.get("y", 0.0) or 0.0,
        width=abs((second.get("x", 0.0) or 0.0) - (first.get("x", 0.0) or 0.0)),
        height=abs((third.get("y", 0.0) or 0.0) - (first.get("y", 0.0) or 0.0)),
    )


def parse_annotate_response(payload: Dict[str, Any]) -> VisualSignature:
    """Convert one ``images:annotate`` response body into a signature."""
    responses = payload.get("responses") if isinstance(payload, dict) else None
    if not responses:
        raise MalformedProviderResponse("google_vision", "empty responses")
    result = responses[0] or {}
    if "error" in result:
        err = result["error"] or {}
        raise ProviderUnavailable("google_vision", f"{err.get('code')}: {err.get('message')}")
    try:
        labels = [a["description"] for a in result.get("labelAnnotations") or [] if a.get("description")]
        objects = [
            DetectedObject(
                name=o["name"],
                score=min(1.0, max(0.0, float(o.get("score") or 0.0))),
                bounding_box=_bounding_box(o.get("boundingPoly")),
            )
            for o in result.get("localizedObjectAnnotations") or []
            if o.get("name")
        ]
        web = result.get("webDetection") or {}
        web_entities = [e["description"] for e in web.get("webEntities") or [] if e.get("description")]
        best_guesses = [g["label"] for g in web.get("bestGuessLabels") or [] if g.get("label")]
        colors_raw = ((result.get("imagePropertiesAnnotation") or {}).get("dominantColors") or {}).get("colors") or []
        colors_raw = sorted(colors_raw, key=lambda c: c.get("score") or 0.0, reverse=True)[:5]
        colors = [
            DominantColor(
                red=(c.get("color") or {}).get("red", 0) or 0,
                green=(c.get("color") or {}).get("green", 0) or 0,
                blue=(c.get("color") or {}).get("blue", 0) or 0,
                score=c.get("score") or 0.0,
                pixel_fraction=c.get("pixelFraction") or 0.0,
            )
            for c in colors_raw
        ]
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedProviderResponse("google_vision", str(e)) from e
    return VisualSignature(
        labels=labels,
        objects=objects,
        dominant_colors=colors,
        web_entities=web_entities,
        best_guess_labels=best_guesses,
    )


class GoogleVisionProvider(BaseVisualProvider):
    name = "google_vision"

    def __init__(self, api_key: Optional[str] = None, api_url: Optional[str] = None,
                 timeout: Optional[float] = None, max_results: Optional[int] = None):
        self.api_key = api_key if api_key is not None else settings.GOOGLE_CLOUD_VISION_API_KEY
        self.api_url = api_url or settings.VISION_API_URL
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self.max_results = max_results or settings.VISION_MAX_RESULTS
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        self.session = self._new_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.session = None

    def _new_session(self) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        return aiohttp.ClientSession(timeout=timeout, headers={"User-Agent": USER_AGENT})

    def _image_payload(self, image_ref: str) -> Dict[str, Any]:
        if image_ref.startswith(("http://", "https://", "gs://")):
            return {"source": {"imageUri": image_ref}}
        path = Path(image_ref)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ProviderUnavailable(self.name, f"cannot read local image {image_ref}: {e}") from e
        return {"content": base64.b64encode(data).decode("ascii")}

    def _request_body(self, image_ref: str) -> Dict[str, Any]:
        return {
            "requests": [{
                "image": self._image_payload(image_ref),
                "features": [
                    {"type": "LABEL_DETECTION", "maxResults": self.max_results},
                    {"type": "OBJECT_LOCALIZATION", "maxResults": self.max_results},
                    {"type": "WEB_DETECTION", "maxResults": 15},
                    {"type": "IMAGE_PROPERTIES", "maxResults": 5},
                ],
                "imageContext": {"languageHints": ["en"]},
            }]
        }

    async def _post(self, session: aiohttp.ClientSession, body: Dict[str, Any]) -> Dict[str, Any]:
        async with session.post(self.api_url, params={"key": self.api_key}, json=body) as resp:
            if resp.status in (401, 403):
                raise ProviderUnavailable(self.name, f"authentication failed (HTTP {resp.status})")
            if resp.status == 429:
                raise ProviderUnavailable(self.name, "rate limit exceeded (HTTP 429)")
            if resp.status != 200:
                text = await resp.text()
                raise ProviderUnavailable(self.name, f"HTTP {resp.status}: {text[:200]}")
            try:
                return await resp.json(content_type=None)
            except ValueError as e:
                raise MalformedProviderResponse(self.name, "response is not JSON") from e

    async def analyze(self, image_ref: str) -> VisualSignature:
        if not self.api_key:
            raise ProviderUnavailable(self.name, "GOOGLE_CLOUD_VISION_API_KEY missing")
        body = self._request_body(image_ref)
        try:
            if self.session is not None:
                payload = await self._post(self.session, body)
            else:
                async with self._new_session() as session:
                    payload = await self._post(session, body)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderUnavailable(self.name, f"{type(e).__name__}: {str(e)[:180]}") from e
        signature = parse_annotate_response(payload)
        logger.debug("vision analyzed ref=%s labels=%d objects=%d", image_ref, len(signature.labels), len(signature.objects))
        return signature


_singleton: Optional[BaseVisualProvider] = None


def get_visual_provider() -> BaseVisualProvider:
    global _singleton
    if _singleton is None:
        _singleton = GoogleVisionProvider()
    return _singleton
