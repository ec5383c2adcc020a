"""Google Places (v1) client: place identity lookup, nearby search, latest reviews.

Lookup strategy (find_place):
1. Strict text search filtered to the venue category (restaurant / cafe)
2. Loose text search without a type filter

Caching:
- Place lookups: Redis, TTL 7 days (keyed by name + address + category)
- Nearby searches: Redis, TTL 1 day
Redis failures only log a warning; the API is called directly instead.
"""

import hashlib
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

import httpx

from storetrust.services.http_retry import request_with_retry
from storetrust.settings import get_settings
from storetrust.stores.redis import (
    PREFIX_NEARBY_SEARCH,
    PREFIX_PLACE_LOOKUP,
    TTL_NEARBY_SEARCH,
    TTL_PLACE_LOOKUP,
    cache_get_json,
    cache_set_json,
)

logger = logging.getLogger("uvicorn.error")

MAX_LATEST_REVIEWS = 5

PLACE_FIELDS = [
    "id",
    "displayName",
    "formattedAddress",
    "location",
    "rating",
    "userRatingCount",
    "photos",
    "types",
]

# Our category -> Places "includedType"
CATEGORY_PLACE_TYPES = {
    "restaurant": "restaurant",
    "cafe": "cafe",
}


class PlacesError(RuntimeError):
    pass


@dataclass
class PlaceResult:
    """Parsed place from the Places API."""

    place_id: str
    name: str
    address: str | None = None
    rating: float | None = None
    review_count: int = 0
    latitude: float | None = None
    longitude: float | None = None
    photos: list[str] = field(default_factory=list)
    types: list[str] = field(default_factory=list)


@dataclass
class ExternalReview:
    """One externally sourced review."""

    author: str | None
    rating: float
    text: str
    published_at: str | None = None


class GooglePlacesClient:
    """Client for the Places API (New)."""

    BASE_URL = "https://places.googleapis.com/v1"

    def __init__(
        self,
        api_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        use_cache: bool = True,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.google_places_api_key
        self.language_code = settings.places_language_code
        self.region_code = settings.places_region_code
        self.use_cache = use_cache
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=20.0)
        return self._http_client

    async def close(self) -> None:
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def _headers(self, fields: list[str]) -> dict[str, str]:
        return {
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": ",".join(fields),
        }

    @staticmethod
    def _hash(*parts: str) -> str:
        return hashlib.sha256("\x00".join(parts).encode("utf-8")).hexdigest()[:24]

    async def _cached(self, key: str) -> Any | None:
        if not self.use_cache:
            return None
        try:
            return await cache_get_json(key)
        except Exception as e:
            logger.warning(f"Redis cache read failed: {e}")
            return None

    async def _store(self, key: str, value: Any, ttl: int) -> None:
        if not self.use_cache:
            return
        try:
            await cache_set_json(key, value, ttl)
        except Exception as e:
            logger.warning(f"Redis cache write failed: {e}")

    # ============================================================
    # Parsing
    # ============================================================

    @staticmethod
    def _parse_place(item: dict[str, Any]) -> PlaceResult | None:
        place_id = item.get("id")
        if not isinstance(place_id, str) or not place_id:
            return None
        display = item.get("displayName") or {}
        name = display.get("text") if isinstance(display, dict) else None
        location = item.get("location") or {}
        rating = item.get("rating")
        photos = [
            p["name"]
            for p in item.get("photos") or []
            if isinstance(p, dict) and isinstance(p.get("name"), str)
        ]
        return PlaceResult(
            place_id=place_id,
            name=name or "",
            address=item.get("formattedAddress"),
            rating=float(rating) if isinstance(rating, (int, float)) else None,
            review_count=int(item.get("userRatingCount") or 0),
            latitude=location.get("latitude"),
            longitude=location.get("longitude"),
            photos=photos[:10],
            types=[t for t in item.get("types") or [] if isinstance(t, str)],
        )

    @staticmethod
    def _parse_review(item: dict[str, Any]) -> ExternalReview | None:
        text_obj = item.get("text") or item.get("originalText") or {}
        text = text_obj.get("text") if isinstance(text_obj, dict) else None
        rating = item.get("rating")
        if not text or not isinstance(rating, (int, float)):
            return None
        author = (item.get("authorAttribution") or {}).get("displayName")
        return ExternalReview(
            author=author,
            rating=float(rating),
            text=text.strip(),
            published_at=item.get("publishTime"),
        )

    # ============================================================
    # Endpoints
    # ============================================================

    async def _search_text(self, query: str, included_type: str | None) -> list[PlaceResult]:
        body: dict[str, Any] = {
            "textQuery": query,
            "languageCode": self.language_code,
            "regionCode": self.region_code,
            "pageSize": 5,
        }
        if included_type:
            body["includedType"] = included_type
            body["strictTypeFiltering"] = True

        client = await self._get_client()
        response = await request_with_retry(
            client,
            "POST",
            f"{self.BASE_URL}/places:searchText",
            headers=self._headers([f"places.{f}" for f in PLACE_FIELDS]),
            json=body,
        )
        data = response.json()
        if not isinstance(data, dict):
            raise PlacesError("Unexpected searchText response shape")
        places = [self._parse_place(p) for p in data.get("places") or [] if isinstance(p, dict)]
        return [p for p in places if p is not None]

    async def find_place(
        self,
        name: str,
        address: str | None = None,
        category: str | None = None,
    ) -> PlaceResult | None:
        """Look up a venue: strict category-filtered search first, loose second.

        Returns None when no API key is configured or nothing matches.
        """
        if not self.api_key:
            logger.warning("Places API key not configured, skipping lookup")
            return None
        name = (name or "").strip()
        if not name:
            return None

        query = f"{name} {address or ''}".strip()
        cache_key = f"{PREFIX_PLACE_LOOKUP}{self._hash(name, address or '', category or '')}"
        cached = await self._cached(cache_key)
        if cached:
            logger.info(f"Places cache HIT for {name!r}")
            return PlaceResult(**cached)

        logger.info(f"Places cache MISS, searching {name!r}")
        place_type = CATEGORY_PLACE_TYPES.get(category or "")
        results: list[PlaceResult] = []
        if place_type:
            results = await self._search_text(query, place_type)
        if not results:
            results = await self._search_text(query, None)
        if not results:
            return None

        best = results[0]
        await self._store(cache_key, asdict(best), TTL_PLACE_LOOKUP)
        return best

    async def search_nearby(
        self,
        latitude: float,
        longitude: float,
        radius_m: float,
        category: str | None = None,
        max_results: int = 20,
    ) -> list[PlaceResult]:
        """Places within `radius_m`, optionally restricted to one category."""
        if not self.api_key:
            return []

        place_type = CATEGORY_PLACE_TYPES.get(category or "")
        cache_key = (
            f"{PREFIX_NEARBY_SEARCH}"
            f"{self._hash(f'{latitude:.4f}', f'{longitude:.4f}', str(int(radius_m)), place_type or '')}"
        )
        cached = await self._cached(cache_key)
        if cached is not None:
            return [PlaceResult(**item) for item in cached]

        body: dict[str, Any] = {
            "maxResultCount": max(1, min(20, max_results)),
            "languageCode": self.language_code,
            "regionCode": self.region_code,
            "locationRestriction": {
                "circle": {
                    "center": {"latitude": latitude, "longitude": longitude},
                    "radius": float(radius_m),
                }
            },
        }
        if place_type:
            body["includedTypes"] = [place_type]

        client = await self._get_client()
        response = await request_with_retry(
            client,
            "POST",
            f"{self.BASE_URL}/places:searchNearby",
            headers=self._headers([f"places.{f}" for f in PLACE_FIELDS]),
            json=body,
        )
        data = response.json()
        if not isinstance(data, dict):
            raise PlacesError("Unexpected searchNearby response shape")
        places = [self._parse_place(p) for p in data.get("places") or [] if isinstance(p, dict)]
        results = [p for p in places if p is not None]

        await self._store(cache_key, [asdict(p) for p in results], TTL_NEARBY_SEARCH)
        return results

    async def latest_reviews(self, place_id: str, limit: int = MAX_LATEST_REVIEWS) -> list[ExternalReview]:
        """Most recent reviews for a place (the API returns at most 5)."""
        if not self.api_key or not place_id:
            return []
        limit = max(1, min(MAX_LATEST_REVIEWS, limit))

        client = await self._get_client()
        response = await request_with_retry(
            client,
            "GET",
            f"{self.BASE_URL}/places/{place_id}",
            headers=self._headers(["reviews"]),
            params={"languageCode": self.language_code, "regionCode": self.region_code},
        )
        data = response.json()
        if not isinstance(data, dict):
            raise PlacesError("Unexpected place details response shape")

        reviews = [self._parse_review(r) for r in data.get("reviews") or [] if isinstance(r, dict)]
        parsed = [r for r in reviews if r is not None]
        parsed.sort(key=lambda r: r.published_at or "", reverse=True)
        return parsed[:limit]
