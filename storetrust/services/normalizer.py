"""Normalization keys for venue identity.

Keys:
- name_key: lowercase, punctuation `()-_/.,` stripped, whitespace collapsed
- strict_address_key: same transform applied to the address text
- loose_address_signature: (district, road name, building number) extracted
  from the address so that "서울특별시 강남구 테헤란로 123 1층" and
  "서울 강남구 테헤란로 123" compare equal

All functions are pure and deterministic; applying a key function to its own
output returns the same key.
"""

import re
from math import atan2, cos, radians, sin, sqrt

_PUNCTUATION_RE = re.compile(r"[()\-_/.,]")
_WHITESPACE_RE = re.compile(r"\s+")

# District: 구/군 preferred, city (시) as a fallback
_DISTRICT_RE = re.compile(r"([가-힣]+(?:구|군))(?=\s|$)")
_CITY_RE = re.compile(r"([가-힣]+시)(?=\s|$)")

# Road: "테헤란로 123", "테헤란로12길 34-5", "중앙로 12번길 5"
_ROAD_RE = re.compile(
    r"([가-힣a-z0-9]+?(?:로|길))(?=\s|\d|$)"
    r"(?:\s*(\d+번?길))?"
    r"(?:\s*(\d+(?:-\d+)?))?"
)

# Western style: "123 Main St"
_WESTERN_ROAD_RE = re.compile(
    r"(\d+(?:-\d+)?)\s+([a-z][a-z ]*?\s(?:street|st|road|rd|avenue|ave|boulevard|blvd|lane|ln|drive|dr|way))\b"
)

EARTH_RADIUS_M = 6371000


def _normalize(value: str | None) -> str:
    """Lowercase, strip the fixed punctuation set, collapse whitespace."""
    if not value:
        return ""
    result = str(value).lower()
    result = _PUNCTUATION_RE.sub("", result)
    result = _WHITESPACE_RE.sub(" ", result)
    return result.strip()


def name_key(name: str | None) -> str:
    """Comparable key for a venue name."""
    return _normalize(name)


def strict_address_key(address: str | None) -> str:
    """Comparable key for a full address (empty input -> empty key)."""
    return _normalize(address)


def name_token(name: str | None) -> str:
    """Name key without spaces ("Seoul Kitchen" == "SeoulKitchen")."""
    return name_key(name).replace(" ", "")


def loose_address_signature(address: str | None) -> str:
    """Extract a (district, road, building number) signature from an address.

    Returns an empty string when no road-like token is found.

    Example:
        >>> loose_address_signature("서울특별시 강남구 테헤란로 123 1층")
        "강남구 테헤란로 123"
    """
    if not address:
        return ""
    # Hyphens matter for building numbers ("34-5"), so only lowercase + collapse here.
    text = _WHITESPACE_RE.sub(" ", str(address).lower()).strip()
    text = re.sub(r"[(),.]", " ", text)
    text = _WHITESPACE_RE.sub(" ", text).strip()

    road_match = _ROAD_RE.search(text)
    if road_match:
        road = road_match.group(1) + (road_match.group(2) or "")
        building = road_match.group(3) or ""
        district_match = _DISTRICT_RE.search(text[: road_match.start()])
        if district_match is None:
            district_match = _CITY_RE.search(text[: road_match.start()])
        district = district_match.group(1) if district_match else ""
        return " ".join(p for p in (district, road, building) if p)

    western = _WESTERN_ROAD_RE.search(text)
    if western:
        return " ".join(p for p in (western.group(1), western.group(2).strip()) if p)

    return ""


def address_key(address: str | None) -> str:
    """Loose signature when available, otherwise the strict key."""
    return loose_address_signature(address) or strict_address_key(address)


def identity_key(name: str | None, address: str | None) -> str:
    """Grouping key: `name_key|loose-or-strict address`.

    Returns an empty string when either part is empty (such rows are never
    grouped as duplicates).
    """
    n = name_key(name)
    a = address_key(address)
    if not n or not a:
        return ""
    return f"{n}|{a}"


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in meters."""
    lat1, lng1, lat2, lng2 = map(radians, [lat1, lng1, lat2, lng2])
    dlat = lat2 - lat1
    dlng = lng2 - lng1

    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlng / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))

    return EARTH_RADIUS_M * c


def bounding_box(lat: float, lng: float, radius_m: float) -> tuple[float, float, float, float]:
    """Approximate (min_lat, max_lat, min_lng, max_lng) around a point.

    Used to pre-filter candidates in SQL before the exact haversine check.
    """
    dlat = radius_m / 111_320.0
    # Longitude degrees shrink with latitude; guard the poles.
    dlng = radius_m / max(1.0, 111_320.0 * cos(radians(lat)))
    return lat - dlat, lat + dlat, lng - dlng, lng + dlng
