from __future__ import annotations
"""
Sindi — Property Retrieval
===========================
Two independent retrieval strategies against the property index:

- nearby: anchor on the most recently cited property and ask the index for
  listings within a fixed radius of it.
- search: text + filter query.

``run_retrieval`` issues both at once and waits for both to settle. Each
branch has its own timeout and converts any failure into ``[]``; one branch
failing never affects the other.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field

from sindi.config import (
    DEFAULT_LIST_LIMIT,
    NEARBY_LIMIT,
    NEARBY_MAX_DISTANCE_M,
    RETRIEVAL_TIMEOUT,
)
from sindi.property_index import build_search_params, property_id

logger = logging.getLogger(__name__)


# Words that carry meaning the structured filters may not capture; when any
# is present the raw text is still sent even for location-only requests.
_TEXTUAL_TERMS = re.compile(
    r"\b(furnished|pet|pets|parking|balcony|terrace|pool|gym|modern|luxury|cheap|budget|quiet|bright|garden)\b",
    re.IGNORECASE,
)


@dataclass
class RetrievalResult:
    nearby: list[dict] = field(default_factory=list)
    search: list[dict] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.nearby and not self.search


def anchor_coordinates(prop: dict | None) -> tuple[float, float] | None:
    """(longitude, latitude) from a property's GeoJSON point, if present."""
    if not prop:
        return None
    address = prop.get("address") or {}
    point = address.get("coordinates") or prop.get("location") or {}
    coords = point.get("coordinates") if isinstance(point, dict) else None
    if not isinstance(coords, (list, tuple)) or len(coords) != 2:
        return None
    try:
        longitude, latitude = float(coords[0]), float(coords[1])
    except (TypeError, ValueError):
        return None
    if not (-180 <= longitude <= 180 and -90 <= latitude <= 90):
        return None
    return longitude, latitude


def keyword_query(text: str, filters: dict) -> str | None:
    """Raw text to send to the search endpoint, or None to suppress it.

    A request that is purely about a place ("flats in Gràcia") is already
    captured by the city/state filter; sending the sentence as well would
    make the index's text match fight the filter.
    """
    is_location_search = bool(filters.get("city") or filters.get("state"))
    if is_location_search and not _TEXTUAL_TERMS.search(text or ""):
        return None
    return text


class GeoAnchoredRetriever:
    def __init__(self, index, limit: int = NEARBY_LIMIT, max_distance: int = NEARBY_MAX_DISTANCE_M):
        self.index = index
        self.limit = limit
        self.max_distance = max_distance

    async def retrieve(self, cited_ids: list[str], filters: dict) -> list[dict]:
        """Listings near the most recent anchor, excluding everything already cited."""
        if not cited_ids:
            return []

        anchor = await self.index.get_by_id(cited_ids[0])
        coords = anchor_coordinates(anchor)
        if coords is None:
            logger.info(f"[retrieval] anchor {cited_ids[0]} has no coordinates; skipping nearby")
            return []

        longitude, latitude = coords
        params = build_search_params(filters, limit=self.limit, exclude_ids=cited_ids)
        params["longitude"] = str(longitude)
        params["latitude"] = str(latitude)
        params["maxDistance"] = str(self.max_distance)
        return await self.index.nearby(params)


class KeywordRetriever:
    def __init__(self, index, limit: int = DEFAULT_LIST_LIMIT):
        self.index = index
        self.limit = limit

    async def retrieve(self, text: str, filters: dict, exclude_ids: list[str]) -> list[dict]:
        params = build_search_params(
            filters,
            limit=self.limit,
            query=keyword_query(text, filters),
            exclude_ids=exclude_ids,
        )
        return await self.index.search(params)


async def _settle(name: str, coro, timeout: float) -> list[dict]:
    """Await one retrieval branch; timeouts and errors become an empty list."""
    try:
        results = await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"[retrieval] {name} timed out after {timeout}s")
        return []
    except Exception as e:
        logger.warning(f"[retrieval] {name} failed: {e}")
        return []
    if not isinstance(results, list):
        return []
    return [r for r in results if isinstance(r, dict)]


async def run_retrieval(
    index,
    text: str,
    filters: dict,
    cited_ids: list[str],
    timeout: float = RETRIEVAL_TIMEOUT,
) -> RetrievalResult:
    """Fan out nearby + search concurrently and join on both."""
    nearby_branch = GeoAnchoredRetriever(index).retrieve(cited_ids, filters)
    search_branch = KeywordRetriever(index).retrieve(text, filters, cited_ids)

    nearby, search = await asyncio.gather(
        _settle("nearby", nearby_branch, timeout),
        _settle("search", search_branch, timeout),
    )

    # The index is asked to exclude these; enforce it here as well.
    excluded = set(cited_ids)
    nearby = [p for p in nearby if property_id(p) and property_id(p) not in excluded]
    search = [p for p in search if property_id(p) and property_id(p) not in excluded]

    logger.info(
        f"[retrieval] cited={cited_ids[:5]} filters={filters} "
        f"nearby={len(nearby)} search={len(search)}"
    )
    return RetrievalResult(nearby=nearby, search=search)
