from __future__ import annotations
"""
Sindi — Property Index Client
==============================
HTTP client for the property index service (search / nearby / by-id).

The index's query semantics are owned by that service; this module only
knows how to encode a sparse filter dict into its query parameters and how
to unwrap its ``{"data": [...]}`` envelopes. Any transport failure or
non-success status is raised as PropertyIndexError. Callers decide whether
to recover.
"""

import logging
from typing import Any, Optional, Protocol
from urllib.parse import quote

import httpx

from sindi.config import DEFAULT_LIST_LIMIT, PROPERTY_API_BASE_URL, PROPERTY_API_TIMEOUT
from sindi.errors import PropertyIndexError

logger = logging.getLogger(__name__)


# Filter keys forwarded verbatim, grouped by how they are encoded.
_SCALAR_FILTERS = (
    "type", "minRent", "maxRent", "city", "state", "bedrooms", "bathrooms",
    "housingType", "layoutType", "furnishedStatus", "parkingType", "petPolicy",
    "leaseTerm", "priceUnit", "availableFromBefore", "availableFromAfter",
    "minBedrooms", "maxBedrooms", "minBathrooms", "maxBathrooms",
    "minSquareFootage", "maxSquareFootage", "minYearBuilt", "maxYearBuilt",
)
_BOOL_FILTERS = (
    "verified", "eco", "available", "petFriendly", "utilitiesIncluded",
    "proximityToTransport", "proximityToSchools", "proximityToShopping",
    "budgetFriendly",
)


def _encode_scalar(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_search_params(
    filters: dict,
    limit: int = DEFAULT_LIST_LIMIT,
    query: str | None = None,
    exclude_ids: list[str] | None = None,
) -> dict[str, str]:
    """Encode filters plus paging/exclusion into index query parameters.

    Empty values are dropped; booleans are sent as ``"true"``/``"false"``;
    amenities and exclusions are comma-separated.
    """
    params: dict[str, str] = {}
    if query and query.strip():
        params["query"] = query.strip()
    params["limit"] = str(limit)
    if exclude_ids:
        params["excludeIds"] = ",".join(exclude_ids)

    for key in _SCALAR_FILTERS:
        value = filters.get(key)
        if value is None or value == "" or isinstance(value, bool):
            continue
        params[key] = _encode_scalar(value)

    amenities = filters.get("amenities")
    if isinstance(amenities, list) and amenities:
        params["amenities"] = ",".join(amenities)

    # hasImages is an alias of hasPhotos
    has_photos = filters.get("hasPhotos")
    if has_photos is None:
        has_photos = filters.get("hasImages")
    if isinstance(has_photos, bool):
        params["hasPhotos"] = "true" if has_photos else "false"

    for key in _BOOL_FILTERS:
        value = filters.get(key)
        if isinstance(value, bool):
            params[key] = "true" if value else "false"

    return params


def _unwrap_list(payload: Any) -> list[dict]:
    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return payload["data"]
    if isinstance(payload, list):
        return payload
    return []


def property_id(prop: dict) -> str | None:
    """The index returns Mongo-style ``_id`` or plain ``id``."""
    value = prop.get("_id") or prop.get("id")
    return str(value) if value else None


class PropertyIndexClient(Protocol):
    async def search(self, params: dict[str, str]) -> list[dict]: ...

    async def nearby(self, params: dict[str, str]) -> list[dict]: ...

    async def get_by_id(self, property_id: str) -> Optional[dict]: ...


class HttpPropertyIndex:
    """PropertyIndexClient over the index's REST API."""

    def __init__(
        self,
        base_url: str = PROPERTY_API_BASE_URL,
        timeout: float = PROPERTY_API_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, path: str, params: dict[str, str] | None = None) -> httpx.Response:
        try:
            resp = await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise PropertyIndexError(f"GET {path} failed: {e}") from e
        return resp

    async def search(self, params: dict[str, str]) -> list[dict]:
        resp = await self._get("/api/properties/search", params)
        if resp.status_code >= 400:
            raise PropertyIndexError(
                f"search returned {resp.status_code}: {resp.text[:200]}", resp.status_code
            )
        results = _unwrap_list(resp.json())
        logger.info(f"[property_index] search params={params} count={len(results)}")
        return results

    async def nearby(self, params: dict[str, str]) -> list[dict]:
        resp = await self._get("/api/properties/nearby", params)
        if resp.status_code >= 400:
            raise PropertyIndexError(
                f"nearby returned {resp.status_code}: {resp.text[:200]}", resp.status_code
            )
        results = _unwrap_list(resp.json())
        logger.info(f"[property_index] nearby params={params} count={len(results)}")
        return results

    async def get_by_id(self, property_id: str) -> Optional[dict]:
        # ids can come from client-supplied history; keep them inside one path segment
        resp = await self._get(f"/api/properties/{quote(property_id, safe='')}")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise PropertyIndexError(
                f"by-id returned {resp.status_code}: {resp.text[:200]}", resp.status_code
            )
        payload = resp.json()
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            return payload["data"]
        return payload if isinstance(payload, dict) else None
