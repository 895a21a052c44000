from __future__ import annotations
"""
Sindi — Filter Extraction
==========================
Turns a free-text request ("2 bed flats in Gràcia under 1200") into a sparse
filter dict for the property index via one bounded model call.

Best effort only: a timeout, an API error, a reply without a JSON object or
a malformed object all yield ``{}``. Callers never see an exception.
"""

import asyncio
import json
import logging

from sindi.config import FILTER_MAX_TOKENS, FILTER_TIMEOUT

logger = logging.getLogger(__name__)


FILTER_EXTRACTION_PROMPT = """You extract structured search filters for rental properties from the user's message.
Return ONLY a compact JSON object with the allowed keys; omit unknown/empty fields.

Available keys and their types:
- type (string): property type like "apartment", "house", "room", etc.
- minRent, maxRent (number): price range
- city, state (string): location filters - IMPORTANT: extract city and state from location mentions
- bedrooms, bathrooms (number): exact number
- minBedrooms, maxBedrooms, minBathrooms, maxBathrooms (number): ranges
- minSquareFootage, maxSquareFootage, minYearBuilt, maxYearBuilt (number)
- amenities (array of strings): features like "balcony", "parking", "pet_friendly", etc.
- petFriendly, utilitiesIncluded, verified, eco, available, hasPhotos, budgetFriendly (boolean)
- proximityToTransport, proximityToSchools, proximityToShopping (boolean)
- housingType, layoutType, furnishedStatus, parkingType, petPolicy, leaseTerm, priceUnit (string)
- availableFromBefore, availableFromAfter (string, ISO date)

Examples:
"Find apartments in Barcelona" → {"city": "Barcelona"}
"Que pisos hay en Granollers?" → {"city": "Granollers"}
"2 bedroom places in Madrid under 1500" → {"city": "Madrid", "bedrooms": 2, "maxRent": 1500}
"Pet friendly houses in California" → {"state": "California", "type": "house", "petFriendly": true}
"Properties in Barcelona with parking" → {"city": "Barcelona", "amenities": ["parking"]}
"Cheapest rooms in Valencia" → {"city": "Valencia", "type": "room", "budgetFriendly": true}

For simple location questions like "What's in [city]?" just extract the city name.
Don't add extra filters unless explicitly mentioned."""


# Numeric keys with their accepted [min, max] range.
NUMBER_FIELDS = {
    "minRent": (0, 1_000_000),
    "maxRent": (0, 1_000_000),
    "bedrooms": (0, 50),
    "bathrooms": (0, 50),
    "minBedrooms": (0, 50),
    "maxBedrooms": (0, 50),
    "minBathrooms": (0, 50),
    "maxBathrooms": (0, 50),
    "minSquareFootage": (0, 100_000),
    "maxSquareFootage": (0, 100_000),
    "minYearBuilt": (1500, 2100),
    "maxYearBuilt": (1500, 2100),
}

STRING_FIELDS = (
    "type", "city", "state", "housingType", "layoutType", "furnishedStatus",
    "parkingType", "petPolicy", "leaseTerm", "priceUnit",
    "availableFromBefore", "availableFromAfter",
)

BOOL_FIELDS = (
    "hasPhotos", "hasImages", "available", "verified", "eco", "budgetFriendly",
    "petFriendly", "utilitiesIncluded", "proximityToTransport",
    "proximityToSchools", "proximityToShopping",
)

STRING_MAX_CHARS = 100


def _number(value, lo: float, hi: float):
    # bool is an int subclass; "true" is not a bedroom count
    if isinstance(value, bool) or value is None:
        return None
    try:
        n = float(str(value).strip())
    except ValueError:
        return None
    if n != n or not lo <= n <= hi:
        return None
    return int(n) if n.is_integer() else n


def sanitize_filters(raw: dict) -> dict:
    """Keep only known keys whose values have the expected type."""
    out: dict = {}

    for key, (lo, hi) in NUMBER_FIELDS.items():
        n = _number(raw.get(key), lo, hi)
        if n is not None:
            out[key] = n

    for key in STRING_FIELDS:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            out[key] = value.strip()[:STRING_MAX_CHARS]

    for key in BOOL_FIELDS:
        value = raw.get(key)
        if isinstance(value, bool):
            out[key] = value

    amenities = raw.get("amenities")
    if isinstance(amenities, list):
        cleaned = [a.strip() for a in amenities if isinstance(a, str) and a.strip()]
        if cleaned:
            out["amenities"] = cleaned

    # Swapped bounds are a model mistake, not a user intent.
    for lo_key, hi_key in (
        ("minRent", "maxRent"),
        ("minBedrooms", "maxBedrooms"),
        ("minBathrooms", "maxBathrooms"),
        ("minSquareFootage", "maxSquareFootage"),
        ("minYearBuilt", "maxYearBuilt"),
    ):
        if lo_key in out and hi_key in out and out[lo_key] > out[hi_key]:
            out[lo_key], out[hi_key] = out[hi_key], out[lo_key]

    return out


def parse_filters(text: str) -> dict:
    """Pull the outermost ``{...}`` out of a model reply and sanitize it.

    Returns ``{}`` when there is no parseable object.
    """
    trimmed = (text or "").strip()
    start = trimmed.find("{")
    end = trimmed.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return {}
    try:
        raw = json.loads(trimmed[start:end + 1])
    except json.JSONDecodeError:
        return {}
    if not isinstance(raw, dict):
        return {}
    return sanitize_filters(raw)


class FilterExtractor:
    def __init__(self, model, timeout: float = FILTER_TIMEOUT, max_tokens: int = FILTER_MAX_TOKENS):
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens

    async def extract(self, text: str) -> dict:
        if not text or not text.strip():
            return {}
        try:
            reply = await asyncio.wait_for(
                self.model.complete(
                    system=FILTER_EXTRACTION_PROMPT,
                    messages=[{"role": "user", "content": text}],
                    max_tokens=self.max_tokens,
                    temperature=0.0,
                    phase="filters",
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[filters] extraction timed out after {self.timeout}s")
            return {}
        except Exception as e:
            logger.warning(f"[filters] extraction failed: {e}")
            return {}

        filters = parse_filters(reply)
        logger.info(f"[filters] input={text[:100]!r} extracted={filters}")
        return filters
