from __future__ import annotations
"""
Sindi — Result Merging
=======================
Reduces the two retrieval lists to what the model is shown:

- hints: id-only lists ("nearby", "search"), each at most five long, in
  retrieval order (or cheapest first when the filters ask for budget-friendly
  results);
- context: compact summaries of the hinted properties, deduplicated by id
  (first occurrence wins, nearby before search), at most eight.
"""

from dataclasses import dataclass, field

from sindi.config import (
    AMENITY_FLAGS_MAX,
    CONTEXT_MAX,
    DESCRIPTION_MAX_CHARS,
    RESULTS_RETURN_MAX,
)
from sindi.property_index import property_id
from sindi.retrieval.retrievers import RetrievalResult


# canonical flag → synonyms seen in amenity lists / feature fields
AMENITY_SYNONYMS = (
    ("balcony", ("balcony", "terrace")),
    ("pet-friendly", ("pet_friendly", "pets", "petFriendly", "pet-friendly")),
    ("furnished", ("furnished",)),
    ("parking", ("parking", "garage")),
    ("AC", ("air_conditioning", "ac", "airConditioning")),
    ("elevator", ("elevator", "lift")),
    ("washer", ("washer", "laundry", "washing_machine")),
    ("dishwasher", ("dishwasher",)),
    ("wifi", ("wifi", "internet")),
    ("gym", ("gym", "fitness")),
)


@dataclass
class MergedResults:
    nearby_ids: list[str] = field(default_factory=list)
    search_ids: list[str] = field(default_factory=list)
    context: list[dict] = field(default_factory=list)

    @property
    def hints(self) -> dict[str, list[str]]:
        return {"nearby": list(self.nearby_ids), "search": list(self.search_ids)}

    @property
    def allowed_ids(self) -> set[str]:
        return set(self.nearby_ids) | set(self.search_ids)

    @property
    def is_empty(self) -> bool:
        return not self.nearby_ids and not self.search_ids


def _compact(d: dict) -> dict:
    return {k: v for k, v in d.items() if v is not None and v != "" and v != [] and v != {}}


def amenity_flags(prop: dict) -> list[str]:
    """Map whatever amenity representation a listing uses onto canonical flags."""
    amenities = prop.get("amenities")
    features = prop.get("features") if isinstance(prop.get("features"), dict) else {}

    if isinstance(amenities, list):
        present = {str(a).strip().lower() for a in amenities if a}

        def has(key: str) -> bool:
            return key.lower() in present
    else:
        def has(key: str) -> bool:
            return bool(prop.get(key) or features.get(key))

    flags = [flag for flag, synonyms in AMENITY_SYNONYMS if any(has(s) for s in synonyms)]
    return flags[:AMENITY_FLAGS_MAX]


def _rent_amount(prop: dict):
    rent = prop.get("rent")
    amount = rent.get("amount") if isinstance(rent, dict) else None
    if isinstance(amount, bool):
        return None
    try:
        return float(amount) if amount is not None else None
    except (TypeError, ValueError):
        return None


def sort_by_rent(props: list[dict]) -> list[dict]:
    """Cheapest first; listings without a rent keep their order at the end."""
    priced = [p for p in props if _rent_amount(p) is not None]
    unpriced = [p for p in props if _rent_amount(p) is None]
    return sorted(priced, key=_rent_amount) + unpriced


def project_property(prop: dict) -> dict:
    """Compact grounding summary of one listing."""
    address = prop.get("address") if isinstance(prop.get("address"), dict) else {}
    features = prop.get("features") if isinstance(prop.get("features"), dict) else {}
    rent = prop.get("rent") if isinstance(prop.get("rent"), dict) else {}
    area = prop.get("area") if isinstance(prop.get("area"), dict) else {}
    availability = prop.get("availability") if isinstance(prop.get("availability"), dict) else {}

    description = prop.get("description") or prop.get("summary")
    bedrooms = prop.get("bedrooms")
    bathrooms = prop.get("bathrooms")

    return _compact({
        "id": property_id(prop),
        "title": prop.get("title"),
        "type": prop.get("type"),
        "rent": _compact({"amount": rent.get("amount"), "currency": rent.get("currency")})
        if rent.get("amount") else None,
        "city": address.get("city"),
        "neighborhood": address.get("neighborhood") or address.get("district"),
        "bedrooms": bedrooms if bedrooms is not None else features.get("bedrooms"),
        "bathrooms": bathrooms if bathrooms is not None else features.get("bathrooms"),
        "sizeSqm": prop.get("size") or area.get("m2") or prop.get("areaSqm"),
        "amenities": amenity_flags(prop),
        "availabilityDate": prop.get("availableFrom") or availability.get("from"),
        "description": str(description)[:DESCRIPTION_MAX_CHARS] if description else None,
    })


def _ids(props: list[dict]) -> list[str]:
    ids: list[str] = []
    for p in props:
        pid = property_id(p)
        if pid and pid not in ids:
            ids.append(pid)
    return ids


def merge_results(result: RetrievalResult, filters: dict | None = None) -> MergedResults:
    filters = filters or {}
    nearby = result.nearby
    search = result.search
    if filters.get("budgetFriendly") is True:
        nearby = sort_by_rent(nearby)
        search = sort_by_rent(search)

    nearby_ids = _ids(nearby)[:RESULTS_RETURN_MAX]
    search_ids = _ids(search)[:RESULTS_RETURN_MAX]

    hinted = set(nearby_ids) | set(search_ids)
    seen: set[str] = set()
    context: list[dict] = []
    for p in nearby + search:
        pid = property_id(p)
        if not pid or pid in seen or pid not in hinted:
            continue
        seen.add(pid)
        context.append(project_property(p))
        if len(context) >= CONTEXT_MAX:
            break

    return MergedResults(nearby_ids=nearby_ids, search_ids=search_ids, context=context)
