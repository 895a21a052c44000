"""
Retrieval Tests
================
nearby ∥ search fan-out against a fake property index: anchoring,
exclusion of already-cited ids, per-branch failure isolation and
query-parameter encoding.
"""
from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).parent.parent))

from fakes import FakePropertyIndex, make_property
from sindi.property_index import HttpPropertyIndex, build_search_params
from sindi.retrieval.retrievers import anchor_coordinates, keyword_query, run_retrieval


# ── Parameter encoding ──────────────────────────────────────────────────

def test_build_search_params_encoding():
    params = build_search_params(
        {"city": "Barcelona", "maxRent": 900.0, "amenities": ["balcony", "parking"],
         "petFriendly": True, "verified": False, "hasImages": True},
        limit=10,
        query="bright flat",
        exclude_ids=["p1", "p2"],
    )
    assert params["city"] == "Barcelona"
    assert params["maxRent"] == "900"
    assert params["amenities"] == "balcony,parking"
    assert params["petFriendly"] == "true"
    assert params["verified"] == "false"
    assert params["hasPhotos"] == "true"
    assert params["query"] == "bright flat"
    assert params["excludeIds"] == "p1,p2"
    assert params["limit"] == "10"


def test_location_only_query_is_suppressed():
    assert keyword_query("flats in Gràcia", {"city": "Gràcia"}) is None
    assert keyword_query("furnished flats in Gràcia", {"city": "Gràcia"}) == "furnished flats in Gràcia"
    assert keyword_query("something cosy", {}) == "something cosy"


def test_anchor_coordinates():
    assert anchor_coordinates(make_property("p1", coords=(2.17, 41.38))) == (2.17, 41.38)
    assert anchor_coordinates({"location": {"coordinates": [2.0, 41.0]}}) == (2.0, 41.0)
    assert anchor_coordinates(make_property("p1")) is None
    assert anchor_coordinates({"location": {"coordinates": [500, 41.0]}}) is None
    assert anchor_coordinates(None) is None


# ── Fan-out ─────────────────────────────────────────────────────────────

def test_no_cited_ids_means_no_nearby():
    index = FakePropertyIndex(search_results=[make_property("s1"), make_property("s2")])
    result = asyncio.run(run_retrieval(index, "find apartments in Raval", {"city": "Raval"}, []))
    assert result.nearby == []
    assert [p["_id"] for p in result.search] == ["s1", "s2"]
    assert index.params_for("nearby") is None


def test_nearby_anchors_on_most_recent_and_excludes_cited():
    p1 = make_property("p1", coords=(2.17, 41.38))
    index = FakePropertyIndex(
        properties=[p1, make_property("p2"), make_property("p3")],
        nearby_results=[make_property("p2"), make_property("n1"), make_property("n2")],
        search_results=[make_property("p3"), make_property("s1")],
    )
    result = asyncio.run(run_retrieval(index, "show me others nearby", {}, ["p1", "p2", "p3"]))

    nearby_params = index.params_for("nearby")
    assert nearby_params["longitude"] == "2.17"
    assert nearby_params["latitude"] == "41.38"
    assert nearby_params["maxDistance"] == "3000"
    assert nearby_params["excludeIds"] == "p1,p2,p3"
    assert index.params_for("search")["excludeIds"] == "p1,p2,p3"

    # the index ignored the exclusion; it is enforced client-side anyway
    assert [p["_id"] for p in result.nearby] == ["n1", "n2"]
    assert [p["_id"] for p in result.search] == ["s1"]


def test_anchor_without_coordinates_still_searches():
    index = FakePropertyIndex(
        properties=[make_property("p1")],
        nearby_results=[make_property("n1")],
        search_results=[make_property("s1")],
    )
    result = asyncio.run(run_retrieval(index, "others like that", {}, ["p1"]))
    assert result.nearby == []
    assert [p["_id"] for p in result.search] == ["s1"]
    assert index.params_for("nearby") is None


def test_one_branch_failing_does_not_affect_other():
    p1 = make_property("p1", coords=(2.17, 41.38))
    index = FakePropertyIndex(
        properties=[p1],
        nearby_results=[make_property("n1")],
        search_results=[make_property("s1")],
        fail_search=True,
    )
    result = asyncio.run(run_retrieval(index, "nearby please", {}, ["p1"]))
    assert [p["_id"] for p in result.nearby] == ["n1"]
    assert result.search == []

    index.fail_search = False
    index.fail_by_id = True
    result = asyncio.run(run_retrieval(index, "nearby please", {}, ["p1"]))
    assert result.nearby == []
    assert [p["_id"] for p in result.search] == ["s1"]


def test_both_branches_failing_gives_empty_result():
    index = FakePropertyIndex(
        properties=[make_property("p1", coords=(2.17, 41.38))],
        fail_search=True,
        fail_nearby=True,
    )
    result = asyncio.run(run_retrieval(index, "find flats", {}, ["p1"]))
    assert result.is_empty


def test_branches_run_concurrently_and_time_out_independently():
    index = FakePropertyIndex(
        properties=[make_property("p1", coords=(2.17, 41.38))],
        nearby_results=[make_property("n1")],
        search_results=[make_property("s1")],
        delay=0.2,
    )
    started = time.monotonic()
    result = asyncio.run(run_retrieval(index, "find flats", {}, ["p1"], timeout=1.0))
    elapsed = time.monotonic() - started
    assert [p["_id"] for p in result.nearby] == ["n1"]
    assert [p["_id"] for p in result.search] == ["s1"]
    assert elapsed < 0.38  # sequential would be ≥ 0.4

    result = asyncio.run(run_retrieval(index, "find flats", {}, ["p1"], timeout=0.05))
    assert result.is_empty


def test_results_without_ids_are_dropped():
    index = FakePropertyIndex(search_results=[{"title": "no id"}, make_property("s1")])
    result = asyncio.run(run_retrieval(index, "flats", {}, []))
    assert [p["_id"] for p in result.search] == ["s1"]


# ── HTTP client ─────────────────────────────────────────────────────────

def _recording_index(seen: list[httpx.Request]) -> HttpPropertyIndex:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"id": "p1", "latitude": 41.38, "longitude": 2.17}})

    client = httpx.AsyncClient(base_url="http://index", transport=httpx.MockTransport(handler))
    return HttpPropertyIndex(client=client)


def test_get_by_id_keeps_id_inside_one_path_segment():
    seen: list[httpx.Request] = []
    index = _recording_index(seen)

    async def scenario():
        assert (await index.get_by_id("p1"))["id"] == "p1"
        await index.get_by_id("x?admin=1&drop=all")
        await index.get_by_id("../../internal/stats")
        await index._client.aclose()

    asyncio.run(scenario())
    assert [r.url.host for r in seen] == ["index"] * 3
    assert seen[0].url.raw_path == b"/api/properties/p1"
    for request in seen[1:]:
        assert request.url.query == b""
        assert request.url.raw_path.startswith(b"/api/properties/")
        assert b"/" not in request.url.raw_path[len(b"/api/properties/"):]
    assert seen[1].url.raw_path == b"/api/properties/x%3Fadmin%3D1%26drop%3Dall"
