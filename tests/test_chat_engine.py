"""
Chat Engine Tests
==================
End-to-end turns against in-memory collaborators: grounding, hint
injection, cited-id exclusion, fail-soft enrichment, attachments.
Zero network, zero LLM calls.
"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from fakes import FakeModel, FakePropertyIndex, InMemoryConversationStore, make_property
from sindi.chat_engine import ATTACHMENT_NOTE, ChatEngine, build_system_prompt, is_attachment_stub
from sindi.retrieval.merger import MergedResults
from sindi.retrieval.tags import HINTS_INSTRUCTION, HINTS_OPEN

PROFILE = "profile-1"


async def _run_turn(engine: ChatEngine, messages: list[dict], conversation_id: str | None = None):
    turn = await engine.start_turn(messages, conversation_id, PROFILE)
    await turn.prime()
    body = "".join([c async for c in turn.body()])
    if turn.relay is not None and turn.relay.persist_task is not None:
        await turn.relay.persist_task
    return turn, body


def test_search_turn_grounds_and_cites_hinted_ids():
    store = InMemoryConversationStore()
    index = FakePropertyIndex(search_results=[make_property(f"s{i}", rent=800 + i) for i in range(7)])
    model = FakeModel(
        filter_replies=['{"city": "Raval", "maxRent": 900}'],
        chunks=["Found a few in Raval.", '\n<PROPERTIES_JSON>["s0","s1"]</PROPERTIES_JSON>'],
    )
    engine = ChatEngine(store, index, model)

    turn, body = asyncio.run(_run_turn(engine, [{"role": "user", "content": "find apartments in Raval under 900"}]))

    assert turn.created
    assert turn.filters == {"city": "Raval", "maxRent": 900}
    assert turn.merged.nearby_ids == []
    assert turn.merged.search_ids == ["s0", "s1", "s2", "s3", "s4"]
    assert '<PROPERTIES_HINTS>{"nearby": [], "search": ["s0", "s1", "s2", "s3", "s4"]}' in turn.system_prompt
    assert HINTS_INSTRUCTION in turn.system_prompt

    assert body == 'Found a few in Raval.\n<PROPERTIES_JSON>["s0", "s1"]</PROPERTIES_JSON>'
    assert set(turn.relay.guard.cited_ids) <= set(turn.merged.search_ids)

    search_params = index.params_for("search")
    assert search_params["city"] == "Raval"
    assert search_params["maxRent"] == "900"
    assert "query" not in search_params  # location-only request

    stored = store.conversations[turn.conversation_id]
    assert [(m["role"], m["content"]) for m in stored["messages"]] == [
        ("user", "find apartments in Raval under 900"),
        ("assistant", body),
    ]
    assert stored["title"] == "Flats in Raval"


def test_nearby_turn_anchors_on_previous_citation():
    store = InMemoryConversationStore()
    index = FakePropertyIndex(
        properties=[make_property("p1", coords=(2.1686, 41.3809))],
        nearby_results=[make_property("p2"), make_property("n1"), make_property("n2")],
        search_results=[make_property("s1"), make_property("p3")],
    )
    model = FakeModel(chunks=["Close to those: ", '<PROPERTIES_JSON>["n1","n2"]</PROPERTIES_JSON>'])
    engine = ChatEngine(store, index, model)

    messages = [
        {"role": "user", "content": "find flats in Raval"},
        {"role": "assistant", "content": 'Here. <PROPERTIES_JSON>["p1","p2","p3"]</PROPERTIES_JSON>'},
        {"role": "user", "content": "show me others nearby"},
    ]
    turn, body = asyncio.run(_run_turn(engine, messages))

    assert ("by_id", "p1") in index.calls
    nearby_params = index.params_for("nearby")
    assert nearby_params["longitude"] == "2.1686"
    assert nearby_params["excludeIds"] == "p1,p2,p3"

    hinted = set(turn.merged.nearby_ids) | set(turn.merged.search_ids)
    assert not hinted & {"p1", "p2", "p3"}
    assert turn.merged.nearby_ids == ["n1", "n2"]
    assert body.endswith('<PROPERTIES_JSON>["n1", "n2"]</PROPERTIES_JSON>')


def test_extractor_garbage_still_searches_with_raw_text():
    store = InMemoryConversationStore()
    index = FakePropertyIndex(search_results=[make_property("s1")])
    model = FakeModel(filter_replies=["sorry, no JSON here"], chunks=["ok"])
    engine = ChatEngine(store, index, model)

    async def scenario():
        first, _ = await _run_turn(engine, [{"role": "user", "content": "cosy place with light"}])
        second, _ = await _run_turn(
            engine,
            [{"role": "user", "content": "cosy place with light"},
             {"role": "assistant", "content": "ok"},
             {"role": "user", "content": "something quiet"}],
            first.conversation_id,
        )
        return first, second

    first, second = asyncio.run(scenario())
    assert first.filters == {} and second.filters == {}
    queries = [params["query"] for name, params in index.calls if name == "search"]
    assert queries == ["cosy place with light", "something quiet"]
    assert second.conversation_id == first.conversation_id
    assert not second.created


def test_both_retrievers_failing_means_no_hints():
    store = InMemoryConversationStore()
    index = FakePropertyIndex(
        properties=[make_property("p1", coords=(2.17, 41.38))],
        fail_search=True,
        fail_nearby=True,
    )
    model = FakeModel(chunks=["I couldn't find listings yet. ", '<PROPERTIES_JSON>["p9"]</PROPERTIES_JSON>'])
    engine = ChatEngine(store, index, model)

    messages = [
        {"role": "assistant", "content": '<PROPERTIES_JSON>["p1"]</PROPERTIES_JSON>'},
        {"role": "user", "content": "find more like that"},
    ]
    turn, body = asyncio.run(_run_turn(engine, messages))

    assert turn.merged.is_empty
    system = model.stream_calls[0]["system"]
    assert HINTS_OPEN + "{" not in system
    assert HINTS_INSTRUCTION not in system
    assert "<PROPERTIES_JSON>" not in body
    assert body == "I couldn't find listings yet. "


def test_last_message_not_from_user_streams_nothing():
    store = InMemoryConversationStore()
    model = FakeModel()
    engine = ChatEngine(store, FakePropertyIndex(), model)
    messages = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]

    turn, body = asyncio.run(_run_turn(engine, messages, "conv_123"))
    assert body == ""
    assert turn.created
    assert store.conversations[turn.conversation_id]["messages"] == []
    assert model.stream_calls == [] and model.complete_calls == []


def test_attachment_stub_skips_grounding_and_reply():
    store = InMemoryConversationStore()
    index = FakePropertyIndex(search_results=[make_property("s1")])
    model = FakeModel()
    engine = ChatEngine(store, index, model)

    turn, body = asyncio.run(_run_turn(engine, [{"role": "user", "content": "Sent a file: lease.pdf"}]))
    assert body == ""
    assert index.calls == []
    assert model.stream_calls == []
    assert [m["content"] for m in store.conversations[turn.conversation_id]["messages"]] == [
        "Sent a file: lease.pdf"
    ]


def test_inline_attachment_is_stripped_before_persisting():
    store = InMemoryConversationStore()
    index = FakePropertyIndex(search_results=[make_property("s1")])
    model = FakeModel(chunks=["Looks like damp."])
    engine = ChatEngine(store, index, model)

    content = "Is this mould? <IMAGE_DATA_URL>data:image/png;base64,iVBORw0KGgo=</IMAGE_DATA_URL>"
    turn, body = asyncio.run(_run_turn(engine, [{"role": "user", "content": content}]))

    assert index.calls == []
    assert ATTACHMENT_NOTE in model.stream_calls[0]["system"]
    assert model.stream_calls[0]["messages"][-1]["content"] == "Is this mould?"
    stored = [m["content"] for m in store.conversations[turn.conversation_id]["messages"]]
    assert stored == ["Is this mould?", "Looks like damp."]


def test_prompt_helpers():
    assert is_attachment_stub("Attached image: photo.jpg")
    assert not is_attachment_stub("I attached nothing")
    assert HINTS_INSTRUCTION not in build_system_prompt(MergedResults())
    grounded = build_system_prompt(MergedResults(search_ids=["s1"], context=[{"id": "s1"}]))
    assert '<PROPERTIES_HINTS>{"nearby": [], "search": ["s1"]}</PROPERTIES_HINTS>' in grounded
    assert grounded.endswith(HINTS_INSTRUCTION)
