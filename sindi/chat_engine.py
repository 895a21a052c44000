from __future__ import annotations
"""
Sindi — Chat Engine
====================
Per-turn orchestration for the streaming chat endpoint:

  resolve conversation → save user message → extract filters
    → nearby ∥ search → merge → system prompt (+ hints/context)
    → model stream → relay (client + accumulator) → save reply → title once

Everything between "save user message" and "model stream" is enrichment and
fails soft. Only identity/ownership errors and a model failure before the
first token end the turn.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import AsyncIterator

from sindi.config import CHAT_MAX_TOKENS, PERSIST_PARTIAL_ON_CLOSE, RETRIEVAL_TIMEOUT
from sindi.conversations import ConversationStateMachine
from sindi.retrieval.filters import FilterExtractor
from sindi.retrieval.merger import MergedResults, merge_results
from sindi.retrieval.retrievers import run_retrieval
from sindi.retrieval.tags import (
    HINTS_INSTRUCTION,
    PropertiesBlockGuard,
    extract_cited_ids,
    render_context_block,
    render_hints_block,
)
from sindi.stream_relay import StreamRelay

logger = logging.getLogger(__name__)


# ===========================================================================
# System prompt
# ===========================================================================

SINDI_SYSTEM_PROMPT = """You are Sindi, the renter's assistant for Homiio. You help people find a place to rent and understand their rights as tenants. Be brief, accurate and on the tenant's side.
- Put tenant rights, fair housing and current local law first.
- When someone is looking for a place, use the Homiio listings you are given, then add any rights tips that apply.
- For Catalonia, prefer official sources and the Sindicat de Llogateres.
- Keep replies short unless the user asks for more detail.

Listings block. Only when the user's CURRENT message explicitly asks you to find, show, search or browse homes or listings, finish your reply with exactly one machine-readable block on its own line, containing nothing but the matching property IDs:

<PROPERTIES_JSON>["propertyId1","propertyId2"]</PROPERTIES_JSON>

Rules for the block:
- At most 5 IDs.
- Copy the IDs exactly, in order, from one list of <PROPERTIES_HINTS>. Never add, change, guess or invent an ID.
- Pick the list by intent, not by keywords: "nearby" when the user wants places close to or like the ones already shown, otherwise "search".
- No <PROPERTIES_HINTS> in the context means no block at all.
- A message about rights, leases, repairs or anything other than finding a home gets no block.

Visible text:
- Never write property IDs or JSON in the visible reply.
- If the user asks for listings and there are no hints, say you have not found matching homes yet and ask about budget or area. Do not claim results you do not have.
- Use <PROPERTIES_CONTEXT> (title, area, rent, amenities, ...) to describe the homes in your own words. Never quote the tags themselves.
- When asked for "others" or for the closest places, prefer homes that have not been shown yet, nearest first."""

ATTACHMENT_NOTE = (
    "The user attached a file or image that you cannot view. Answer from their text, "
    "and ask them to describe what the attachment shows if it matters."
)


# ===========================================================================
# Attachments
# ===========================================================================

_INLINE_ATTACHMENT_RE = re.compile(r"<(IMAGE|FILE)_DATA_URL>[\s\S]*?</\1_DATA_URL>", re.IGNORECASE)
_STUB_PREFIXES = ("sent a file:", "attached image:", "attached file:")


def has_inline_attachment(text: str) -> bool:
    return bool(_INLINE_ATTACHMENT_RE.search(text or ""))


def is_attachment_stub(text: str) -> bool:
    """A placeholder message the client sends alongside an upload."""
    return (text or "").strip().lower().startswith(_STUB_PREFIXES)


def strip_inline_attachments(text: str) -> str:
    return _INLINE_ATTACHMENT_RE.sub("", text or "").strip()


# ===========================================================================
# Prompt assembly
# ===========================================================================

def build_system_prompt(merged: MergedResults | None, has_attachment: bool = False) -> str:
    """Base prompt, plus hints/context only when retrieval produced something.

    With no hints the model is never told to emit a listings block.
    """
    parts = [SINDI_SYSTEM_PROMPT]
    if has_attachment:
        parts.append(ATTACHMENT_NOTE)
    if merged is not None and not merged.is_empty:
        parts.append(render_hints_block(merged.hints))
        parts.append(render_context_block(merged.context))
        parts.append(HINTS_INSTRUCTION)
    return "\n\n".join(parts)


# ===========================================================================
# Turn
# ===========================================================================

async def _empty_stream() -> AsyncIterator[str]:
    return
    yield


@dataclass
class Turn:
    conversation: dict
    created: bool
    relay: StreamRelay | None = None
    filters: dict = field(default_factory=dict)
    merged: MergedResults = field(default_factory=MergedResults)
    system_prompt: str = ""

    @property
    def conversation_id(self) -> str:
        return self.conversation["id"]

    async def prime(self) -> None:
        if self.relay is not None:
            await self.relay.prime()

    def body(self) -> AsyncIterator[str]:
        if self.relay is None:
            return _empty_stream()
        return self.relay.stream()


class ChatEngine:
    """Wires the collaborators for one streaming turn.

    ``store`` (ConversationStore), ``index`` (PropertyIndexClient) and
    ``model`` (ChatModel) are injected; nothing here reaches for globals.
    """

    def __init__(
        self,
        store,
        index,
        model,
        extractor: FilterExtractor | None = None,
        conversations: ConversationStateMachine | None = None,
        retrieval_timeout: float = RETRIEVAL_TIMEOUT,
        persist_partial: bool = PERSIST_PARTIAL_ON_CLOSE,
    ):
        self.store = store
        self.index = index
        self.model = model
        self.extractor = extractor or FilterExtractor(model)
        self.conversations = conversations or ConversationStateMachine(store, model)
        self.retrieval_timeout = retrieval_timeout
        self.persist_partial = persist_partial

    async def ground(self, messages: list[dict], user_text: str) -> tuple[dict, MergedResults]:
        """Filters → concurrent retrieval → merged hints and context. Never raises."""
        cited_ids = extract_cited_ids(messages[:-1])
        filters = await self.extractor.extract(user_text)
        result = await run_retrieval(
            self.index,
            user_text,
            filters,
            cited_ids,
            timeout=self.retrieval_timeout,
        )
        merged = merge_results(result, filters)
        if merged.is_empty:
            logger.info("[chat] no retrieval results; answering without hints")
        return filters, merged

    async def start_turn(
        self,
        messages: list[dict],
        conversation_id: str | None,
        profile_id: str,
    ) -> Turn:
        """Resolve the conversation and set up the relay for this turn.

        The model stream is created here but not started; call
        ``Turn.prime()`` before sending response headers.
        """
        last = messages[-1] if messages else None
        last_text = str(last.get("content") or "") if last else ""
        conversation, created = await self.conversations.resolve(
            conversation_id,
            profile_id,
            initial_message=last_text if last and last.get("role") == "user" else None,
        )
        cid = conversation["id"]

        if not last or last.get("role") != "user":
            logger.info(f"[chat] {cid}: last message is not a user turn; nothing to answer")
            return Turn(conversation=conversation, created=created)

        inline = has_inline_attachment(last_text)
        stub = is_attachment_stub(last_text)
        user_text = strip_inline_attachments(last_text) if inline else last_text

        await self.conversations.record_user_message(
            cid,
            (user_text or "Sent a file") if inline else last_text,
        )

        if stub:
            logger.info(f"[chat] {cid}: attachment stub; no reply")
            return Turn(conversation=conversation, created=created)

        filters: dict = {}
        merged = MergedResults()
        if not inline:
            filters, merged = await self.ground(messages, user_text)

        history = list(messages[:-1]) + [{"role": "user", "content": user_text or "Sent a file"}]
        system_prompt = build_system_prompt(merged, has_attachment=inline)

        async def on_finish(text: str, completed: bool) -> None:
            saved = await self.conversations.record_assistant_message(cid, text)
            if saved is not None:
                await self.conversations.maybe_auto_title(cid)

        relay = StreamRelay(
            self.model.stream(
                system=system_prompt,
                messages=history,
                max_tokens=CHAT_MAX_TOKENS,
                conversation_id=cid,
            ),
            on_finish,
            guard=PropertiesBlockGuard(merged.allowed_ids),
            persist_partial=self.persist_partial,
            label=cid,
        )

        logger.info(
            f"[chat] {cid}: filters={filters} hints(nearby={len(merged.nearby_ids)}, "
            f"search={len(merged.search_ids)}) context={len(merged.context)}"
        )
        return Turn(
            conversation=conversation,
            created=created,
            relay=relay,
            filters=filters,
            merged=merged,
            system_prompt=system_prompt,
        )
