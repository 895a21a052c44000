from __future__ import annotations
"""
Sindi — Conversation Lifecycle
===============================
Creation-or-resume, durable message appends, first-exchange auto-titling
and the explicit archive / restore / soft-delete transitions.

  no conversation ──resolve──▶ active ──user turn──▶ streaming
        ▲                        │  ▲                    │
        └─ conv_… temp id        │  └── assistant turn ◀─┘ (+ title once)
                                 ▼
                      archived / deleted (explicit only)

Persistence failures during a turn are logged and never abort the answer:
the user message is best effort, the assistant message is retried once.
"""

import asyncio
import logging
import re

from sindi.config import (
    DEFAULT_TITLE,
    TEMP_CONVERSATION_PREFIX,
    TITLE_MAX_CHARS,
    TITLE_MAX_TOKENS,
    TITLE_TIMEOUT,
)
from sindi.errors import ConversationConflict, ConversationNotFound, InvalidConversationId

logger = logging.getLogger(__name__)


PERSISTED_ROLES = ("user", "assistant")

TITLE_PROMPT = (
    "Generate a concise, descriptive title (at most 50 characters) for a renter's chat "
    "with a housing assistant, based on the first user message. "
    "Return ONLY the title, without quotes."
)

_CONVERSATION_ID_RE = re.compile(r"^[0-9a-f]{32}$")


def persistable(messages: list[dict]) -> list[dict]:
    """Only user/assistant turns with text are stored; system/tool context is transient."""
    out = []
    for m in messages or []:
        if m.get("role") in PERSISTED_ROLES and str(m.get("content") or "").strip():
            out.append({
                "role": m["role"],
                "content": str(m["content"]),
                "attachments": m.get("attachments") or [],
            })
    return out


def clean_title(raw: str) -> str:
    title = (raw or "").strip().strip("\"'").strip()
    title = " ".join(title.split())
    if len(title) > TITLE_MAX_CHARS:
        title = title[:TITLE_MAX_CHARS - 3] + "..."
    return title


def fallback_title(first_user_message: str) -> str:
    """First user message cut to the title budget."""
    return clean_title(first_user_message)


def _first_user_message(messages: list[dict]) -> str | None:
    for m in messages:
        if m.get("role") == "user" and str(m.get("content") or "").strip():
            return str(m["content"])
    return None


class ConversationStateMachine:
    def __init__(self, store, model=None, title_timeout: float = TITLE_TIMEOUT):
        self.store = store
        self.model = model
        self.title_timeout = title_timeout

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------
    async def resolve(
        self,
        conversation_id: str | None,
        profile_id: str,
        initial_message: str | None = None,
    ) -> tuple[dict, bool]:
        """Load the owner's conversation, or create one.

        Returns ``(conversation, created)``. ``created`` is True when there was
        no id or the client sent a temporary ``conv_…`` id; the caller reports
        the persisted id back to the client in that case.
        """
        if not conversation_id or conversation_id.startswith(TEMP_CONVERSATION_PREFIX):
            metadata = {"source": "chat"}
            if initial_message:
                metadata["initialMessage"] = initial_message
            conversation = await self.store.create(
                profile_id=profile_id,
                title=DEFAULT_TITLE,
                topic="general",
                metadata=metadata,
            )
            if conversation_id:
                logger.info(f"[conversations] promoted {conversation_id} → {conversation['id']}")
            else:
                logger.info(f"[conversations] created {conversation['id']}")
            return conversation, True

        if not _CONVERSATION_ID_RE.match(conversation_id):
            raise InvalidConversationId(conversation_id)

        conversation = await self.store.find(conversation_id, profile_id)
        if conversation is None or conversation["status"] == "deleted":
            raise ConversationNotFound(conversation_id)
        return conversation, False

    # ------------------------------------------------------------------
    # Turn appends
    # ------------------------------------------------------------------
    async def record_user_message(
        self,
        conversation_id: str,
        content: str,
        attachments: list[dict] | None = None,
    ) -> dict | None:
        try:
            return await self.store.append_message(conversation_id, "user", content, attachments)
        except Exception as e:
            logger.error(f"[conversations] failed to save user message to {conversation_id}: {e}")
            return None

    async def record_assistant_message(self, conversation_id: str, content: str) -> dict | None:
        """Append the assistant reply; one retry, then give up and log."""
        for attempt in (1, 2):
            try:
                return await self.store.append_message(conversation_id, "assistant", content)
            except Exception as e:
                if attempt == 1:
                    logger.warning(
                        f"[conversations] assistant message save failed for {conversation_id}: {e}. Retrying..."
                    )
                else:
                    logger.error(
                        f"[conversations] assistant message lost for {conversation_id} "
                        f"({len(content)} chars): {e}"
                    )
        return None

    # ------------------------------------------------------------------
    # Titles
    # ------------------------------------------------------------------
    async def generate_title(self, first_user_message: str) -> str:
        """Model title with a deterministic fallback; never raises."""
        if self.model is not None:
            try:
                raw = await asyncio.wait_for(
                    self.model.complete(
                        system=TITLE_PROMPT,
                        messages=[{"role": "user", "content": first_user_message}],
                        max_tokens=TITLE_MAX_TOKENS,
                        temperature=0.3,
                        phase="title",
                    ),
                    timeout=self.title_timeout,
                )
                title = clean_title(raw)
                if title and title != DEFAULT_TITLE:
                    return title
            except asyncio.TimeoutError:
                logger.warning(f"[conversations] title generation timed out after {self.title_timeout}s")
            except Exception as e:
                logger.warning(f"[conversations] title generation failed: {e}")
        return fallback_title(first_user_message)

    async def maybe_auto_title(self, conversation_id: str) -> str | None:
        """Title the conversation after its first completed exchange.

        Runs only while the title is still the default and exactly one
        assistant reply is stored; the write itself is a compare-and-set on
        the default title, so concurrent completions title at most once.
        """
        try:
            conversation = await self.store.find(conversation_id)
        except Exception as e:
            logger.warning(f"[conversations] could not load {conversation_id} for titling: {e}")
            return None
        if conversation is None or conversation["title"] != DEFAULT_TITLE:
            return None

        messages = conversation.get("messages", [])
        assistant_turns = sum(1 for m in messages if m["role"] == "assistant")
        first_user = _first_user_message(messages)
        if assistant_turns != 1 or first_user is None:
            return None

        return await self._apply_title(conversation_id, first_user)

    async def _apply_title(self, conversation_id: str, first_user_message: str) -> str | None:
        title = await self.generate_title(first_user_message)
        if not title:
            return None
        try:
            if await self.store.set_title_if_default(conversation_id, title):
                logger.info(f"[conversations] titled {conversation_id}: {title!r}")
                return title
        except Exception as e:
            logger.warning(f"[conversations] failed to save title for {conversation_id}: {e}")
        return None

    # ------------------------------------------------------------------
    # Explicit CRUD
    # ------------------------------------------------------------------
    async def create(
        self,
        profile_id: str,
        title: str | None = None,
        initial_message: str | None = None,
        messages: list[dict] | None = None,
        topic: str = "general",
    ) -> dict:
        seed = persistable(messages or [])
        if not seed and initial_message and initial_message.strip():
            seed = [{"role": "user", "content": initial_message.strip(), "attachments": []}]

        metadata = {"source": "api"}
        if initial_message:
            metadata["initialMessage"] = initial_message

        conversation = await self.store.create(
            profile_id=profile_id,
            title=(title or "").strip() or DEFAULT_TITLE,
            messages=seed,
            topic=topic or "general",
            metadata=metadata,
        )

        first_user = _first_user_message(seed)
        if conversation["title"] == DEFAULT_TITLE and first_user:
            title = await self._apply_title(conversation["id"], first_user)
            if title:
                conversation["title"] = title
        return conversation

    async def get(self, conversation_id: str, profile_id: str) -> dict:
        conversation = await self.store.find(conversation_id, profile_id)
        if conversation is None or conversation["status"] == "deleted":
            raise ConversationNotFound(conversation_id)
        return conversation

    async def list_for_profile(self, profile_id: str, status: str | None = None) -> list[dict]:
        return await self.store.list_for_profile(profile_id, status)

    async def append(
        self,
        conversation_id: str,
        profile_id: str,
        role: str,
        content: str,
        attachments: list[dict] | None = None,
    ) -> dict:
        await self.get(conversation_id, profile_id)
        return await self.store.append_message(conversation_id, role, content, attachments)

    async def update(
        self,
        conversation_id: str,
        profile_id: str,
        title: str | None = None,
        status: str | None = None,
        topic: str | None = None,
        messages: list[dict] | None = None,
        expected_version: int | None = None,
    ) -> dict:
        """Metadata update plus optional message sync.

        ``messages`` is the client's full view of the conversation. It may only
        extend what is stored: the stored turns must be an exact prefix, and
        the remainder is appended. Anything else would rewrite history.
        """
        current = await self.get(conversation_id, profile_id)

        append = None
        if messages is not None:
            incoming = persistable(messages)
            stored = current.get("messages", [])
            same_prefix = len(incoming) >= len(stored) and all(
                a["role"] == b["role"] and a["content"] == b["content"]
                for a, b in zip(stored, incoming)
            )
            if not same_prefix:
                raise ConversationConflict(
                    conversation_id,
                    expected_version,
                    current["version"],
                    reason="Stored messages can only be appended to, not rewritten",
                )
            append = incoming[len(stored):]

        updated = await self.store.update(
            conversation_id,
            profile_id,
            title=title.strip() if title and title.strip() else None,
            status=status,
            topic=topic,
            append_messages=append,
            expected_version=expected_version,
        )
        if updated is None:
            raise ConversationNotFound(conversation_id)
        return updated

    async def _transition(self, conversation_id: str, profile_id: str, status: str) -> None:
        if not await self.store.set_status(conversation_id, profile_id, status):
            raise ConversationNotFound(conversation_id)
        logger.info(f"[conversations] {conversation_id} → {status}")

    async def archive(self, conversation_id: str, profile_id: str) -> None:
        await self.get(conversation_id, profile_id)
        await self._transition(conversation_id, profile_id, "archived")

    async def restore(self, conversation_id: str, profile_id: str) -> None:
        # archived and soft-deleted conversations both come back as active
        if await self.store.find(conversation_id, profile_id) is None:
            raise ConversationNotFound(conversation_id)
        await self._transition(conversation_id, profile_id, "active")

    async def soft_delete(self, conversation_id: str, profile_id: str) -> None:
        await self.get(conversation_id, profile_id)
        await self._transition(conversation_id, profile_id, "deleted")
