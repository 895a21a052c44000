"""
Conversation store — the persistence seam used by the chat pipeline.

The chat engine, the conversation state machine and the share token manager
only talk to a ``ConversationStore``; production wires in
``SQLiteConversationStore`` (a thin adapter over ``sindi.database``), tests
wire in an in-memory fake.
"""
from __future__ import annotations

from typing import Optional, Protocol

import sindi.database as database


class ConversationStore(Protocol):
    async def create(
        self,
        profile_id: str,
        title: str,
        messages: Optional[list[dict]] = None,
        topic: str = "general",
        metadata: Optional[dict] = None,
    ) -> dict: ...

    async def find(self, conversation_id: str, profile_id: Optional[str] = None) -> Optional[dict]: ...

    async def list_for_profile(self, profile_id: str, status: Optional[str] = None) -> list[dict]: ...

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        attachments: Optional[list[dict]] = None,
    ) -> dict: ...

    async def update(
        self,
        conversation_id: str,
        profile_id: str,
        title: Optional[str] = None,
        status: Optional[str] = None,
        topic: Optional[str] = None,
        append_messages: Optional[list[dict]] = None,
        expected_version: Optional[int] = None,
    ) -> Optional[dict]: ...

    async def set_title_if_default(self, conversation_id: str, title: str) -> bool: ...

    async def set_status(self, conversation_id: str, profile_id: str, status: str) -> bool: ...

    async def set_share_token(self, conversation_id: str, token: str, shared_at: str, expires_at: str) -> bool: ...

    async def clear_share_token(self, conversation_id: str) -> bool: ...

    async def find_by_share_token(self, token: str, now: str) -> Optional[dict]: ...


class SQLiteConversationStore:
    """ConversationStore backed by the module-level aiosqlite functions."""

    async def create(self, profile_id, title, messages=None, topic="general", metadata=None):
        return await database.create_conversation(
            profile_id=profile_id,
            title=title,
            messages=messages,
            topic=topic,
            metadata=metadata,
        )

    async def find(self, conversation_id, profile_id=None):
        return await database.get_conversation(conversation_id, profile_id)

    async def list_for_profile(self, profile_id, status=None):
        return await database.list_conversations(profile_id, status)

    async def append_message(self, conversation_id, role, content, attachments=None):
        return await database.add_conversation_message(conversation_id, role, content, attachments)

    async def update(
        self,
        conversation_id,
        profile_id,
        title=None,
        status=None,
        topic=None,
        append_messages=None,
        expected_version=None,
    ):
        return await database.update_conversation(
            conversation_id,
            profile_id,
            title=title,
            status=status,
            topic=topic,
            append_messages=append_messages,
            expected_version=expected_version,
        )

    async def set_title_if_default(self, conversation_id, title):
        return await database.set_title_if_default(conversation_id, title)

    async def set_status(self, conversation_id, profile_id, status):
        return await database.set_conversation_status(conversation_id, profile_id, status)

    async def set_share_token(self, conversation_id, token, shared_at, expires_at):
        return await database.set_share_token(conversation_id, token, shared_at, expires_at)

    async def clear_share_token(self, conversation_id):
        return await database.clear_share_token(conversation_id)

    async def find_by_share_token(self, token, now):
        return await database.get_conversation_by_share_token(token, now)
