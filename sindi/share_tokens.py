"""
Share tokens for read-only public links to a conversation.

A conversation has at most one live token: generating a new one overwrites
the previous token, so old links stop resolving immediately. Expiry is
enforced at lookup time; expired rows are never returned even if they are
still marked shared.
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from sindi.config import SHARE_TOKEN_TTL_HOURS
from sindi.errors import ConversationNotFound

logger = logging.getLogger(__name__)


class ShareTokenManager:
    def __init__(self, store, ttl_hours: int = SHARE_TOKEN_TTL_HOURS, clock=None):
        self.store = store
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    async def generate(self, conversation_id: str, profile_id: str) -> dict:
        """Issue a fresh token for a conversation the profile owns.

        Returns ``{"token", "shared_at", "expires_at"}``.
        """
        conversation = await self.store.find(conversation_id, profile_id)
        if conversation is None or conversation["status"] == "deleted":
            raise ConversationNotFound(conversation_id)

        token = secrets.token_hex(32)
        shared_at = self.now()
        expires_at = shared_at + self.ttl

        updated = await self.store.set_share_token(
            conversation_id, token, shared_at.isoformat(), expires_at.isoformat()
        )
        if not updated:
            raise ConversationNotFound(conversation_id)

        logger.info(f"[share] issued token for {conversation_id}, expires {expires_at.isoformat()}")
        return {
            "token": token,
            "shared_at": shared_at.isoformat(),
            "expires_at": expires_at.isoformat(),
        }

    async def revoke(self, conversation_id: str, profile_id: str) -> None:
        conversation = await self.store.find(conversation_id, profile_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        await self.store.clear_share_token(conversation_id)
        logger.info(f"[share] revoked token for {conversation_id}")

    async def lookup(self, token: str) -> dict | None:
        """The shared conversation for ``token``, or None if unknown, revoked or expired."""
        if not token:
            return None
        conversation = await self.store.find_by_share_token(token, self.now().isoformat())
        if conversation is None or conversation["status"] == "deleted":
            return None
        return conversation
