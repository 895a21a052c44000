"""
In-memory stand-ins for the chat pipeline's collaborators.

Zero network, zero LLM calls: FakePropertyIndex answers from canned lists,
FakeModel replays scripted replies, InMemoryConversationStore keeps
conversations in a dict with the same semantics as the SQLite store.
"""
from __future__ import annotations

import asyncio
import copy
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sindi.config import DEFAULT_TITLE
from sindi.errors import ConversationConflict, ConversationNotFound, PropertyIndexError
from sindi.property_index import property_id


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_property(pid: str, rent: float | None = None, coords: tuple | None = None, **extra) -> dict:
    prop = {"_id": pid, "title": f"Flat {pid}", "type": "apartment", "address": {"city": "Barcelona"}}
    if rent is not None:
        prop["rent"] = {"amount": rent, "currency": "EUR"}
    if coords is not None:
        prop["address"]["coordinates"] = {"type": "Point", "coordinates": list(coords)}
    prop.update(extra)
    return prop


# ===========================================================================
# Property index
# ===========================================================================

class FakePropertyIndex:
    def __init__(
        self,
        properties: list[dict] | None = None,
        search_results: list[dict] | None = None,
        nearby_results: list[dict] | None = None,
        fail_search: bool = False,
        fail_nearby: bool = False,
        fail_by_id: bool = False,
        delay: float = 0.0,
    ):
        self.properties = {property_id(p): p for p in (properties or [])}
        self.search_results = search_results or []
        self.nearby_results = nearby_results or []
        self.fail_search = fail_search
        self.fail_nearby = fail_nearby
        self.fail_by_id = fail_by_id
        self.delay = delay
        self.calls: list[tuple[str, object]] = []

    async def search(self, params):
        self.calls.append(("search", dict(params)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_search:
            raise PropertyIndexError("connection refused")
        return list(self.search_results)

    async def nearby(self, params):
        self.calls.append(("nearby", dict(params)))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_nearby:
            raise PropertyIndexError("connection refused")
        return list(self.nearby_results)

    async def get_by_id(self, pid):
        self.calls.append(("by_id", pid))
        if self.fail_by_id:
            raise PropertyIndexError("connection refused")
        return self.properties.get(pid)

    def params_for(self, kind: str) -> dict | None:
        for name, params in self.calls:
            if name == kind:
                return params
        return None


# ===========================================================================
# Model
# ===========================================================================

class FakeModel:
    """Scripted ChatModel.

    ``chunks`` is the streamed reply. ``filter_replies`` are returned in
    order for filter extraction calls; ``title_reply`` for title calls.
    ``fail_before_first`` raises before any chunk, ``fail_after`` raises
    once that many chunks have been produced.
    """

    def __init__(
        self,
        chunks: list[str] | None = None,
        filter_replies: list[str] | None = None,
        title_reply: str = "Flats in Raval",
        fail_before_first: bool = False,
        fail_after: int | None = None,
        complete_error: Exception | None = None,
        chunk_delay: float = 0.0,
    ):
        self.chunks = chunks if chunks is not None else ["Here ", "are ", "some ", "places."]
        self.filter_replies = list(filter_replies or ["{}"])
        self.title_reply = title_reply
        self.fail_before_first = fail_before_first
        self.fail_after = fail_after
        self.complete_error = complete_error
        self.chunk_delay = chunk_delay
        self.complete_calls: list[dict] = []
        self.stream_calls: list[dict] = []
        self.produced = 0

    async def complete(self, system, messages, max_tokens, temperature=0.0, phase="other"):
        self.complete_calls.append({"system": system, "messages": messages, "phase": phase})
        if self.complete_error is not None:
            raise self.complete_error
        if phase == "title":
            return self.title_reply
        if len(self.filter_replies) > 1:
            return self.filter_replies.pop(0)
        return self.filter_replies[0]

    async def stream(self, system, messages, max_tokens=2048, conversation_id=None):
        self.stream_calls.append({"system": system, "messages": messages, "conversation_id": conversation_id})
        if self.fail_before_first:
            raise RuntimeError("upstream unavailable")
        for chunk in self.chunks:
            if self.fail_after is not None and self.produced >= self.fail_after:
                raise RuntimeError("upstream connection reset")
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)
            self.produced += 1
            yield chunk

    def titles_requested(self) -> int:
        return sum(1 for c in self.complete_calls if c["phase"] == "title")


# ===========================================================================
# Conversation store
# ===========================================================================

class InMemoryConversationStore:
    def __init__(self, fail_appends: int = 0, append_delay: float = 0.0):
        self.conversations: dict[str, dict] = {}
        self.fail_appends = fail_appends
        self.append_delay = append_delay
        self.append_attempts = 0

    def _touch(self, c: dict) -> None:
        c["version"] += 1
        c["updated_at"] = _now()

    async def create(self, profile_id, title, messages=None, topic="general", metadata=None):
        now = _now()
        cid = uuid.uuid4().hex
        stored = [self._message(m, now) for m in (messages or [])]
        self.conversations[cid] = {
            "id": cid,
            "profile_id": profile_id,
            "title": title or DEFAULT_TITLE,
            "status": "active",
            "topic": topic,
            "metadata": metadata or {},
            "sharing": {"is_shared": False, "share_token": None, "shared_at": None, "expires_at": None},
            "analytics": {"message_count": len(stored), "last_activity": now, "total_tokens": 0},
            "version": 1,
            "created_at": now,
            "updated_at": now,
            "messages": stored,
        }
        return copy.deepcopy(self.conversations[cid])

    def _message(self, m: dict, now: str) -> dict:
        return {
            "id": str(uuid.uuid4()),
            "role": m["role"],
            "content": m["content"],
            "attachments": m.get("attachments") or [],
            "timestamp": m.get("timestamp") or now,
        }

    async def find(self, conversation_id, profile_id=None):
        c = self.conversations.get(conversation_id)
        if c is None or (profile_id is not None and c["profile_id"] != profile_id):
            return None
        return copy.deepcopy(c)

    async def list_for_profile(self, profile_id, status=None):
        out = []
        for c in self.conversations.values():
            if c["profile_id"] != profile_id:
                continue
            if status and c["status"] != status:
                continue
            if not status and c["status"] == "deleted":
                continue
            item = copy.deepcopy({k: v for k, v in c.items() if k != "messages"})
            item["last_message"] = copy.deepcopy(c["messages"][-1]) if c["messages"] else None
            out.append(item)
        return sorted(out, key=lambda c: c["updated_at"], reverse=True)

    async def append_message(self, conversation_id, role, content, attachments=None):
        self.append_attempts += 1
        if self.append_delay:
            await asyncio.sleep(self.append_delay)
        if self.fail_appends > 0:
            self.fail_appends -= 1
            raise RuntimeError("database is locked")
        c = self.conversations.get(conversation_id)
        if c is None:
            raise ConversationNotFound(conversation_id)
        message = self._message({"role": role, "content": content, "attachments": attachments}, _now())
        c["messages"].append(message)
        c["analytics"]["message_count"] += 1
        c["analytics"]["last_activity"] = message["timestamp"]
        self._touch(c)
        return copy.deepcopy(message)

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
        c = self.conversations.get(conversation_id)
        if c is None or c["profile_id"] != profile_id:
            return None
        if expected_version is not None and c["version"] != expected_version:
            raise ConversationConflict(conversation_id, expected_version, c["version"])
        if title is not None:
            c["title"] = title
        if status is not None:
            c["status"] = status
        if topic is not None:
            c["topic"] = topic
        now = _now()
        for m in append_messages or []:
            c["messages"].append(self._message(m, now))
            c["analytics"]["message_count"] += 1
        self._touch(c)
        return copy.deepcopy(c)

    async def set_title_if_default(self, conversation_id, title):
        c = self.conversations.get(conversation_id)
        if c is None or c["title"] != DEFAULT_TITLE:
            return False
        c["title"] = title
        self._touch(c)
        return True

    async def set_status(self, conversation_id, profile_id, status):
        c = self.conversations.get(conversation_id)
        if c is None or c["profile_id"] != profile_id:
            return False
        c["status"] = status
        self._touch(c)
        return True

    async def set_share_token(self, conversation_id, token, shared_at, expires_at):
        c = self.conversations.get(conversation_id)
        if c is None:
            return False
        c["sharing"] = {"is_shared": True, "share_token": token, "shared_at": shared_at, "expires_at": expires_at}
        self._touch(c)
        return True

    async def clear_share_token(self, conversation_id):
        c = self.conversations.get(conversation_id)
        if c is None:
            return False
        c["sharing"] = {"is_shared": False, "share_token": None, "shared_at": None, "expires_at": None}
        self._touch(c)
        return True

    async def find_by_share_token(self, token, now):
        for c in self.conversations.values():
            sharing = c["sharing"]
            if sharing["is_shared"] and sharing["share_token"] == token and sharing["expires_at"] > now:
                return copy.deepcopy(c)
        return None
