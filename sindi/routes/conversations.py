from __future__ import annotations
"""
Sindi — Conversation Routes
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from sindi.errors import ConversationConflict, ConversationNotFound
from sindi.models import AppendMessageRequest, ConversationCreateRequest, ConversationUpdateRequest
from sindi.routes.auth import get_current_profile

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Serializers (internal snake_case → JSON camelCase)
# ---------------------------------------------------------------------------

def serialize_message(m: dict) -> dict:
    return {
        "id": m.get("id"),
        "role": m["role"],
        "content": m["content"],
        "attachments": m.get("attachments") or [],
        "timestamp": m.get("timestamp"),
    }


def serialize_conversation(c: dict) -> dict:
    sharing = c.get("sharing") or {}
    analytics = c.get("analytics") or {}
    out = {
        "id": c["id"],
        "title": c["title"],
        "status": c["status"],
        "topic": c.get("topic", "general"),
        "metadata": c.get("metadata") or {},
        "sharing": {
            "isShared": bool(sharing.get("is_shared")),
            "sharedAt": sharing.get("shared_at"),
            "expiresAt": sharing.get("expires_at"),
        },
        "analytics": {
            "messageCount": analytics.get("message_count", 0),
            "lastActivity": analytics.get("last_activity"),
            "totalTokens": analytics.get("total_tokens", 0),
        },
        "version": c.get("version"),
        "createdAt": c.get("created_at"),
        "updatedAt": c.get("updated_at"),
    }
    if "messages" in c:
        out["messages"] = [serialize_message(m) for m in c["messages"]]
    if "last_message" in c:
        out["lastMessage"] = serialize_message(c["last_message"]) if c["last_message"] else None
    return out


def _conversations(request: Request):
    return request.app.state.conversations


def _not_found():
    return HTTPException(status_code=404, detail="Conversation not found")


router = APIRouter()

# Routes: Conversations (authenticated, scoped to the active profile)
# ===========================================================================

@router.get("/api/ai/conversations")
async def list_conversations(
    request: Request,
    status: str | None = Query(default=None, pattern="^(active|archived|deleted)$"),
    profile: dict = Depends(get_current_profile),
):
    conversations = await _conversations(request).list_for_profile(profile["id"], status)
    return {
        "success": True,
        "conversations": [serialize_conversation(c) for c in conversations],
    }


@router.post("/api/ai/conversations")
async def create_conversation(
    req: ConversationCreateRequest,
    request: Request,
    profile: dict = Depends(get_current_profile),
):
    conversation = await _conversations(request).create(
        profile["id"],
        title=req.title,
        initial_message=req.initial_message,
        messages=[m.model_dump() for m in req.messages] if req.messages else None,
        topic=req.topic,
    )
    return {"success": True, "conversation": serialize_conversation(conversation)}


@router.get("/api/ai/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    request: Request,
    profile: dict = Depends(get_current_profile),
):
    try:
        conversation = await _conversations(request).get(conversation_id, profile["id"])
    except ConversationNotFound:
        raise _not_found()
    return {"success": True, "conversation": serialize_conversation(conversation)}


@router.put("/api/ai/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    req: ConversationUpdateRequest,
    request: Request,
    profile: dict = Depends(get_current_profile),
):
    try:
        conversation = await _conversations(request).update(
            conversation_id,
            profile["id"],
            title=req.title,
            status=req.status,
            topic=req.topic,
            messages=[m.model_dump() for m in req.messages] if req.messages is not None else None,
            expected_version=req.version,
        )
    except ConversationNotFound:
        raise _not_found()
    except ConversationConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"success": True, "conversation": serialize_conversation(conversation)}


@router.delete("/api/ai/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    request: Request,
    profile: dict = Depends(get_current_profile),
):
    """Soft delete; the conversation can still be restored."""
    try:
        await _conversations(request).soft_delete(conversation_id, profile["id"])
    except ConversationNotFound:
        raise _not_found()
    return {"success": True, "message": "Conversation deleted"}


@router.post("/api/ai/conversations/{conversation_id}/messages")
async def add_message(
    conversation_id: str,
    req: AppendMessageRequest,
    request: Request,
    profile: dict = Depends(get_current_profile),
):
    try:
        message = await _conversations(request).append(
            conversation_id,
            profile["id"],
            req.role,
            req.content,
            req.attachments,
        )
    except ConversationNotFound:
        raise _not_found()
    return {"success": True, "message": serialize_message(message)}


@router.post("/api/ai/conversations/{conversation_id}/archive")
async def archive_conversation(
    conversation_id: str,
    request: Request,
    profile: dict = Depends(get_current_profile),
):
    try:
        await _conversations(request).archive(conversation_id, profile["id"])
    except ConversationNotFound:
        raise _not_found()
    return {"success": True, "status": "archived"}


@router.post("/api/ai/conversations/{conversation_id}/restore")
async def restore_conversation(
    conversation_id: str,
    request: Request,
    profile: dict = Depends(get_current_profile),
):
    try:
        await _conversations(request).restore(conversation_id, profile["id"])
    except ConversationNotFound:
        raise _not_found()
    return {"success": True, "status": "active"}


# Routes: Sharing
# ===========================================================================

@router.post("/api/ai/conversations/{conversation_id}/share")
async def share_conversation(
    conversation_id: str,
    request: Request,
    profile: dict = Depends(get_current_profile),
):
    """Issue a fresh share link; any previous link for this conversation stops working."""
    try:
        share = await request.app.state.share_tokens.generate(conversation_id, profile["id"])
    except ConversationNotFound:
        raise _not_found()
    return {
        "success": True,
        "shareToken": share["token"],
        "shareUrl": f"/shared/{share['token']}",
        "expiresAt": share["expires_at"],
    }


@router.delete("/api/ai/conversations/{conversation_id}/share")
async def unshare_conversation(
    conversation_id: str,
    request: Request,
    profile: dict = Depends(get_current_profile),
):
    try:
        await request.app.state.share_tokens.revoke(conversation_id, profile["id"])
    except ConversationNotFound:
        raise _not_found()
    return {"success": True}
