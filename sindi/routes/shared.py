from __future__ import annotations
"""
Sindi — Public Shared Conversations
"""
from fastapi import APIRouter, HTTPException, Request

from sindi.routes.conversations import serialize_message

router = APIRouter()


@router.get("/api/ai/shared/{token}")
async def get_shared_conversation(token: str, request: Request):
    """Read-only view of a shared conversation. No auth; no owner fields."""
    conversation = await request.app.state.share_tokens.lookup(token)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Shared conversation not found or expired")

    return {
        "success": True,
        "conversation": {
            "id": conversation["id"],
            "title": conversation["title"],
            "messages": [
                {k: v for k, v in serialize_message(m).items() if k != "id"}
                for m in conversation.get("messages", [])
            ],
            "createdAt": conversation["created_at"],
            "updatedAt": conversation["updated_at"],
            "status": conversation["status"],
        },
    }
