from __future__ import annotations
"""
Sindi — Streaming Chat Route
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from sindi.errors import ConversationNotFound, InvalidConversationId, UpstreamModelError
from sindi.models import ChatStreamRequest
from sindi.routes.auth import get_current_profile

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # disable nginx buffering
}

router = APIRouter()

# Routes: Chat
# ===========================================================================

@router.post("/api/ai/stream")
async def stream_chat(
    req: ChatStreamRequest,
    request: Request,
    profile: dict = Depends(get_current_profile),
):
    """Answer the last user message as a plain-text chunked stream."""
    engine = request.app.state.chat_engine
    messages = [m.model_dump() for m in req.messages]

    try:
        turn = await engine.start_turn(messages, req.conversation_id, profile["id"])
    except InvalidConversationId:
        raise HTTPException(status_code=400, detail="Invalid conversation ID")
    except ConversationNotFound:
        raise HTTPException(status_code=404, detail="Conversation not found")

    try:
        await turn.prime()
    except UpstreamModelError as e:
        logger.error(f"[chat] {turn.conversation_id}: generation failed: {e}")
        raise HTTPException(status_code=500, detail="Failed to generate streaming response")

    headers = dict(STREAM_HEADERS)
    if turn.created:
        headers["X-Conversation-ID"] = turn.conversation_id

    return StreamingResponse(
        turn.body(),
        media_type="text/plain; charset=utf-8",
        headers=headers,
    )


@router.get("/api/ai/health")
async def ai_health(request: Request):
    engine = getattr(request.app.state, "chat_engine", None)
    return {
        "status": "ok",
        "service": "sindi",
        "ready": engine is not None,
    }
