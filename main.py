from __future__ import annotations
"""
Sindi — FastAPI Backend
========================
Main application entry point. Defines app, lifespan, CORS, error envelopes
and includes route modules. All route handlers live in sindi/routes/.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import sindi.database as database
from sindi.chat_engine import ChatEngine
from sindi.config import CORS_ORIGINS, DATABASE_PATH, LOG_LEVEL, PROPERTY_API_BASE_URL
from sindi.conversation_store import SQLiteConversationStore
from sindi.conversations import ConversationStateMachine
from sindi.llm import AnthropicModel
from sindi.property_index import HttpPropertyIndex
from sindi.share_tokens import ShareTokenManager
from sindi.stream_relay import drain_background_tasks

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("sindi")

database.set_db_path(DATABASE_PATH)


def wire(app: FastAPI, store, index, model) -> None:
    """Attach the chat pipeline and its collaborators to the app."""
    conversations = ConversationStateMachine(store, model)
    app.state.store = store
    app.state.property_index = index
    app.state.model = model
    app.state.conversations = conversations
    app.state.share_tokens = ShareTokenManager(store)
    app.state.chat_engine = ChatEngine(store, index, model, conversations=conversations)


# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await database.init_db()
    logger.info(f"[startup] Database initialized at: {DATABASE_PATH}")

    index = None
    if getattr(app.state, "chat_engine", None) is None:
        index = HttpPropertyIndex(PROPERTY_API_BASE_URL)
        wire(app, SQLiteConversationStore(), index, AnthropicModel())
        logger.info(f"[startup] Property index: {PROPERTY_API_BASE_URL}")

    yield

    # Shutdown
    await drain_background_tasks()
    if index is not None:
        await index.aclose()


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Sindi",
    description="Conversational property search and tenant-rights assistant",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Conversation-ID"],
)


# ---------------------------------------------------------------------------
# Error envelopes: {"error": "..."}
# ---------------------------------------------------------------------------

@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"error": f"{field}: {message}" if field else message},
    )


# ---------------------------------------------------------------------------
# Health check (inline — too small for its own module)
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "sindi"}


# ---------------------------------------------------------------------------
# Include route modules
# ---------------------------------------------------------------------------

from sindi.routes.auth import router as auth_router
from sindi.routes.chat import router as chat_router
from sindi.routes.conversations import router as conversations_router
from sindi.routes.shared import router as shared_router

app.include_router(auth_router, tags=["Auth"])
app.include_router(chat_router, tags=["Chat"])
app.include_router(conversations_router, tags=["Conversations"])
app.include_router(shared_router, tags=["Shared"])
