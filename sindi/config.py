from __future__ import annotations
"""
Sindi — Configuration
======================
Environment-driven settings shared by the chat pipeline, the persistence
layer and the property index client. Values are read once at import time;
``.env`` at the repository root is honoured.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).parent.parent  # sindi/config.py → sindi → repo root
load_dotenv(PROJECT_ROOT / ".env")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


DATABASE_PATH = os.getenv("DATABASE_PATH", str(PROJECT_ROOT / "data" / "sindi.db"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:8081").split(",")
ENABLE_DEV_AUTH = _env_bool("ENABLE_DEV_AUTH", False)

# ---------------------------------------------------------------------------
# Property index (external collaborator)
# ---------------------------------------------------------------------------
PROPERTY_API_BASE_URL = os.getenv("PROPERTY_API_BASE_URL", "http://localhost:3001").rstrip("/")
PROPERTY_API_TIMEOUT = float(os.getenv("PROPERTY_API_TIMEOUT", "10"))
RETRIEVAL_TIMEOUT = float(os.getenv("RETRIEVAL_TIMEOUT", "8"))

DEFAULT_LIST_LIMIT = 10
NEARBY_LIMIT = 12
NEARBY_MAX_DISTANCE_M = 3000

# ---------------------------------------------------------------------------
# Grounding / hints
# ---------------------------------------------------------------------------
RESULTS_RETURN_MAX = 5       # per hint list
CONTEXT_MAX = 8              # deduplicated grounding entries
AMENITY_FLAGS_MAX = 8
DESCRIPTION_MAX_CHARS = 240

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
SINDI_MODEL = os.getenv("SINDI_MODEL", "claude-sonnet-4-5-20250929")
FALLBACK_MODEL = os.getenv("FALLBACK_MODEL", "claude-sonnet-4-20250514")
UTILITY_MODEL = os.getenv("UTILITY_MODEL", "claude-haiku-4-5-20251001")

CHAT_MAX_TOKENS = int(os.getenv("CHAT_MAX_TOKENS", "2048"))
FILTER_MAX_TOKENS = int(os.getenv("FILTER_MAX_TOKENS", "256"))
TITLE_MAX_TOKENS = int(os.getenv("TITLE_MAX_TOKENS", "24"))
FILTER_TIMEOUT = float(os.getenv("FILTER_TIMEOUT", "6"))
TITLE_TIMEOUT = float(os.getenv("TITLE_TIMEOUT", "6"))
CHAT_TEMPERATURE = 0.2

# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------
DEFAULT_TITLE = "New Conversation"
TITLE_MAX_CHARS = 50
TEMP_CONVERSATION_PREFIX = "conv_"
SHARE_TOKEN_TTL_HOURS = int(os.getenv("SHARE_TOKEN_TTL_HOURS", "24"))

# When the client goes away mid-stream (or the model stream dies after the
# first token) the text delivered so far is persisted as the assistant turn.
PERSIST_PARTIAL_ON_CLOSE = _env_bool("PERSIST_PARTIAL_ON_CLOSE", True)
