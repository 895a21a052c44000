from __future__ import annotations
"""
Sindi — Database Layer
=======================
Async SQLite storage for users, profiles, Sindi conversations and their
messages, share tokens and LLM usage.

Messages live in their own table keyed by an autoincrement sequence, so an
append is a single INSERT and insertion order is the read order. Every
mutation of a conversation bumps its ``version`` column.
"""

import json
import uuid
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from sindi.config import DEFAULT_TITLE
from sindi.errors import ConversationConflict, ConversationNotFound

# ---------------------------------------------------------------------------
# Database path (set by main.py at startup)
# ---------------------------------------------------------------------------
_db_path: str = ""


def set_db_path(path: str):
    global _db_path
    _db_path = path


def _get_db_path() -> str:
    if not _db_path:
        raise RuntimeError("Database path not set. Call set_db_path() first.")
    return _db_path


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


CONVERSATION_STATUSES = ("active", "archived", "deleted")
CONVERSATION_TOPICS = ("rent", "repairs", "lease", "rights", "general")


# ===========================================================================
# Initialization
# ===========================================================================

async def init_db():
    """Create tables if they don't exist."""
    Path(_get_db_path()).parent.mkdir(parents=True, exist_ok=True)

    async with aiosqlite.connect(_get_db_path()) as db:
        # --- Users (identity is resolved upstream; we only keep the link) ---
        await db.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                last_login_at TIMESTAMP
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS auth_sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                expires_at TIMESTAMP NOT NULL
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                profile_type TEXT NOT NULL DEFAULT 'personal',
                is_active BOOLEAN DEFAULT TRUE,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # --- Conversations ---
        await db.execute(f"""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                profile_id TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '{DEFAULT_TITLE}',
                status TEXT NOT NULL DEFAULT 'active',
                topic TEXT NOT NULL DEFAULT 'general',
                metadata TEXT,
                is_shared BOOLEAN DEFAULT FALSE,
                share_token TEXT UNIQUE,
                shared_at TIMESTAMP,
                share_expires_at TIMESTAMP,
                message_count INTEGER DEFAULT 0,
                last_activity TIMESTAMP,
                total_tokens INTEGER DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS conversation_messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                conversation_id TEXT NOT NULL REFERENCES conversations(id),
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                attachments TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # --- LLM usage ---
        await db.execute("""
            CREATE TABLE IF NOT EXISTS llm_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id TEXT,
                phase TEXT NOT NULL,
                model TEXT NOT NULL,
                input_tokens INTEGER DEFAULT 0,
                output_tokens INTEGER DEFAULT 0,
                estimated_cost_usd REAL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_conversations_profile "
            "ON conversations(profile_id, status, updated_at)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_messages_conversation "
            "ON conversation_messages(conversation_id, seq)"
        )
        await db.commit()


# ===========================================================================
# LLM Usage
# ===========================================================================

_MODEL_COSTS = {
    "claude-sonnet-4-20250514": {"input": 3.0, "output": 15.0},
    "claude-sonnet-4-5-20250929": {"input": 3.0, "output": 15.0},
    "claude-haiku-4-5-20251001": {"input": 1.0, "output": 5.0},
}


async def log_llm_usage(
    response_usage,
    model: str,
    phase: str,
    conversation_id: str | None = None,
) -> None:
    """Persist a single LLM call's token usage.

    Args:
        response_usage: The ``usage`` object from the Anthropic SDK.
        model: Model identifier string.
        phase: One of 'chat', 'filters', 'title'.
    """
    input_tokens = getattr(response_usage, "input_tokens", 0) or 0
    output_tokens = getattr(response_usage, "output_tokens", 0) or 0

    costs = _MODEL_COSTS.get(model, {"input": 3.0, "output": 15.0})
    estimated_cost = (input_tokens * costs["input"] + output_tokens * costs["output"]) / 1_000_000

    try:
        async with aiosqlite.connect(_get_db_path()) as db:
            await db.execute(
                """INSERT INTO llm_usage
                   (conversation_id, phase, model, input_tokens, output_tokens, estimated_cost_usd, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (conversation_id, phase, model, input_tokens, output_tokens, estimated_cost, _now()),
            )
            if conversation_id:
                await db.execute(
                    "UPDATE conversations SET total_tokens = total_tokens + ? WHERE id = ?",
                    (input_tokens + output_tokens, conversation_id),
                )
            await db.commit()
    except Exception:
        pass  # Non-critical — don't break the request over telemetry


# ===========================================================================
# Users, Sessions & Profiles
# ===========================================================================

async def get_or_create_user(email: str) -> dict:
    """Get an existing user or create a new one by email."""
    email = email.strip().lower()
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT * FROM users WHERE email = ?", (email,))
        row = await cursor.fetchone()
        if row is not None:
            return {"id": row["id"], "email": row["email"], "created_at": row["created_at"]}

        user_id = str(uuid.uuid4())
        now = _now()
        await db.execute(
            "INSERT INTO users (id, email, created_at) VALUES (?, ?, ?)",
            (user_id, email, now),
        )
        await db.commit()

    return {"id": user_id, "email": email, "created_at": now}


async def create_auth_session(user_id: str, expires_at: str) -> str:
    """Create a bearer-token session. Returns the token (which is the row ID)."""
    token = str(uuid.uuid4())
    now = _now()

    async with aiosqlite.connect(_get_db_path()) as db:
        await db.execute(
            "INSERT INTO auth_sessions (id, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
            (token, user_id, now, expires_at),
        )
        await db.execute("UPDATE users SET last_login_at = ? WHERE id = ?", (now, user_id))
        await db.commit()

    return token


async def get_user_by_token(token: str) -> dict | None:
    """Look up a user by their session token. Returns None if invalid/expired."""
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            """
            SELECT u.* FROM auth_sessions s
            JOIN users u ON s.user_id = u.id
            WHERE s.id = ? AND s.expires_at > ?
            """,
            (token, _now()),
        )
        row = await cursor.fetchone()

    if row is None:
        return None
    return {
        "id": row["id"],
        "email": row["email"],
        "created_at": row["created_at"],
        "last_login_at": row["last_login_at"],
    }


async def delete_auth_session(token: str) -> bool:
    """Delete a session token (logout)."""
    async with aiosqlite.connect(_get_db_path()) as db:
        cursor = await db.execute("DELETE FROM auth_sessions WHERE id = ?", (token,))
        await db.commit()
        return cursor.rowcount > 0


async def create_profile(user_id: str, profile_type: str = "personal") -> dict:
    """Create a profile and make it the user's only active one."""
    profile_id = str(uuid.uuid4())
    now = _now()
    async with aiosqlite.connect(_get_db_path()) as db:
        await db.execute("UPDATE profiles SET is_active = FALSE WHERE user_id = ?", (user_id,))
        await db.execute(
            """
            INSERT INTO profiles (id, user_id, profile_type, is_active, created_at)
            VALUES (?, ?, ?, TRUE, ?)
            """,
            (profile_id, user_id, profile_type, now),
        )
        await db.commit()

    return {
        "id": profile_id,
        "user_id": user_id,
        "profile_type": profile_type,
        "is_active": True,
        "created_at": now,
    }


async def get_active_profile(user_id: str) -> dict | None:
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            """
            SELECT * FROM profiles
            WHERE user_id = ? AND is_active = TRUE
            ORDER BY created_at DESC LIMIT 1
            """,
            (user_id,),
        )
        row = await cursor.fetchone()

    if row is None:
        return None
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "profile_type": row["profile_type"],
        "is_active": bool(row["is_active"]),
        "created_at": row["created_at"],
    }


# ===========================================================================
# Conversations
# ===========================================================================

def _conversation_from_row(row, messages: list[dict] | None = None) -> dict:
    conversation = {
        "id": row["id"],
        "profile_id": row["profile_id"],
        "title": row["title"],
        "status": row["status"],
        "topic": row["topic"],
        "metadata": json.loads(row["metadata"]) if row["metadata"] else {},
        "sharing": {
            "is_shared": bool(row["is_shared"]),
            "share_token": row["share_token"],
            "shared_at": row["shared_at"],
            "expires_at": row["share_expires_at"],
        },
        "analytics": {
            "message_count": row["message_count"],
            "last_activity": row["last_activity"],
            "total_tokens": row["total_tokens"],
        },
        "version": row["version"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }
    if messages is not None:
        conversation["messages"] = messages
    return conversation


def _message_from_row(row) -> dict:
    return {
        "id": row["id"],
        "role": row["role"],
        "content": row["content"],
        "attachments": json.loads(row["attachments"]) if row["attachments"] else [],
        "timestamp": row["created_at"],
    }


async def _fetch_messages(db, conversation_id: str) -> list[dict]:
    cursor = await db.execute(
        "SELECT * FROM conversation_messages WHERE conversation_id = ? ORDER BY seq ASC",
        (conversation_id,),
    )
    return [_message_from_row(r) for r in await cursor.fetchall()]


async def _insert_messages(db, conversation_id: str, messages: list[dict], now: str) -> list[dict]:
    inserted = []
    for m in messages:
        message_id = str(uuid.uuid4())
        timestamp = m.get("timestamp") or now
        attachments = m.get("attachments") or []
        await db.execute(
            """
            INSERT INTO conversation_messages (id, conversation_id, role, content, attachments, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                message_id,
                conversation_id,
                m["role"],
                m["content"],
                json.dumps(attachments) if attachments else None,
                timestamp,
            ),
        )
        inserted.append({
            "id": message_id,
            "role": m["role"],
            "content": m["content"],
            "attachments": attachments,
            "timestamp": timestamp,
        })
    return inserted


async def create_conversation(
    profile_id: str,
    title: str = DEFAULT_TITLE,
    messages: list[dict] | None = None,
    topic: str = "general",
    metadata: dict | None = None,
) -> dict:
    """Create a conversation, optionally seeded with messages."""
    conversation_id = uuid.uuid4().hex
    now = _now()
    messages = messages or []

    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        await db.execute(
            """
            INSERT INTO conversations
                (id, profile_id, title, status, topic, metadata, message_count,
                 last_activity, version, created_at, updated_at)
            VALUES (?, ?, ?, 'active', ?, ?, ?, ?, 1, ?, ?)
            """,
            (
                conversation_id,
                profile_id,
                title or DEFAULT_TITLE,
                topic,
                json.dumps(metadata) if metadata else None,
                len(messages),
                now,
                now,
                now,
            ),
        )
        inserted = await _insert_messages(db, conversation_id, messages, now)
        await db.commit()

        cursor = await db.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        row = await cursor.fetchone()

    return _conversation_from_row(row, inserted)


async def get_conversation(conversation_id: str, profile_id: str | None = None) -> dict | None:
    """Get a conversation with all its messages, optionally scoped to an owner."""
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        if profile_id is None:
            cursor = await db.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        else:
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE id = ? AND profile_id = ?",
                (conversation_id, profile_id),
            )
        row = await cursor.fetchone()
        if row is None:
            return None
        messages = await _fetch_messages(db, conversation_id)

    return _conversation_from_row(row, messages)


async def list_conversations(profile_id: str, status: str | None = None) -> list[dict]:
    """List a profile's conversations, most recently updated first.

    Soft-deleted conversations are only returned when asked for explicitly.
    """
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        if status:
            cursor = await db.execute(
                """
                SELECT * FROM conversations
                WHERE profile_id = ? AND status = ?
                ORDER BY updated_at DESC
                """,
                (profile_id, status),
            )
        else:
            cursor = await db.execute(
                """
                SELECT * FROM conversations
                WHERE profile_id = ? AND status != 'deleted'
                ORDER BY updated_at DESC
                """,
                (profile_id,),
            )
        rows = await cursor.fetchall()

        conversations = []
        for row in rows:
            cursor = await db.execute(
                """
                SELECT * FROM conversation_messages
                WHERE conversation_id = ? ORDER BY seq DESC LIMIT 1
                """,
                (row["id"],),
            )
            last = await cursor.fetchone()
            conversation = _conversation_from_row(row)
            conversation["last_message"] = _message_from_row(last) if last else None
            conversations.append(conversation)

    return conversations


async def add_conversation_message(
    conversation_id: str,
    role: str,
    content: str,
    attachments: list[dict] | None = None,
) -> dict:
    """Append one message. Raises ConversationNotFound for an unknown id."""
    now = _now()
    async with aiosqlite.connect(_get_db_path()) as db:
        cursor = await db.execute(
            """
            UPDATE conversations
            SET message_count = message_count + 1,
                last_activity = ?,
                updated_at = ?,
                version = version + 1
            WHERE id = ?
            """,
            (now, now, conversation_id),
        )
        if cursor.rowcount == 0:
            await db.rollback()
            raise ConversationNotFound(conversation_id)

        inserted = await _insert_messages(
            db,
            conversation_id,
            [{"role": role, "content": content, "attachments": attachments or []}],
            now,
        )
        await db.commit()

    return inserted[0]


async def update_conversation(
    conversation_id: str,
    profile_id: str,
    title: str | None = None,
    status: str | None = None,
    topic: str | None = None,
    append_messages: list[dict] | None = None,
    expected_version: int | None = None,
) -> dict | None:
    """Update conversation metadata and/or append messages.

    Returns None when the conversation does not exist for this owner. When
    ``expected_version`` is given the write only happens if the stored
    version still matches; otherwise ConversationConflict is raised.
    """
    updates = []
    params: list = []

    if title is not None:
        updates.append("title = ?")
        params.append(title)
    if status is not None:
        updates.append("status = ?")
        params.append(status)
    if topic is not None:
        updates.append("topic = ?")
        params.append(topic)

    now = _now()
    append_messages = append_messages or []
    if append_messages:
        updates.append("message_count = message_count + ?")
        params.append(len(append_messages))
        updates.append("last_activity = ?")
        params.append(now)

    updates.append("updated_at = ?")
    params.append(now)
    updates.append("version = version + 1")

    where = "id = ? AND profile_id = ?"
    params.extend([conversation_id, profile_id])
    if expected_version is not None:
        where += " AND version = ?"
        params.append(expected_version)

    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            f"UPDATE conversations SET {', '.join(updates)} WHERE {where}",
            params,
        )
        if cursor.rowcount == 0:
            await db.rollback()
            cursor = await db.execute(
                "SELECT version FROM conversations WHERE id = ? AND profile_id = ?",
                (conversation_id, profile_id),
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            raise ConversationConflict(conversation_id, expected_version, row["version"])

        await _insert_messages(db, conversation_id, append_messages, now)
        await db.commit()

        cursor = await db.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,))
        row = await cursor.fetchone()
        messages = await _fetch_messages(db, conversation_id)

    return _conversation_from_row(row, messages)


async def set_title_if_default(conversation_id: str, title: str) -> bool:
    """Compare-and-set the title; only replaces the default sentinel."""
    now = _now()
    async with aiosqlite.connect(_get_db_path()) as db:
        cursor = await db.execute(
            """
            UPDATE conversations
            SET title = ?, updated_at = ?, version = version + 1
            WHERE id = ? AND title = ?
            """,
            (title, now, conversation_id, DEFAULT_TITLE),
        )
        await db.commit()
        return cursor.rowcount > 0


async def set_conversation_status(conversation_id: str, profile_id: str, status: str) -> bool:
    if status not in CONVERSATION_STATUSES:
        raise ValueError(f"Unknown conversation status: {status}")
    now = _now()
    async with aiosqlite.connect(_get_db_path()) as db:
        cursor = await db.execute(
            """
            UPDATE conversations
            SET status = ?, updated_at = ?, version = version + 1
            WHERE id = ? AND profile_id = ?
            """,
            (status, now, conversation_id, profile_id),
        )
        await db.commit()
        return cursor.rowcount > 0


# ===========================================================================
# Sharing
# ===========================================================================

async def set_share_token(conversation_id: str, token: str, shared_at: str, expires_at: str) -> bool:
    """Replace whatever share token the conversation had with a new one."""
    async with aiosqlite.connect(_get_db_path()) as db:
        cursor = await db.execute(
            """
            UPDATE conversations
            SET is_shared = TRUE, share_token = ?, shared_at = ?, share_expires_at = ?,
                updated_at = ?, version = version + 1
            WHERE id = ?
            """,
            (token, shared_at, expires_at, shared_at, conversation_id),
        )
        await db.commit()
        return cursor.rowcount > 0


async def clear_share_token(conversation_id: str) -> bool:
    now = _now()
    async with aiosqlite.connect(_get_db_path()) as db:
        cursor = await db.execute(
            """
            UPDATE conversations
            SET is_shared = FALSE, share_token = NULL, shared_at = NULL, share_expires_at = NULL,
                updated_at = ?, version = version + 1
            WHERE id = ?
            """,
            (now, conversation_id),
        )
        await db.commit()
        return cursor.rowcount > 0


async def get_conversation_by_share_token(token: str, now: str | None = None) -> dict | None:
    """Find a shared, non-expired conversation by its token."""
    now = now or _now()
    async with aiosqlite.connect(_get_db_path()) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute(
            """
            SELECT * FROM conversations
            WHERE share_token = ? AND is_shared = TRUE AND share_expires_at > ?
            """,
            (token, now),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        messages = await _fetch_messages(db, row["id"])

    return _conversation_from_row(row, messages)
