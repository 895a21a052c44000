from __future__ import annotations
"""
Sindi — Authentication Routes
"""
import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Header, HTTPException

import sindi.database as database
from sindi.config import ENABLE_DEV_AUTH
from sindi.models import DevSessionRequest

logger = logging.getLogger(__name__)


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.replace("Bearer ", "", 1).strip() or None


async def get_current_user(authorization: str | None = Header(default=None)) -> dict:
    """Resolve the bearer token to a user or fail with 401 before any other work."""
    token = _bearer_token(authorization)
    user = await database.get_user_by_token(token) if token else None
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


async def get_current_profile(user: dict = Depends(get_current_user)) -> dict:
    profile = await database.get_active_profile(user["id"])
    if profile is None:
        raise HTTPException(status_code=404, detail="Active profile not found")
    return profile


router = APIRouter()

# Routes: Sessions
# ===========================================================================

@router.post("/api/auth/dev-session")
async def auth_dev_session(req: DevSessionRequest):
    """Issue a session token without verification (local development only)."""
    if not ENABLE_DEV_AUTH:
        raise HTTPException(status_code=404, detail="Not found")

    email = req.email.strip().lower()
    if "@" not in email or "." not in email.split("@")[-1]:
        raise HTTPException(status_code=400, detail="Invalid email address")

    user = await database.get_or_create_user(email)
    profile = await database.get_active_profile(user["id"])
    if profile is None:
        profile = await database.create_profile(user["id"])

    expires_at = (datetime.now(timezone.utc) + timedelta(days=30)).isoformat()
    token = await database.create_auth_session(user["id"], expires_at)
    logger.info(f"[auth] dev session issued for {email}")

    return {
        "success": True,
        "token": token,
        "userId": user["id"],
        "profileId": profile["id"],
        "expiresAt": expires_at,
    }


@router.post("/api/auth/logout")
async def auth_logout(authorization: str | None = Header(default=None)):
    """Invalidate the current session token."""
    token = _bearer_token(authorization)
    if token:
        await database.delete_auth_session(token)
    return {"success": True}


@router.get("/api/auth/me")
async def auth_me(user: dict = Depends(get_current_user), profile: dict = Depends(get_current_profile)):
    return {
        "success": True,
        "userId": user["id"],
        "email": user["email"],
        "profileId": profile["id"],
    }
