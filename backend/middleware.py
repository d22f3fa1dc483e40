"""
Authentication middleware. User endpoints validate a Firebase ID token and load the
user document; the event endpoint checks the producer's shared secret.
"""

import hmac
from typing import Optional

from fastapi import HTTPException, Header, Depends
from firebase_admin import auth as firebase_auth

import config
from deps import get_store


async def verify_token(authorization: Optional[str] = Header(None)) -> dict:
    """
    Verify Firebase ID token from Authorization header.
    Returns the decoded token (uid, email, etc.). Does not load user doc.
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header missing")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise HTTPException(status_code=401, detail="Invalid authentication scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid authorization header format")
    try:
        decoded = firebase_auth.verify_id_token(token)
        return decoded
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


async def get_current_user(
    decoded_token: dict = Depends(verify_token),
    store=Depends(get_store),
) -> dict:
    """
    Load current user document from Firestore. Returns uid, display_name and active_chats.
    Used by all user-facing routes.
    """
    uid = decoded_token.get("uid")
    if not uid:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_data = store.get_user(uid)
    if user_data is None:
        raise HTTPException(status_code=404, detail="User not found")
    return {
        "uid": uid,
        "display_name": user_data.get("displayName") or decoded_token.get("name"),
        "active_chats": user_data.get("activeChats") or [],
    }


async def verify_event_secret(x_events_secret: Optional[str] = Header(None)) -> None:
    """Only the configured change-event producer may post events."""
    if not config.EVENTS_SECRET:
        raise HTTPException(status_code=503, detail="Event ingestion not configured")
    if not x_events_secret or not hmac.compare_digest(x_events_secret, config.EVENTS_SECRET):
        raise HTTPException(status_code=401, detail="Invalid event secret")
