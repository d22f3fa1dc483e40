"""
Badge API: the app icon's unread indicator.
GET returns the stored badgeCount; POST /recompute recounts it from the source of truth.
"""

from fastapi import APIRouter, Depends

from badge_counter import get_badge, recompute_badge
from deps import get_store
from middleware import get_current_user

router = APIRouter()


@router.get("")
async def read_badge(current_user: dict = Depends(get_current_user), store=Depends(get_store)):
    return {"badge_count": get_badge(store, current_user["uid"])}


@router.post("/recompute")
async def recompute(current_user: dict = Depends(get_current_user), store=Depends(get_store)):
    """
    Unread messages in chats the user is not viewing plus pending invitations.
    Same total the reconciliation job writes.
    """
    return {"badge_count": recompute_badge(store, current_user["uid"])}
