"""
Chat list endpoints: aggregated conversation list, unread count, mark-as-read and
active-chat bookkeeping. Clients call GET /chats on every screen focus.
"""

from fastapi import APIRouter, Depends, HTTPException, Query

from badge_counter import close_chat, mark_chat_read, open_chat
from chat_ids import DIRECT, MEMBER_FIELDS, chat_kind, direct_participants
from deps import get_aggregator, get_store
from middleware import get_current_user

router = APIRouter()


def _require_member(store, chat_id: str, uid: str) -> None:
    kind = chat_kind(chat_id)
    chat = store.get_chat(kind, chat_id)
    if chat is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    members = chat.get(MEMBER_FIELDS[kind]) or []
    if kind == DIRECT and not members:
        members = direct_participants(chat_id)
    if uid not in members:
        raise HTTPException(status_code=403, detail="Not a member of this chat")


@router.get("")
async def list_chats(
    search: str = Query("", max_length=128),
    current_user: dict = Depends(get_current_user),
    aggregator=Depends(get_aggregator),
):
    """Fresh, time-ordered list of direct and crew-date chats with unread counts."""
    result = await aggregator.build_conversation_list(current_user["uid"], search)
    return result.model_dump(mode="json")


@router.get("/cached")
async def list_cached_chats(
    search: str = Query("", max_length=128),
    current_user: dict = Depends(get_current_user),
    aggregator=Depends(get_aggregator),
):
    """Last persisted list for instant paint. May be stale until the next GET /chats."""
    result = aggregator.load_cached(current_user["uid"], search)
    if result is None:
        raise HTTPException(status_code=404, detail="No cached chat list")
    return result.model_dump(mode="json")


@router.get("/unread-count")
async def get_unread_count(
    current_user: dict = Depends(get_current_user),
    aggregator=Depends(get_aggregator),
):
    """Total unread messages across all of the current user's chats."""
    return {"unread_count": await aggregator.total_unread(current_user["uid"])}


@router.post("/{chat_id}/read")
async def mark_read(
    chat_id: str,
    current_user: dict = Depends(get_current_user),
    store=Depends(get_store),
):
    """Mark the chat read for the current user and recompute their badge."""
    uid = current_user["uid"]
    _require_member(store, chat_id, uid)
    badge_count = mark_chat_read(store, uid, chat_id)
    return {"message": "Chat marked as read", "chat_id": chat_id, "badge_count": badge_count}


@router.post("/{chat_id}/open")
async def open_active_chat(
    chat_id: str,
    current_user: dict = Depends(get_current_user),
    store=Depends(get_store),
):
    """User is now viewing chat_id: no badge increments for it until it is closed."""
    uid = current_user["uid"]
    _require_member(store, chat_id, uid)
    badge_count = open_chat(store, uid, chat_id)
    return {"chat_id": chat_id, "active": True, "badge_count": badge_count}


@router.post("/{chat_id}/close")
async def close_active_chat(
    chat_id: str,
    current_user: dict = Depends(get_current_user),
    store=Depends(get_store),
):
    """User left the chat screen: increments resume and what arrived while open is read."""
    uid = current_user["uid"]
    _require_member(store, chat_id, uid)
    badge_count = close_chat(store, uid, chat_id)
    return {"chat_id": chat_id, "active": False, "badge_count": badge_count}
