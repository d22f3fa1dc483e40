"""
Per-user unread badge.

badgeCount changes only through maybe_increment_badge (one atomic increment per
delivered message) or recompute_badge (authoritative recount). Both run inside the
store's single-document transaction, so concurrent triggers for the same user
serialize and no update is lost.

The activeChats check is read at the instant the transaction runs. A user opening a
chat while a message is in flight may still get one increment; the next recompute
(mark-as-read, or the scheduled reconciliation) corrects it.

recompute_badge counts unread messages outside the transaction and writes the total
inside it. An increment for a message the count already included can commit after
that write and count the message twice until the next recompute. The transaction
logs the difference between the stored and recomputed values.
"""

import logging
from typing import Any, Dict, Union

from chat_ids import KINDS, chat_kind
from errors import NotFoundError
from unread import count_unread

logger = logging.getLogger(__name__)

# Returned instead of a count when the recipient is viewing the conversation
SUPPRESSED = "suppressed"


def _current_badge(user_data: Dict[str, Any]) -> int:
    value = user_data.get("badgeCount")
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return max(value, 0)


def maybe_increment_badge(store, recipient_id: str, conversation_id: str) -> Union[int, str]:
    """
    Increment recipient's badge by one unless conversation_id is in their activeChats.
    Returns the new badge count, or SUPPRESSED. Raises NotFoundError for unknown recipients.
    """

    def apply(user_data):
        active_chats = user_data.get("activeChats") or []
        if conversation_id in active_chats:
            return None, SUPPRESSED
        updated = _current_badge(user_data) + 1
        return {"badgeCount": updated}, updated

    result = store.run_user_transaction(recipient_id, apply)
    if result == SUPPRESSED:
        logger.info("Badge suppressed for %s: viewing %s", recipient_id, conversation_id)
    return result


def compute_total_unread(store, user_id: str, user_data: Dict[str, Any]) -> int:
    """Unread messages in chats the user is not viewing, plus pending invitations."""
    active_chats = set(user_data.get("activeChats") or [])
    total = 0
    for kind in KINDS:
        for chat_id, chat_data in store.list_chats_for_user(kind, user_id):
            if chat_id in active_chats:
                continue
            try:
                total += count_unread(store, kind, chat_id, user_id, chat_data=chat_data)
            except Exception as e:
                logger.warning("Unread count failed for chat %s user %s: %s", chat_id, user_id, e)
    total += store.count_pending_invitations(user_id)
    return total


def recompute_badge(store, user_id: str) -> int:
    """Recount the badge from the source of truth and store it. Returns the new count."""
    user_data = store.get_user(user_id)
    if user_data is None:
        raise NotFoundError(f"User {user_id} not found")
    total = max(compute_total_unread(store, user_id, user_data), 0)

    def apply(current):
        stored = _current_badge(current)
        if stored != total:
            logger.info("Badge drift for %s: stored=%d recomputed=%d", user_id, stored, total)
        return {"badgeCount": total}, total

    store.run_user_transaction(user_id, apply)
    logger.info("Badge recomputed for %s: %d", user_id, total)
    return total


def get_badge(store, user_id: str) -> int:
    user_data = store.get_user(user_id)
    if user_data is None:
        raise NotFoundError(f"User {user_id} not found")
    return _current_badge(user_data)


def mark_chat_read(store, user_id: str, chat_id: str) -> int:
    """Move the user's lastRead marker to now and recompute the badge."""
    kind = chat_kind(chat_id)
    store.set_last_read(kind, chat_id, user_id)
    return recompute_badge(store, user_id)


def open_chat(store, user_id: str, chat_id: str) -> int:
    """User started viewing chat_id: suppress badge increments for it and mark it read."""
    store.add_active_chat(user_id, chat_id)
    return mark_chat_read(store, user_id, chat_id)


def close_chat(store, user_id: str, chat_id: str) -> int:
    """
    User stopped viewing chat_id. Messages suppressed while it was open were seen, so
    the chat is marked read before the badge is recomputed.
    """
    store.remove_active_chat(user_id, chat_id)
    return mark_chat_read(store, user_id, chat_id)
