"""
Unread counting. One definition everywhere: messages from other users created strictly
after the user's lastRead timestamp on the conversation document. Never cached.
"""

from typing import Any, Dict, Optional

from errors import NotFoundError


def last_read_for(chat_data: Dict[str, Any], user_id: str):
    last_read = chat_data.get("lastRead") or {}
    if not isinstance(last_read, dict):
        return None
    return last_read.get(user_id)


def count_unread(store, kind: str, chat_id: str, user_id: str, chat_data: Optional[Dict[str, Any]] = None) -> int:
    """
    Authoritative unread count for one conversation.
    chat_data may be passed when the caller already holds the conversation document.
    """
    if chat_data is None:
        chat_data = store.get_chat(kind, chat_id)
        if chat_data is None:
            raise NotFoundError(f"Chat {chat_id} not found")
    messages = store.list_messages_after(kind, chat_id, last_read_for(chat_data, user_id))
    return sum(1 for m in messages if m.get("senderId") != user_id)
