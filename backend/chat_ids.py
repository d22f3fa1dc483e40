"""
Conversation ids are a pure function of their logical key, so no id allocation step exists.
Direct: sorted participant pair joined with "_". Group-for-date: "{crewId}_{YYYY-MM-DD}".
"""

import re
from typing import List, Optional, Tuple

DIRECT = "direct"
GROUP = "group"
KINDS = (DIRECT, GROUP)

# Firestore collection holding each kind of conversation
COLLECTIONS = {
    DIRECT: "direct_messages",
    GROUP: "crew_date_chats",
}

# Membership field on the conversation document
MEMBER_FIELDS = {
    DIRECT: "participants",
    GROUP: "memberIds",
}

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def direct_conversation_id(user_a: str, user_b: str) -> str:
    """Same id regardless of argument order."""
    if user_a < user_b:
        return f"{user_a}_{user_b}"
    return f"{user_b}_{user_a}"


def group_chat_id(crew_id: str, date: str) -> str:
    return f"{crew_id}_{date}"


def split_group_chat_id(chat_id: str) -> Tuple[str, str]:
    """Return (crew_id, date). Crew ids may themselves contain underscores."""
    crew_id, _, date = chat_id.rpartition("_")
    return crew_id, date


def direct_participants(dm_id: str) -> List[str]:
    return [p for p in dm_id.split("_") if p]


def other_participant(dm_id: str, user_id: str) -> Optional[str]:
    for participant in direct_participants(dm_id):
        if participant != user_id:
            return participant
    return None


def chat_kind(chat_id: str) -> str:
    """Group chats end in an ISO date segment; everything else is a direct chat."""
    _, _, tail = chat_id.rpartition("_")
    if _DATE_RE.match(tail):
        return GROUP
    return DIRECT
