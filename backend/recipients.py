"""
Recipient resolution shared by every notification handler:
user ids -> batches of 10 ('in' query limit) -> push tokens -> one message per device.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from push import PushMessage, is_expo_push_token
from store import IN_QUERY_LIMIT
from utils import chunked

logger = logging.getLogger(__name__)


def tokens_for_user(user_data: Dict[str, Any]) -> List[str]:
    """Valid, de-duplicated tokens from the legacy single field and the token list."""
    candidates = [user_data.get("expoPushToken")]
    tokens_array = user_data.get("expoPushTokens")
    if isinstance(tokens_array, list):
        candidates.extend(tokens_array)
    tokens: List[str] = []
    for token in candidates:
        if is_expo_push_token(token) and token not in tokens:
            tokens.append(token)
    return tokens


def resolve_push_tokens(store, user_ids: Iterable[str]) -> Dict[str, List[str]]:
    """
    Map each user id to their valid push tokens. Users that do not exist or have no
    valid token are left out. A failing batch is logged and skipped.
    """
    unique_ids: List[str] = []
    for uid in user_ids:
        if uid and uid not in unique_ids:
            unique_ids.append(uid)

    resolved: Dict[str, List[str]] = {}
    for batch in chunked(unique_ids, IN_QUERY_LIMIT):
        try:
            users = store.get_users(batch)
        except Exception as e:
            logger.exception("Failed to fetch users %s: %s", batch, e)
            continue
        for uid in batch:
            user_data = users.get(uid)
            if user_data is None:
                logger.info("User %s does not exist.", uid)
                continue
            tokens = tokens_for_user(user_data)
            if tokens:
                resolved[uid] = tokens
    return resolved


def build_messages(
    tokens: Iterable[str],
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
    subtitle: Optional[str] = None,
    badge: Optional[int] = None,
    seen: Optional[set] = None,
) -> List[PushMessage]:
    """
    One message per token. Pass the same `seen` set across calls to avoid pushing the
    same device twice within one fan-out.
    """
    if seen is None:
        seen = set()
    messages = []
    for token in tokens:
        if token in seen:
            continue
        seen.add(token)
        messages.append(
            PushMessage(
                to=token,
                title=title,
                body=body,
                data=dict(data or {}),
                subtitle=subtitle,
                badge=badge,
            )
        )
    return messages


def flatten_tokens(tokens_by_user: Dict[str, List[str]]) -> List[str]:
    tokens: List[str] = []
    for user_tokens in tokens_by_user.values():
        for token in user_tokens:
            if token not in tokens:
                tokens.append(token)
    return tokens
