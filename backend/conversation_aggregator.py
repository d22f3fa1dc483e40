"""
Conversation aggregation: direct and crew-date chats merged into one list, newest
first, with last-message previews and authoritative unread counts.

Store calls run on worker threads and are awaited concurrently. Last-message previews
come from the local cache when present and are reconciled in the background; unread
counts always hit the store. A failure in one conversation degrades that row only.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import ValidationError

from chat_cache import ChatCache, chat_list_key, last_message_key
from chat_ids import DIRECT, GROUP, direct_participants, split_group_chat_id
from schemas import ChatSummary, ConversationList, LastMessage
from store import IN_QUERY_LIMIT
from unread import count_unread
from utils import as_utc, chunked, format_chat_date

logger = logging.getLogger(__name__)


def sort_chats(chats: Iterable[ChatSummary]) -> List[ChatSummary]:
    """Newest last message first; chats without messages keep their order at the end."""
    chats = list(chats)
    with_messages = [c for c in chats if c.last_message is not None]
    without_messages = [c for c in chats if c.last_message is None]
    with_messages.sort(key=lambda c: c.last_message.created_at, reverse=True)
    return with_messages + without_messages


def filter_chats(chats: Iterable[ChatSummary], search: str = "") -> List[ChatSummary]:
    """Case-insensitive substring match on the title."""
    needle = (search or "").strip().lower()
    if not needle:
        return list(chats)
    return [c for c in chats if needle in c.title.lower()]


def to_last_message(raw: Optional[Dict[str, Any]]) -> Optional[LastMessage]:
    """Message document -> LastMessage. Messages without a timestamp yet are ignored."""
    if not raw or raw.get("createdAt") is None:
        return None
    return LastMessage(
        text=raw.get("text") or "",
        sender_id=raw.get("senderId"),
        created_at=as_utc(raw["createdAt"]),
    )


class ConversationAggregator:
    def __init__(self, store, cache: Optional[ChatCache] = None):
        self.store = store
        self.cache = cache or ChatCache()
        self._pending: Set[asyncio.Task] = set()

    # --- Fast path ---

    def load_cached(self, user_id: str, search: str = "") -> Optional[ConversationList]:
        """Last persisted list for instant paint, or None. May be stale."""
        raw = self.cache.get(chat_list_key(user_id))
        if not isinstance(raw, list):
            return None
        chats = []
        for item in raw:
            try:
                chats.append(ChatSummary.model_validate(item))
            except ValidationError as e:
                logger.warning("Dropping malformed cached chat for %s: %s", user_id, e)
        return ConversationList(chats=filter_chats(chats, search), total=len(chats))

    # --- Authoritative pass ---

    async def build_conversation_list(self, user_id: str, search: str = "") -> ConversationList:
        """
        Rebuild the user's chat list from the store, persist it unfiltered to the cache and
        return the filtered view. Run on every screen focus.
        """
        direct_chats, group_chats = await asyncio.gather(
            asyncio.to_thread(self.store.list_chats_for_user, DIRECT, user_id),
            asyncio.to_thread(self.store.list_chats_for_user, GROUP, user_id),
        )
        users, crews = await asyncio.gather(
            self._load_participants(user_id, direct_chats),
            self._load_crews(group_chats),
        )

        tasks = []
        for chat_id, chat_data in direct_chats:
            title, icon_url = self._direct_title(user_id, chat_id, chat_data, users)
            tasks.append(self._summarize(user_id, DIRECT, chat_id, chat_data, title, icon_url))
        for chat_id, chat_data in group_chats:
            title, icon_url = self._group_title(chat_id, crews)
            tasks.append(self._summarize(user_id, GROUP, chat_id, chat_data, title, icon_url))

        chats = sort_chats(await asyncio.gather(*tasks))
        try:
            self.cache.set(chat_list_key(user_id), [c.model_dump(mode="json") for c in chats])
        except OSError as e:
            logger.warning("Could not persist chat list for %s: %s", user_id, e)
        return ConversationList(chats=filter_chats(chats, search), total=len(chats))

    async def total_unread(self, user_id: str) -> int:
        chats = await self.build_conversation_list(user_id)
        return sum(c.unread_count for c in chats.chats)

    async def wait_pending(self) -> None:
        """Wait for background cache reconciliations started by earlier passes."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # --- Titles ---

    @staticmethod
    def _other_participants(user_id: str, chat_id: str, chat_data: Dict[str, Any]) -> List[str]:
        participants = chat_data.get("participants") or direct_participants(chat_id)
        return [p for p in participants if p != user_id]

    async def _load_participants(
        self, user_id: str, direct_chats: List[Tuple[str, Dict[str, Any]]]
    ) -> Dict[str, Dict[str, Any]]:
        others: List[str] = []
        for chat_id, chat_data in direct_chats:
            for uid in self._other_participants(user_id, chat_id, chat_data):
                if uid not in others:
                    others.append(uid)

        async def fetch(batch):
            try:
                return await asyncio.to_thread(self.store.get_users, batch)
            except Exception as e:
                logger.exception("Failed to load participants %s: %s", batch, e)
                return {}

        users: Dict[str, Dict[str, Any]] = {}
        for found in await asyncio.gather(*[fetch(b) for b in chunked(others, IN_QUERY_LIMIT)]):
            users.update(found)
        return users

    async def _load_crews(self, group_chats: List[Tuple[str, Dict[str, Any]]]) -> Dict[str, Dict[str, Any]]:
        crew_ids = sorted({split_group_chat_id(chat_id)[0] for chat_id, _ in group_chats})

        async def fetch(crew_id):
            try:
                return crew_id, await asyncio.to_thread(self.store.get_crew, crew_id)
            except Exception as e:
                logger.exception("Failed to load crew %s: %s", crew_id, e)
                return crew_id, None

        return {
            crew_id: crew
            for crew_id, crew in await asyncio.gather(*[fetch(c) for c in crew_ids])
            if crew is not None
        }

    def _direct_title(self, user_id, chat_id, chat_data, users) -> Tuple[str, Optional[str]]:
        others = self._other_participants(user_id, chat_id, chat_data)
        names = [(users.get(uid) or {}).get("displayName") or "Unknown User" for uid in others]
        icon_url = (users.get(others[0]) or {}).get("photoURL") if others else None
        return ", ".join(names) or "Unknown User", icon_url

    @staticmethod
    def _group_title(chat_id, crews) -> Tuple[str, Optional[str]]:
        crew_id, date = split_group_chat_id(chat_id)
        crew = crews.get(crew_id) or {}
        crew_name = crew.get("name") or "Unknown Crew"
        return f"{crew_name} - {format_chat_date(date)}", crew.get("iconUrl")

    # --- Per-conversation rows ---

    async def _summarize(self, user_id, kind, chat_id, chat_data, title, icon_url) -> ChatSummary:
        last_message, unread = await asyncio.gather(
            self._resolve_last_message(kind, chat_id),
            self._resolve_unread(kind, chat_id, user_id, chat_data),
        )
        return ChatSummary(
            id=chat_id,
            type=kind,
            title=title,
            icon_url=icon_url,
            last_message=last_message,
            unread_count=unread,
        )

    async def _fetch_last_message(self, kind: str, chat_id: str) -> Optional[LastMessage]:
        raw = await asyncio.to_thread(self.store.get_latest_message, kind, chat_id)
        return to_last_message(raw)

    async def _resolve_last_message(self, kind: str, chat_id: str) -> Optional[LastMessage]:
        key = last_message_key(chat_id)
        cached = self.cache.get(key)
        if cached is not None:
            try:
                cached_message = LastMessage.model_validate(cached)
            except ValidationError:
                logger.warning("Malformed cached last message for %s", chat_id)
            else:
                self._spawn(self._reconcile_last_message(kind, chat_id, cached))
                return cached_message

        try:
            fresh = await self._fetch_last_message(kind, chat_id)
        except Exception as e:
            logger.exception("Error fetching last message for chat %s: %s", chat_id, e)
            return None
        if fresh is not None:
            self._write_last_message(key, fresh)
        return fresh

    async def _reconcile_last_message(self, kind: str, chat_id: str, cached: Any) -> None:
        """Re-fetch and write back only when the value changed."""
        try:
            fresh = await self._fetch_last_message(kind, chat_id)
        except Exception as e:
            logger.warning("Background refresh of last message for %s failed: %s", chat_id, e)
            return
        key = last_message_key(chat_id)
        if fresh is None:
            try:
                self.cache.delete(key)
            except OSError as e:
                logger.warning("Could not drop cached last message for %s: %s", chat_id, e)
            return
        if LastMessage.model_validate(cached) != fresh:
            self._write_last_message(key, fresh)

    def _write_last_message(self, key: str, message: LastMessage) -> None:
        try:
            self.cache.set(key, message.model_dump(mode="json"))
        except OSError as e:
            logger.warning("Could not cache %s: %s", key, e)

    async def _resolve_unread(self, kind, chat_id, user_id, chat_data) -> int:
        try:
            return await asyncio.to_thread(count_unread, self.store, kind, chat_id, user_id, chat_data)
        except Exception as e:
            logger.exception("Error fetching unread count for chat %s: %s", chat_id, e)
            return 0

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
