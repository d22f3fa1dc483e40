import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chat_cache import ChatCache, chat_list_key, last_message_key
from chat_ids import DIRECT, GROUP
from conversation_aggregator import ConversationAggregator, filter_chats, sort_chats
from schemas import ChatSummary, LastMessage

T0 = datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc)
T1, T2, T3 = T0 + timedelta(minutes=1), T0 + timedelta(minutes=2), T0 + timedelta(minutes=3)


class CountingCache(ChatCache):
    def __init__(self, directory):
        super().__init__(directory)
        self.writes = []

    def set(self, key, value):
        self.writes.append(key)
        super().set(key, value)


def build(aggregator, uid, search=""):
    """Run one aggregation pass and let its background refreshes settle."""

    async def run():
        result = await aggregator.build_conversation_list(uid, search)
        await aggregator.wait_pending()
        return result

    return asyncio.run(run())


def _summary(chat_id, created_at=None):
    last = LastMessage(text="x", created_at=created_at) if created_at else None
    return ChatSummary(id=chat_id, type="direct", title=chat_id, last_message=last)


@pytest.fixture
def inbox(store):
    """User u with three direct chats and one crew chat that has no messages yet."""
    store.add_user("u", "Uma")
    store.add_user("a", "Alice", photoURL="https://img/alice.png")
    store.add_user("b", "Bob")
    store.add_user("c", "Carol")
    store.add_crew("crew1", "Rowing Club", ["u", "a"], iconUrl="https://img/crew.png")

    store.add_chat(DIRECT, "a_u", ["a", "u"])
    store.add_message(DIRECT, "a_u", "a", "newest", T3)
    store.add_chat(DIRECT, "b_u", ["b", "u"])
    store.add_message(DIRECT, "b_u", "b", "oldest", T1)
    store.add_chat(GROUP, "crew1_2025-06-01", ["u", "a"])
    store.add_chat(DIRECT, "c_u", ["c", "u"])
    store.add_message(DIRECT, "c_u", "u", "middle", T2)
    return store


def test_sort_newest_first_empty_last():
    chats = [_summary("t3", T3), _summary("t1", T1), _summary("nil1"), _summary("t2", T2), _summary("nil2")]
    assert [c.id for c in sort_chats(chats)] == ["t3", "t2", "t1", "nil1", "nil2"]


def test_filter_is_case_insensitive():
    chats = [_summary("Rowing Club - June 1st, 2025"), _summary("Alice")]
    assert [c.id for c in filter_chats(chats, "  rOwInG ")] == ["Rowing Club - June 1st, 2025"]
    assert len(filter_chats(chats, "")) == 2


def test_list_is_ordered_by_last_message(inbox, aggregator):
    result = build(aggregator, "u")
    assert [c.id for c in result.chats] == ["a_u", "c_u", "b_u", "crew1_2025-06-01"]
    assert result.total == 4


def test_titles_icons_and_previews(inbox, aggregator):
    chats = {c.id: c for c in build(aggregator, "u").chats}

    assert chats["a_u"].title == "Alice"
    assert chats["a_u"].icon_url == "https://img/alice.png"
    assert chats["a_u"].last_message.text == "newest"
    assert chats["crew1_2025-06-01"].title == "Rowing Club - June 1st, 2025"
    assert chats["crew1_2025-06-01"].type == "group"
    assert chats["crew1_2025-06-01"].icon_url == "https://img/crew.png"
    assert chats["crew1_2025-06-01"].last_message is None


def test_unknown_participant_title(store, aggregator):
    store.add_user("u")
    store.add_chat(DIRECT, "ghost_u", ["ghost", "u"])
    assert build(aggregator, "u").chats[0].title == "Unknown User"


def test_unread_counts_are_per_chat(inbox, aggregator):
    inbox.add_message(DIRECT, "a_u", "a", "second", T2)
    inbox.chats[DIRECT]["b_u"]["lastRead"] = {"u": T2}
    chats = {c.id: c.unread_count for c in build(aggregator, "u").chats}
    assert chats == {"a_u": 2, "b_u": 0, "c_u": 0, "crew1_2025-06-01": 0}


def test_unread_never_served_from_cache(inbox, aggregator):
    build(aggregator, "u")
    inbox.add_message(DIRECT, "b_u", "b", "another", T1)
    chats = {c.id: c.unread_count for c in build(aggregator, "u").chats}
    assert chats["b_u"] == 2


def test_search_filters_but_total_counts_everything(inbox, aggregator):
    result = build(aggregator, "u", "ROWING")
    assert [c.id for c in result.chats] == ["crew1_2025-06-01"]
    assert result.total == 4


def test_failing_row_degrades_alone(inbox, aggregator):
    inbox.fail_latest_message.add("a_u")
    inbox.fail_messages_after.add("b_u")

    chats = {c.id: c for c in build(aggregator, "u").chats}

    assert len(chats) == 4
    assert chats["a_u"].last_message is None
    assert chats["a_u"].unread_count == 1
    assert chats["b_u"].unread_count == 0
    assert chats["b_u"].last_message.text == "oldest"


def test_list_persisted_with_iso_timestamps(inbox, aggregator, cache):
    build(aggregator, "u")
    raw = cache.get(chat_list_key("u"))
    assert [item["id"] for item in raw] == ["a_u", "c_u", "b_u", "crew1_2025-06-01"]
    created_at = raw[0]["last_message"]["created_at"]
    assert isinstance(created_at, str)
    assert datetime.fromisoformat(created_at.replace("Z", "+00:00")) == T3


def test_load_cached(inbox, aggregator):
    assert aggregator.load_cached("u") is None
    build(aggregator, "u")
    cached = aggregator.load_cached("u", "alice")
    assert [c.id for c in cached.chats] == ["a_u"]
    assert cached.total == 4


def test_cached_last_message_not_rewritten_when_unchanged(inbox, tmp_path):
    cache = CountingCache(str(tmp_path))
    aggregator = ConversationAggregator(inbox, cache)
    key = last_message_key("a_u")

    build(aggregator, "u")
    assert cache.writes.count(key) == 1

    build(aggregator, "u")
    build(aggregator, "u")
    assert cache.writes.count(key) == 1


def test_cached_last_message_refreshed_in_background(inbox, tmp_path):
    cache = CountingCache(str(tmp_path))
    aggregator = ConversationAggregator(inbox, cache)
    build(aggregator, "u")

    inbox.add_message(DIRECT, "b_u", "b", "fresh", T3 + timedelta(minutes=1))
    stale = {c.id: c for c in build(aggregator, "u").chats}
    assert stale["b_u"].last_message.text == "oldest"
    assert cache.writes.count(last_message_key("b_u")) == 2

    fresh = build(aggregator, "u")
    assert fresh.chats[0].id == "b_u"
    assert fresh.chats[0].last_message.text == "fresh"


def test_total_unread(inbox, aggregator):
    assert asyncio.run(aggregator.total_unread("u")) == 2


class FullDiskCache(ChatCache):
    """Reads work; writes of last-message previews fail."""

    def set(self, key, value):
        if key.startswith("last_message:"):
            raise OSError(28, "No space left on device")
        super().set(key, value)

    def delete(self, key):
        raise OSError(30, "Read-only file system")


def test_cache_write_failure_does_not_abort_list(inbox, tmp_path):
    aggregator = ConversationAggregator(inbox, FullDiskCache(str(tmp_path)))
    chats = {c.id: c for c in build(aggregator, "u").chats}
    assert len(chats) == 4
    assert chats["a_u"].last_message.text == "newest"
    assert chats["a_u"].unread_count == 1


def test_background_refresh_survives_cache_write_failure(inbox, tmp_path, caplog):
    build(ConversationAggregator(inbox, ChatCache(str(tmp_path))), "u")
    aggregator = ConversationAggregator(inbox, FullDiskCache(str(tmp_path)))
    inbox.add_message(DIRECT, "b_u", "b", "fresh", T3 + timedelta(minutes=1))
    inbox.messages[DIRECT]["a_u"].clear()

    chats = {c.id: c for c in build(aggregator, "u").chats}

    assert chats["b_u"].last_message.text == "oldest"
    messages = [r.getMessage() for r in caplog.records]
    assert any(m.startswith("Could not cache last_message:b_u") for m in messages)
    assert any(m.startswith("Could not drop cached last message for a_u") for m in messages)
