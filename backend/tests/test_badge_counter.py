import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from badge_counter import (
    SUPPRESSED,
    close_chat,
    compute_total_unread,
    get_badge,
    mark_chat_read,
    maybe_increment_badge,
    open_chat,
    recompute_badge,
)
from chat_ids import DIRECT, GROUP
from errors import NotFoundError

T0 = datetime(2025, 6, 1, 18, 0, tzinfo=timezone.utc)


def test_increment_adds_one(store):
    store.add_user("u", badgeCount=2)
    assert maybe_increment_badge(store, "u", "a_u") == 3
    assert store.users["u"]["badgeCount"] == 3


def test_increment_treats_missing_or_bad_badge_as_zero(store):
    store.add_user("u")
    store.add_user("v", badgeCount=-4)
    store.add_user("w", badgeCount="7")
    assert maybe_increment_badge(store, "u", "a_u") == 1
    assert maybe_increment_badge(store, "v", "a_v") == 1
    assert maybe_increment_badge(store, "w", "a_w") == 1


def test_concurrent_increments_are_not_lost(store):
    store.add_user("u", badgeCount=5)
    conversations = [f"sender{i}_u" for i in range(40)]
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda c: maybe_increment_badge(store, "u", c), conversations))
    assert store.users["u"]["badgeCount"] == 45
    assert sorted(results) == list(range(6, 46))


def test_increment_suppressed_while_viewing(store):
    store.add_user("u", badgeCount=4, activeChats=["a_u"])
    assert maybe_increment_badge(store, "u", "a_u") == SUPPRESSED
    assert store.users["u"]["badgeCount"] == 4
    # other conversations still count
    assert maybe_increment_badge(store, "u", "b_u") == 5


def test_increment_unknown_user(store):
    with pytest.raises(NotFoundError):
        maybe_increment_badge(store, "ghost", "a_ghost")
    assert "ghost" not in store.users


def test_compute_total_unread_counts_others_after_last_read(store):
    store.add_user("u")
    store.add_chat(DIRECT, "a_u", ["a", "u"], lastRead={"u": T0})
    store.add_message(DIRECT, "a_u", "a", "old", T0 - timedelta(minutes=5))
    store.add_message(DIRECT, "a_u", "a", "new", T0 + timedelta(minutes=1))
    store.add_message(DIRECT, "a_u", "u", "mine", T0 + timedelta(minutes=2))
    store.add_chat(GROUP, "crew1_2025-06-01", ["u", "a", "b"])
    store.add_message(GROUP, "crew1_2025-06-01", "b", "hi", T0)
    store.add_message(GROUP, "crew1_2025-06-01", "a", "hey", T0)
    store.invitations.append({"toUserId": "u", "status": "pending"})
    store.invitations.append({"toUserId": "u", "status": "accepted"})

    assert compute_total_unread(store, "u", store.get_user("u")) == 4


def test_compute_total_unread_skips_active_and_failing_chats(store):
    store.add_user("u", activeChats=["a_u"])
    store.add_chat(DIRECT, "a_u", ["a", "u"])
    store.add_message(DIRECT, "a_u", "a", "seen live", T0)
    store.add_chat(DIRECT, "b_u", ["b", "u"])
    store.add_message(DIRECT, "b_u", "b", "broken", T0)
    store.add_chat(DIRECT, "c_u", ["c", "u"])
    store.add_message(DIRECT, "c_u", "c", "counted", T0)
    store.fail_messages_after.add("b_u")

    assert compute_total_unread(store, "u", store.get_user("u")) == 1


def test_recompute_overwrites_drifted_badge(store):
    store.add_user("u", badgeCount=17)
    store.add_chat(DIRECT, "a_u", ["a", "u"])
    store.add_message(DIRECT, "a_u", "a", "one", T0)
    store.add_message(DIRECT, "a_u", "a", "two", T0)

    assert recompute_badge(store, "u") == 2
    assert get_badge(store, "u") == 2


def test_recompute_unknown_user(store):
    with pytest.raises(NotFoundError):
        recompute_badge(store, "ghost")


def test_mark_chat_read_clears_that_chat(store):
    store.add_user("u", badgeCount=3)
    store.add_chat(GROUP, "crew1_2025-06-01", ["u", "a"])
    store.add_message(GROUP, "crew1_2025-06-01", "a", "one", T0)
    store.add_message(GROUP, "crew1_2025-06-01", "a", "two", T0)
    store.add_chat(DIRECT, "b_u", ["b", "u"])
    store.add_message(DIRECT, "b_u", "b", "still unread", T0)

    assert mark_chat_read(store, "u", "crew1_2025-06-01") == 1
    assert "u" in store.chats[GROUP]["crew1_2025-06-01"]["lastRead"]


def test_open_then_close_chat(store):
    store.add_user("u", badgeCount=1)
    store.add_chat(DIRECT, "a_u", ["a", "u"])
    store.add_message(DIRECT, "a_u", "a", "hi", T0)

    assert open_chat(store, "u", "a_u") == 0
    assert store.users["u"]["activeChats"] == ["a_u"]
    assert maybe_increment_badge(store, "u", "a_u") == SUPPRESSED

    close_chat(store, "u", "a_u")
    assert store.users["u"]["activeChats"] == []
    assert maybe_increment_badge(store, "u", "a_u") == 1


def test_open_chat_unknown_user(store):
    with pytest.raises(NotFoundError):
        open_chat(store, "ghost", "a_ghost")


def test_messages_seen_while_open_stay_read_after_close(store):
    store.add_user("u")
    store.add_chat(DIRECT, "a_u", ["a", "u"])
    open_chat(store, "u", "a_u")
    store.chats[DIRECT]["a_u"]["lastRead"]["u"] = T0
    for text in ("one", "two"):
        store.add_message(DIRECT, "a_u", "a", text, T0 + timedelta(minutes=1))
        assert maybe_increment_badge(store, "u", "a_u") == SUPPRESSED

    assert close_chat(store, "u", "a_u") == 0
    assert store.users["u"]["badgeCount"] == 0


def test_recompute_logs_drift(store, caplog):
    caplog.set_level(logging.INFO, logger="badge_counter")
    store.add_user("u", badgeCount=3)
    store.add_chat(DIRECT, "a_u", ["a", "u"])
    store.add_message(DIRECT, "a_u", "a", "hi", T0)

    recompute_badge(store, "u")

    assert "Badge drift for u: stored=3 recomputed=1" in caplog.messages
