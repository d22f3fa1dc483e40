import os

from chat_cache import ChatCache, chat_list_key, last_message_key


def test_set_get_delete(cache):
    key = last_message_key("a_u")
    assert cache.get(key) is None
    cache.set(key, {"text": "hi"})
    assert cache.get(key) == {"text": "hi"}
    cache.delete(key)
    cache.delete(key)
    assert cache.get(key) is None


def test_keys_do_not_collide(cache):
    cache.set(chat_list_key("u"), [1])
    cache.set(last_message_key("u"), [2])
    assert cache.get(chat_list_key("u")) == [1]


def test_corrupt_entry_reads_as_missing(tmp_path):
    cache = ChatCache(str(tmp_path))
    cache.set("k", "v")
    (path,) = [p for p in os.listdir(tmp_path) if p.endswith(".json")]
    (tmp_path / path).write_text("{not json")
    assert cache.get("k") is None
    assert [p for p in os.listdir(tmp_path) if p.endswith(".tmp")] == []
