"""
Local JSON cache for chat lists and last-message previews.
One file per key under CHAT_CACHE_DIR; writes go through a temp file and rename so a
reader never sees a half-written document. Contents may be stale and are always
superseded by the next aggregation pass.
"""

import hashlib
import json
import logging
import os
import tempfile
from typing import Any, Optional

import config

logger = logging.getLogger(__name__)


def chat_list_key(user_id: str) -> str:
    return f"chats:{user_id}"


def last_message_key(chat_id: str) -> str:
    return f"last_message:{chat_id}"


class ChatCache:
    def __init__(self, directory: Optional[str] = None):
        self.directory = directory or config.CHAT_CACHE_DIR

    def _path(self, key: str) -> str:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return os.path.join(self.directory, f"{digest}.json")

    def get(self, key: str) -> Optional[Any]:
        """Cached value, or None when missing or unreadable."""
        path = self._path(key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                entry = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Unreadable cache entry %s: %s", key, e)
            return None
        return entry.get("value") if isinstance(entry, dict) else None

    def set(self, key: str, value: Any) -> None:
        os.makedirs(self.directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"key": key, "value": value}, f)
            os.replace(tmp_path, self._path(key))
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def delete(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            pass
