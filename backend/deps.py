"""
Shared FastAPI dependencies. Tests replace them through app.dependency_overrides.
"""

from functools import lru_cache

from chat_cache import ChatCache
from conversation_aggregator import ConversationAggregator
from push import ExpoPushClient
from store import FirestoreStore


@lru_cache
def get_store() -> FirestoreStore:
    return FirestoreStore()


@lru_cache
def get_push_client() -> ExpoPushClient:
    return ExpoPushClient()


@lru_cache
def get_aggregator() -> ConversationAggregator:
    return ConversationAggregator(get_store(), ChatCache())
