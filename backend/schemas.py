"""
Shared Pydantic models.
Request models forbid unexpected fields; chat summaries double as the cache format
(timestamps serialize to ISO-8601 strings, which sort chronologically).
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

# Base config: forbid extra fields so clients cannot inject unexpected data.
STRICT_REQUEST_CONFIG = ConfigDict(extra="forbid", str_strip_whitespace=True)


class PokeRequest(BaseModel):
    model_config = STRICT_REQUEST_CONFIG
    date: str = Field(..., pattern=r"^\d{4}-\d{2}-\d{2}$")


class ChangeEvent(BaseModel):
    """One document change delivered by the event producer."""
    model_config = STRICT_REQUEST_CONFIG
    id: Optional[str] = Field(None, max_length=256)
    type: str = Field(..., min_length=1, max_length=64)
    params: Dict[str, str] = Field(default_factory=dict)
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None


class LastMessage(BaseModel):
    text: str
    sender_id: Optional[str] = None
    created_at: datetime


class ChatSummary(BaseModel):
    id: str
    type: Literal["direct", "group"]
    title: str
    icon_url: Optional[str] = None
    last_message: Optional[LastMessage] = None
    unread_count: int = 0


class ConversationList(BaseModel):
    chats: List[ChatSummary]
    total: int
