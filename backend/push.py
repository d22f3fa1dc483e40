"""
Expo push relay client.
Messages are validated locally, chunked to the relay's 100-per-request limit and POSTed
with httpx. A failed chunk is logged and skipped; delivery is never retried here and
never affects badge state that was already committed.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import BaseModel, Field

import config
from errors import TransientDeliveryError
from utils import chunked

logger = logging.getLogger(__name__)

# Expo accepts at most 100 messages per request
PUSH_CHUNK_SIZE = 100

_EXPO_TOKEN_RE = re.compile(r"^(ExponentPushToken|ExpoPushToken)\[.+\]$")
_UUID_TOKEN_RE = re.compile(r"^[a-z\d]{8}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{4}-[a-z\d]{12}$", re.IGNORECASE)


def is_expo_push_token(token: Any) -> bool:
    if not isinstance(token, str):
        return False
    return bool(_EXPO_TOKEN_RE.match(token) or _UUID_TOKEN_RE.match(token))


class PushMessage(BaseModel):
    to: str
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    sound: Optional[str] = "default"
    subtitle: Optional[str] = None
    badge: Optional[int] = None


class ExpoPushClient:
    def __init__(
        self,
        url: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.url = url or config.EXPO_PUSH_URL
        self.access_token = access_token if access_token is not None else config.EXPO_ACCESS_TOKEN
        self.timeout = timeout if timeout is not None else config.PUSH_TIMEOUT_SECONDS

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _post_chunk(self, client: httpx.Client, chunk: List[PushMessage]) -> List[Dict[str, Any]]:
        payload = [m.model_dump(exclude_none=True) for m in chunk]
        try:
            resp = client.post(self.url, json=payload, headers=self._headers())
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientDeliveryError(f"Push chunk of {len(chunk)} failed: {e}")
        tickets = data.get("data") if isinstance(data, dict) else None
        if not isinstance(tickets, list):
            raise TransientDeliveryError("Push relay returned no tickets")
        return tickets

    def send(self, messages: Iterable[PushMessage]) -> List[Dict[str, Any]]:
        """
        Send messages and return the relay's tickets for the chunks that went through.
        Invalid tokens are dropped before submission.
        """
        valid = []
        for m in messages:
            if is_expo_push_token(m.to):
                valid.append(m)
            else:
                logger.warning("Dropping push message with invalid token %r", m.to)
        if not valid:
            return []

        tickets: List[Dict[str, Any]] = []
        with httpx.Client(timeout=self.timeout) as client:
            for chunk in chunked(valid, PUSH_CHUNK_SIZE):
                try:
                    chunk_tickets = self._post_chunk(client, chunk)
                except TransientDeliveryError as e:
                    logger.error("Error sending notification chunk: %s", e)
                    continue
                for ticket in chunk_tickets:
                    if ticket.get("status") == "error":
                        logger.warning(
                            "Push ticket error: %s (%s)",
                            ticket.get("message"),
                            (ticket.get("details") or {}).get("error"),
                        )
                tickets.extend(chunk_tickets)
        return tickets
