"""
Change-event dispatch.

A trusted producer (Firestore trigger, CDC feed or queue consumer) delivers one event
per document change. Each event type maps to the handlers that used to be separate
serverless triggers. Delivery is at-least-once; events carrying an id are claimed in
the store first so a redelivered message never increments a badge twice.
"""

import logging
from typing import Any, Callable, Dict, Tuple

from errors import InvalidArgumentError
from notification_fanout import (
    notify_on_crew_deleted,
    notify_on_crew_updated,
    notify_on_invitation_created,
    notify_on_new_direct_message,
    notify_on_new_group_message,
    notify_on_status_change,
    notify_on_threshold,
)
from schemas import ChangeEvent

logger = logging.getLogger(__name__)


def _param(event: ChangeEvent, name: str) -> str:
    value = event.params.get(name)
    if not value:
        raise InvalidArgumentError(f"Event {event.type} is missing param '{name}'")
    return value


def _on_direct_message_created(store, push, event: ChangeEvent) -> Dict[str, Any]:
    result = notify_on_new_direct_message(store, push, _param(event, "dmId"), event.after)
    return {"direct_message": result.model_dump()}


def _on_group_message_created(store, push, event: ChangeEvent) -> Dict[str, Any]:
    result = notify_on_new_group_message(store, push, _param(event, "chatId"), event.after)
    return {"group_message": result.model_dump()}


def _on_crew_updated(store, push, event: ChangeEvent) -> Dict[str, Any]:
    result = notify_on_crew_updated(store, push, _param(event, "crewId"), event.before, event.after)
    return {"membership": result.model_dump()}


def _on_crew_deleted(store, push, event: ChangeEvent) -> Dict[str, Any]:
    result = notify_on_crew_deleted(store, push, _param(event, "crewId"), event.before)
    return {"crew_deleted": result.model_dump()}


def _on_status_written(store, push, event: ChangeEvent) -> Dict[str, Any]:
    crew_id = _param(event, "crewId")
    date = _param(event, "date")
    user_id = _param(event, "userId")
    out: Dict[str, Any] = {}
    # Independent handlers: one failing must not stop the other
    try:
        out["status_change"] = notify_on_status_change(
            store, push, crew_id, date, user_id, event.before, event.after
        ).model_dump()
    except Exception as e:
        logger.exception("Status change notification failed for crew %s: %s", crew_id, e)
    try:
        out["threshold"] = notify_on_threshold(
            store, push, crew_id, date, event.before, event.after
        ).model_dump()
    except Exception as e:
        logger.exception("Threshold notification failed for crew %s: %s", crew_id, e)
    return out


def _on_invitation_created(store, push, event: ChangeEvent) -> Dict[str, Any]:
    result = notify_on_invitation_created(store, push, event.after)
    return {"invitation": result.model_dump()}


EVENT_HANDLERS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "direct_message.created": _on_direct_message_created,
    "group_message.created": _on_group_message_created,
    "crew.updated": _on_crew_updated,
    "crew.deleted": _on_crew_deleted,
    "status.written": _on_status_written,
    "invitation.created": _on_invitation_created,
}


# Params each event type must carry; checked before the event is claimed
REQUIRED_PARAMS: Dict[str, Tuple[str, ...]] = {
    "direct_message.created": ("dmId",),
    "group_message.created": ("chatId",),
    "crew.updated": ("crewId",),
    "crew.deleted": ("crewId",),
    "status.written": ("crewId", "date", "userId"),
    "invitation.created": (),
}


def dispatch_event(store, push, event: ChangeEvent) -> Dict[str, Any]:
    """
    Route one change event to its handlers.
    Returns {"event_type", "duplicate", "results"}. Raises InvalidArgumentError for
    unknown types or missing params. A claimed event whose handler raises is released
    again so the producer's redelivery is handled instead of skipped.
    """
    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
        raise InvalidArgumentError(f"Unknown event type: {event.type}")
    for name in REQUIRED_PARAMS[event.type]:
        _param(event, name)

    if event.id and not store.claim_event(event.id):
        logger.info("Skipping redelivered event %s (%s)", event.id, event.type)
        return {"event_type": event.type, "duplicate": True, "results": {}}

    try:
        results = handler(store, push, event)
    except Exception:
        if event.id:
            logger.warning("Handler for event %s (%s) failed; releasing claim", event.id, event.type)
            store.release_event(event.id)
        raise
    return {"event_type": event.type, "duplicate": False, "results": results}
