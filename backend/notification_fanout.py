"""
Notification fan-out: one handler per triggering event.

Each handler reads current state, resolves recipients and emits push messages.
The only persistent write is the badge increment done by the chat-message handlers.
Push delivery failures are logged and never undo a committed increment.
"""

import logging
from datetime import date as date_type
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from badge_counter import SUPPRESSED, maybe_increment_badge
from chat_ids import GROUP, other_participant, split_group_chat_id
from errors import InvalidArgumentError, NotFoundError, PermissionDeniedError
from recipients import build_messages, flatten_tokens, resolve_push_tokens
from utils import date_description, format_chat_date

logger = logging.getLogger(__name__)

# Number of members up for it that makes the rest of the crew hear about it
THRESHOLD_UP_COUNT = 3


class FanoutResult(BaseModel):
    recipients: List[str] = Field(default_factory=list)
    suppressed: List[str] = Field(default_factory=list)
    messages_sent: int = 0


class PokeResult(BaseModel):
    success: bool
    message: str
    recipients: List[str] = Field(default_factory=list)
    messages_sent: int = 0


def _send(push, messages) -> int:
    """Hand messages to the relay. Failures are logged; the count of submitted messages is returned."""
    if not messages:
        return 0
    try:
        push.send(messages)
    except Exception as e:
        logger.exception("Push delivery failed for %d messages: %s", len(messages), e)
    return len(messages)


def _display_name(store, uid: str, default: str) -> str:
    user = store.get_user(uid)
    if user is None:
        return default
    return user.get("displayName") or default


def _validated_message(message: Optional[Dict[str, Any]]):
    message = message or {}
    sender_id = message.get("senderId")
    text = message.get("text")
    if not sender_id or not text:
        raise InvalidArgumentError("Missing senderId or text in message data.")
    return sender_id, text


def _deliver_chat_message(
    store,
    push,
    recipient_ids: List[str],
    conversation_id: str,
    title: str,
    body: str,
    data: Dict[str, Any],
    subtitle: Optional[str] = None,
) -> FanoutResult:
    """Increment each recipient's badge independently, then push to those not suppressed."""
    result = FanoutResult()
    badges: Dict[str, int] = {}
    for recipient_id in recipient_ids:
        try:
            outcome = maybe_increment_badge(store, recipient_id, conversation_id)
        except NotFoundError:
            logger.info("Recipient user %s does not exist.", recipient_id)
            continue
        except Exception as e:
            logger.exception("Badge transaction failed for recipient %s: %s", recipient_id, e)
            continue
        if outcome == SUPPRESSED:
            result.suppressed.append(recipient_id)
        else:
            badges[recipient_id] = outcome

    if not badges:
        return result

    tokens_by_user = resolve_push_tokens(store, list(badges))
    seen: set = set()
    messages = []
    for recipient_id, tokens in tokens_by_user.items():
        messages.extend(
            build_messages(
                tokens, title, body, data=data, subtitle=subtitle,
                badge=badges[recipient_id], seen=seen,
            )
        )
        result.recipients.append(recipient_id)
    result.messages_sent = _send(push, messages)
    return result


def notify_on_new_direct_message(store, push, dm_id: str, message: Dict[str, Any]) -> FanoutResult:
    """Notify the other participant of a direct conversation about a new message."""
    sender_id, text = _validated_message(message)

    sender = store.get_user(sender_id)
    if sender is None:
        logger.info("Sender user %s does not exist.", sender_id)
        return FanoutResult()
    sender_name = sender.get("displayName") or "Someone"

    recipient_id = other_participant(dm_id, sender_id)
    if not recipient_id:
        logger.info("Recipient ID not found for DM %s.", dm_id)
        return FanoutResult()

    result = _deliver_chat_message(
        store,
        push,
        [recipient_id],
        dm_id,
        title=sender_name,
        body=text,
        data={
            "screen": "DMChat",
            "dmId": dm_id,
            "senderId": sender_id,
            "senderName": sender_name,
        },
    )
    logger.info("DM %s: notified=%s suppressed=%s", dm_id, result.recipients, result.suppressed)
    return result


def notify_on_new_group_message(store, push, chat_id: str, message: Dict[str, Any]) -> FanoutResult:
    """Notify every member of a crew date chat except the sender, each independently."""
    sender_id, text = _validated_message(message)

    sender = store.get_user(sender_id)
    if sender is None:
        logger.info("Sender user %s does not exist.", sender_id)
        return FanoutResult()
    sender_name = sender.get("displayName") or "Someone"

    crew_id, date = split_group_chat_id(chat_id)
    crew = store.get_crew(crew_id)
    if crew is None:
        logger.info("Crew %s does not exist.", crew_id)
        return FanoutResult()
    crew_name = crew.get("name") or "Your Crew"
    chat_name = f"{crew_name} - {format_chat_date(date, long=False)}"

    chat = store.get_chat(GROUP, chat_id)
    if chat is None:
        logger.info("Chat %s does not exist.", chat_id)
        return FanoutResult()

    recipient_ids = [uid for uid in chat.get("memberIds") or [] if uid != sender_id]
    if not recipient_ids:
        logger.info("No recipients found for the group message in %s.", chat_id)
        return FanoutResult()

    result = _deliver_chat_message(
        store,
        push,
        recipient_ids,
        chat_id,
        title=sender_name,
        subtitle=chat_name,
        body=text,
        data={
            "screen": "CrewDateChat",
            "chatId": chat_id,
            "senderId": sender_id,
            "senderName": sender_name,
        },
    )
    logger.info("Group chat %s: notified=%s suppressed=%s", chat_id, result.recipients, result.suppressed)
    return result


def notify_on_crew_updated(
    store, push, crew_id: str, before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]
) -> FanoutResult:
    """
    Membership diff of a crew document.
    Joins are announced to members who were already there; leaves to those who remain.
    """
    before = before or {}
    after = after or {}
    before_ids: List[str] = before.get("memberIds") or []
    after_ids: List[str] = after.get("memberIds") or []
    joined = [uid for uid in after_ids if uid not in before_ids]
    left = [uid for uid in before_ids if uid not in after_ids]
    crew_name = after.get("name") or before.get("name") or "your crew"

    result = FanoutResult()
    messages = []

    if joined:
        existing = [uid for uid in before_ids if uid in after_ids]
        tokens_by_user = resolve_push_tokens(store, existing)
        tokens = flatten_tokens(tokens_by_user)
        for uid in joined:
            name = _display_name(store, uid, "A new member")
            messages.extend(
                build_messages(
                    tokens,
                    "New Crew Member",
                    f'{name} has joined the "{crew_name}" crew!',
                    data={"crewId": crew_id, "newMemberId": uid, "screen": "Crew"},
                )
            )
        for member_id in tokens_by_user:
            if member_id not in result.recipients:
                result.recipients.append(member_id)

    if left:
        tokens_by_user = resolve_push_tokens(store, after_ids)
        tokens = flatten_tokens(tokens_by_user)
        for uid in left:
            name = _display_name(store, uid, "A former member")
            messages.extend(
                build_messages(
                    tokens,
                    crew_name,
                    f"{name} has left the crew.",
                    data={"crewId": crew_id, "removedMemberId": uid, "screen": "Crew"},
                )
            )
        for member_id in tokens_by_user:
            if member_id not in result.recipients:
                result.recipients.append(member_id)

    result.messages_sent = _send(push, messages)
    if joined or left:
        logger.info("Crew %s membership change: joined=%s left=%s", crew_id, joined, left)
    return result


def notify_on_crew_deleted(store, push, crew_id: str, crew: Optional[Dict[str, Any]]) -> FanoutResult:
    """Tell every member except the owner that the crew is gone."""
    if not crew:
        logger.info("No data found for deleted crew with ID: %s", crew_id)
        return FanoutResult()
    owner_id = crew.get("ownerId")
    crew_name = crew.get("name") or "Your Crew"
    deleter_name = _display_name(store, owner_id, "A member") if owner_id else "A member"

    member_ids = [uid for uid in crew.get("memberIds") or [] if uid != owner_id]
    if not member_ids:
        logger.info("No other members to notify for deleted crew %s.", crew_id)
        return FanoutResult()

    tokens_by_user = resolve_push_tokens(store, member_ids)
    messages = build_messages(
        flatten_tokens(tokens_by_user),
        crew_name,
        f"{deleter_name} has deleted the crew.",
        data={"crewId": crew_id},
    )
    return FanoutResult(recipients=list(tokens_by_user), messages_sent=_send(push, messages))


def _is_up(status: Optional[Dict[str, Any]]) -> bool:
    return bool((status or {}).get("upForGoingOutTonight"))


def status_flipped(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> bool:
    """A missing status document counts as not up."""
    return _is_up(before) != _is_up(after)


def notify_on_status_change(
    store,
    push,
    crew_id: str,
    date: str,
    user_id: str,
    before: Optional[Dict[str, Any]],
    after: Optional[Dict[str, Any]],
    today: Optional[date_type] = None,
) -> FanoutResult:
    """Tell the rest of the crew that user_id is now (or no longer) up for it."""
    if not status_flipped(before, after):
        return FanoutResult()

    crew = store.get_crew(crew_id)
    if crew is None:
        logger.info("Crew %s does not exist.", crew_id)
        return FanoutResult()
    crew_name = crew.get("name") or "Your Crew"
    member_ids = [uid for uid in crew.get("memberIds") or [] if uid != user_id]
    if not member_ids:
        logger.info("No other members in crew %s to notify.", crew_id)
        return FanoutResult()

    user = store.get_user(user_id)
    if user is None:
        logger.info("User %s does not exist.", user_id)
        return FanoutResult()
    user_name = user.get("displayName") or "Someone"

    description = date_description(date, today=today)
    if _is_up(after):
        body = f"{user_name} is up for going out {description}!"
    else:
        body = f"{user_name} is no longer up for going out {description}."

    tokens_by_user = resolve_push_tokens(store, member_ids)
    messages = build_messages(
        flatten_tokens(tokens_by_user),
        crew_name,
        body,
        data={"crewId": crew_id, "date": date, "userId": user_id, "screen": "Crew"},
    )
    return FanoutResult(recipients=list(tokens_by_user), messages_sent=_send(push, messages))


def threshold_recipients(member_ids: List[str], up_member_ids: List[str]) -> List[str]:
    """Members to notify once enough of the crew is up; empty below the threshold."""
    if len(up_member_ids) < THRESHOLD_UP_COUNT:
        return []
    return [uid for uid in member_ids if uid not in up_member_ids]


def notify_on_threshold(
    store,
    push,
    crew_id: str,
    date: str,
    before: Optional[Dict[str, Any]],
    after: Optional[Dict[str, Any]],
    today: Optional[date_type] = None,
) -> FanoutResult:
    """
    After any status flip, if THRESHOLD_UP_COUNT or more members are up for crew_id on
    date, notify the members who are not. There is no latch: every qualifying flip
    notifies again. That includes down-flips: a member dropping out while 3 or more
    remain up makes the crew hear the new count, and the member who dropped out is
    among the recipients.
    """
    if not status_flipped(before, after):
        return FanoutResult()

    crew = store.get_crew(crew_id)
    if crew is None:
        logger.info("Crew %s does not exist.", crew_id)
        return FanoutResult()
    crew_name = crew.get("name") or "Your Crew"
    member_ids: List[str] = crew.get("memberIds") or []

    up_member_ids = store.get_up_member_ids(crew_id, date)
    total_up = len(up_member_ids)
    logger.info("Crew %s date %s: %d members up", crew_id, date, total_up)

    members_not_up = threshold_recipients(member_ids, up_member_ids)
    if not members_not_up:
        return FanoutResult()

    activity = (crew.get("activity") or "meeting up").lower()
    body = f"{total_up} of your crew members are up for {activity} {date_description(date, today=today)}!"

    tokens_by_user = resolve_push_tokens(store, members_not_up)
    messages = build_messages(
        flatten_tokens(tokens_by_user),
        crew_name,
        body,
        data={"crewId": crew_id, "date": date, "screen": "Crew"},
    )
    result = FanoutResult(recipients=list(tokens_by_user), messages_sent=_send(push, messages))
    logger.info("Threshold notification for crew %s date %s sent to %s", crew_id, date, result.recipients)
    return result


def poke_crew(
    store, push, crew_id: str, date: str, user_id: str, today: Optional[date_type] = None
) -> PokeResult:
    """
    Nudge crew members who are not up for it yet. Only a member who is up for crew_id
    on date may poke.
    """
    if not crew_id or not date or not user_id:
        raise InvalidArgumentError("The function must be called with crewId, date, and userId.")

    crew = store.get_crew(crew_id)
    if crew is None:
        raise NotFoundError("Crew not found.")
    if not crew.get("memberIds") or not crew.get("name"):
        raise InvalidArgumentError("Crew data is incomplete.")
    crew_name = crew["name"]
    activity = (crew.get("activity") or "going out").lower()

    up_member_ids = store.get_up_member_ids(crew_id, date)
    if user_id not in up_member_ids:
        raise PermissionDeniedError("You must be marked as up for it to poke the crew.")

    not_up = [uid for uid in crew["memberIds"] if uid != user_id and uid not in up_member_ids]
    if not not_up:
        logger.info("All crew members of %s are already up for it.", crew_id)
        return PokeResult(success=True, message="All crew members are already up for it.")

    sender = store.get_user(user_id)
    if sender is None:
        raise NotFoundError("User not found.")
    sender_name = sender.get("displayName") or "A crew member"

    tokens_by_user = resolve_push_tokens(store, not_up)
    if not tokens_by_user:
        logger.info("No valid Expo push tokens found for members not up in crew %s.", crew_id)
        return PokeResult(success=False, message="No valid push tokens to notify.")

    description = date_description(date, today=today)
    messages = build_messages(
        flatten_tokens(tokens_by_user),
        f"{sender_name} poked you!",
        f"{sender_name} has poked the crew about {activity} {description}!",
        data={"crewId": crew_id, "date": date, "screen": "Crew"},
        subtitle=crew_name,
    )
    sent = _send(push, messages)
    logger.info("Sent poke notifications for crew %s date %s to %s", crew_id, date, list(tokens_by_user))
    return PokeResult(
        success=True,
        message="Pokes sent successfully.",
        recipients=list(tokens_by_user),
        messages_sent=sent,
    )


def notify_on_invitation_created(store, push, invitation: Optional[Dict[str, Any]]) -> FanoutResult:
    """Tell the invited user about a pending crew invitation."""
    invitation = invitation or {}
    crew_id = invitation.get("crewId")
    to_user_id = invitation.get("toUserId")
    from_user_id = invitation.get("fromUserId")
    if not crew_id or not to_user_id:
        raise InvalidArgumentError("Invitation is missing crewId or toUserId.")
    if invitation.get("status") != "pending":
        return FanoutResult()

    crew = store.get_crew(crew_id)
    if crew is None:
        logger.info("Crew %s does not exist.", crew_id)
        return FanoutResult()
    crew_name = crew.get("name") or "a crew"
    inviter_name = _display_name(store, from_user_id, "Someone") if from_user_id else "Someone"

    tokens_by_user = resolve_push_tokens(store, [to_user_id])
    if not tokens_by_user:
        logger.info("No valid Expo push tokens found for user %s.", to_user_id)
        return FanoutResult()

    messages = build_messages(
        tokens_by_user[to_user_id],
        f"Invitation to join {crew_name}",
        f'{inviter_name} has invited you to join their crew "{crew_name}"!',
        data={"crewId": crew_id, "fromUserId": from_user_id, "toUserId": to_user_id},
    )
    return FanoutResult(recipients=[to_user_id], messages_sent=_send(push, messages))
