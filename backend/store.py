"""
Firestore access for users, crews, conversations and invitations.
Every read and write the core performs goes through FirestoreStore, so the badge,
fan-out and aggregation logic can run against any object with the same methods.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from firebase_admin import firestore
from firebase_admin.firestore import SERVER_TIMESTAMP
from google.api_core.exceptions import AlreadyExists, NotFound

from chat_ids import COLLECTIONS, MEMBER_FIELDS
from errors import NotFoundError

logger = logging.getLogger(__name__)

USERS = "users"
CREWS = "crews"
INVITATIONS = "invitations"
PROCESSED_EVENTS = "processed_events"

# Firestore 'in' queries support up to 10 elements
IN_QUERY_LIMIT = 10


class FirestoreStore:
    def __init__(self, db=None):
        self._db = db

    @property
    def db(self):
        """Lazy initialization of Firestore client"""
        if self._db is None:
            self._db = firestore.client()
        return self._db

    # --- Users ---

    def get_user(self, uid: str) -> Optional[Dict[str, Any]]:
        doc = self.db.collection(USERS).document(uid).get()
        if not doc.exists:
            return None
        return doc.to_dict() or {}

    def get_users(self, uids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Fetch up to IN_QUERY_LIMIT users with a single 'in' query. Missing users are omitted."""
        if not uids:
            return {}
        if len(uids) > IN_QUERY_LIMIT:
            raise ValueError(f"At most {IN_QUERY_LIMIT} ids per lookup, got {len(uids)}")
        users_ref = self.db.collection(USERS)
        refs = [users_ref.document(uid) for uid in uids]
        snapshot = users_ref.where(firestore.FieldPath.document_id(), "in", refs).stream()
        return {doc.id: doc.to_dict() or {} for doc in snapshot}

    def list_user_ids(self) -> List[str]:
        return [doc.id for doc in self.db.collection(USERS).select([]).stream()]

    def run_user_transaction(
        self,
        uid: str,
        apply: Callable[[Dict[str, Any]], Tuple[Optional[Dict[str, Any]], Any]],
    ) -> Any:
        """
        Atomic read-modify-write on one user document.
        apply(user_data) returns (updates or None, result). Firestore retries the whole
        unit on contention; a missing user raises NotFoundError and writes nothing.
        """
        user_ref = self.db.collection(USERS).document(uid)
        transaction = self.db.transaction()

        @firestore.transactional
        def _run(transaction):
            snapshot = user_ref.get(transaction=transaction)
            if not snapshot.exists:
                raise NotFoundError(f"User {uid} not found")
            updates, result = apply(snapshot.to_dict() or {})
            if updates:
                transaction.update(user_ref, updates)
            return result

        return _run(transaction)

    def add_active_chat(self, uid: str, chat_id: str) -> None:
        self._update_user(uid, {"activeChats": firestore.ArrayUnion([chat_id])})

    def remove_active_chat(self, uid: str, chat_id: str) -> None:
        self._update_user(uid, {"activeChats": firestore.ArrayRemove([chat_id])})

    def _update_user(self, uid: str, updates: Dict[str, Any]) -> None:
        try:
            self.db.collection(USERS).document(uid).update(updates)
        except NotFound:
            raise NotFoundError(f"User {uid} not found")

    # --- Crews ---

    def get_crew(self, crew_id: str) -> Optional[Dict[str, Any]]:
        doc = self.db.collection(CREWS).document(crew_id).get()
        if not doc.exists:
            return None
        return doc.to_dict() or {}

    def get_up_member_ids(self, crew_id: str, date: str) -> List[str]:
        statuses_ref = (
            self.db.collection(CREWS)
            .document(crew_id)
            .collection("statuses")
            .document(date)
            .collection("userStatuses")
        )
        return [
            doc.id
            for doc in statuses_ref.where("upForGoingOutTonight", "==", True).stream()
        ]

    # --- Conversations ---

    def _chat_ref(self, kind: str, chat_id: str):
        return self.db.collection(COLLECTIONS[kind]).document(chat_id)

    def get_chat(self, kind: str, chat_id: str) -> Optional[Dict[str, Any]]:
        doc = self._chat_ref(kind, chat_id).get()
        if not doc.exists:
            return None
        return doc.to_dict() or {}

    def list_chats_for_user(self, kind: str, uid: str) -> List[Tuple[str, Dict[str, Any]]]:
        query = self.db.collection(COLLECTIONS[kind]).where(MEMBER_FIELDS[kind], "array_contains", uid)
        return [(doc.id, doc.to_dict() or {}) for doc in query.stream()]

    def get_latest_message(self, kind: str, chat_id: str) -> Optional[Dict[str, Any]]:
        query = (
            self._chat_ref(kind, chat_id)
            .collection("messages")
            .order_by("createdAt", direction=firestore.Query.DESCENDING)
            .limit(1)
        )
        for doc in query.stream():
            return doc.to_dict()
        return None

    def list_messages_after(self, kind: str, chat_id: str, after: Optional[datetime]) -> List[Dict[str, Any]]:
        """Messages created strictly after `after` (all messages when None)."""
        query = self._chat_ref(kind, chat_id).collection("messages")
        if after is not None:
            query = query.where("createdAt", ">", after)
        return [doc.to_dict() or {} for doc in query.stream()]

    def set_last_read(self, kind: str, chat_id: str, uid: str) -> None:
        self._chat_ref(kind, chat_id).set({"lastRead": {uid: SERVER_TIMESTAMP}}, merge=True)

    # --- Invitations ---

    def count_pending_invitations(self, uid: str) -> int:
        query = (
            self.db.collection(INVITATIONS)
            .where("toUserId", "==", uid)
            .where("status", "==", "pending")
        )
        return sum(1 for _ in query.stream())

    # --- Change events ---

    def claim_event(self, event_id: str) -> bool:
        """
        Record that a change event is being processed. False if it was already claimed,
        which is how redelivered events are recognised.
        """
        try:
            self.db.collection(PROCESSED_EVENTS).document(event_id).create({"processedAt": SERVER_TIMESTAMP})
        except AlreadyExists:
            return False
        return True

    def release_event(self, event_id: str) -> None:
        """Forget a claim whose handling failed, so redelivery is processed."""
        self.db.collection(PROCESSED_EVENTS).document(event_id).delete()
