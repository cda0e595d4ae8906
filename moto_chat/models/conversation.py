from datetime import datetime
from typing import Dict, List, Literal, Optional, TypedDict


ConversationType = Literal["booking", "direct"]
ConversationStatus = Literal["active", "archived", "closed", "deleted"]

CONVERSATION_STATUSES = ("active", "archived", "closed", "deleted")

# target status -> statuses it may be entered from
STATUS_TRANSITIONS: Dict[str, tuple] = {
    "archived": ("active",),
    "active": ("archived",),
    "closed": ("active", "archived"),
    "deleted": ("active", "archived", "closed"),
}


class ParticipantDocument(TypedDict):
    user_id: str
    role: str
    joined_at: datetime


class MessagePreview(TypedDict, total=False):
    message_id: str
    content: str
    sender_id: str
    message_type: str
    timestamp: datetime


class ConversationDocument(TypedDict, total=False):
    _id: str
    type: ConversationType
    status: ConversationStatus
    participants: List[ParticipantDocument]
    related_booking: Optional[str]
    # "booking:<id>" or "direct:<a>:<b>"; unset once deleted
    thread_key: str
    last_message_preview: Optional[MessagePreview]
    # per-user unread counters (user_id -> count), a cache of messages.unread_by
    unread_counters: Dict[str, int]
    created_at: datetime
    updated_at: datetime
    archived_at: Optional[datetime]
    archived_by: Optional[str]
    closed_at: Optional[datetime]
    deleted_at: Optional[datetime]


def booking_thread_key(booking_id: str) -> str:
    return f"booking:{booking_id}"


def direct_thread_key(user_a: str, user_b: str) -> str:
    first, second = sorted([user_a, user_b])
    return f"direct:{first}:{second}"


def participant_ids(conversation: ConversationDocument) -> List[str]:
    return [p["user_id"] for p in conversation.get("participants", [])]
