"""Role-based access decisions for conversations.

Everything here is pure: callers pass the conversation document they already
loaded and get a decision back, nothing touches the database.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from moto_chat.errors import AccessDeniedError, ValidationError
from moto_chat.models.conversation import ConversationDocument, participant_ids
from moto_chat.models.user import ROLES, STAFF_ROLES


class Action(str, Enum):
    READ = "read"
    WRITE = "write"
    ARCHIVE = "archive"
    CLOSE = "close"
    DELETE = "delete"


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = AccessDecision(True)


def normalize_role(value: Any) -> str:
    """Map a raw role claim onto one of the canonical roles."""
    if isinstance(value, (list, tuple)):
        # highest privilege wins when a legacy token carries several roles
        candidates = [normalize_role(v) for v in value]
        for role in ("admin", "staff", "customer"):
            if role in candidates:
                return role
        raise ValidationError("Unknown role")
    if not isinstance(value, str) or value.strip().lower() not in ROLES:
        raise ValidationError(f"Unknown role: {value!r}")
    return value.strip().lower()


def is_participant(conversation: ConversationDocument, user_id: str) -> bool:
    return user_id in participant_ids(conversation)


def can_access(conversation: ConversationDocument, user_id: str, role: str, action: Action = Action.READ) -> AccessDecision:
    if role == "admin":
        return ALLOW
    if action == Action.DELETE:
        return AccessDecision(False, "Only admins can delete conversations")
    if action == Action.CLOSE and role not in STAFF_ROLES:
        return AccessDecision(False, "Only staff or admins can close conversations")
    if role == "staff":
        if conversation.get("type") == "booking" or is_participant(conversation, user_id):
            return ALLOW
        return AccessDecision(False, "Staff can only access booking conversations or their own threads")
    if role == "customer":
        if is_participant(conversation, user_id):
            return ALLOW
        return AccessDecision(False, "Not a participant of this conversation")
    return AccessDecision(False, "Access denied")


def ensure_access(conversation: ConversationDocument, user_id: str, role: str, action: Action = Action.READ) -> None:
    decision = can_access(conversation, user_id, role, action)
    if not decision:
        raise AccessDeniedError(decision.reason or "Access denied")


def require_staff_or_admin(role: str) -> None:
    if role not in STAFF_ROLES:
        raise AccessDeniedError("Admin or staff privileges required")


def require_admin(role: str) -> None:
    if role != "admin":
        raise AccessDeniedError("Admin privileges required")


def can_join_direct(role: Optional[str]) -> bool:
    return role in STAFF_ROLES


def conversation_list_query(user_id: str, role: str) -> Dict[str, Any]:
    """Role-specific filter for conversation listings."""
    if role == "admin":
        return {"type": "direct", "participants.user_id": user_id}
    if role == "staff":
        return {
            "$or": [
                {"type": "direct", "participants.user_id": user_id},
                {"type": "booking"},
            ]
        }
    if role == "customer":
        return {"participants.user_id": user_id}
    raise ValidationError(f"Unknown role: {role!r}")
