"""Conversation and message workflows.

MessagingService is the only writer of conversation and message state. Every
public operation checks the access policy before it mutates anything, and
PyMongo failures are converted to StorageError before leaving this module.
"""
import asyncio
import functools
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pymongo.errors import DuplicateKeyError, PyMongoError

from moto_chat.config import Settings, get_settings
from moto_chat.errors import AccessDeniedError, ConflictError, NotFoundError, StorageError, ValidationError
from moto_chat.models.conversation import (
    CONVERSATION_STATUSES,
    booking_thread_key,
    direct_thread_key,
    participant_ids,
)
from moto_chat.models.message import MESSAGE_TYPES
from moto_chat.models.user import STAFF_ROLES
from moto_chat.repositories.booking_repository import BookingRepository
from moto_chat.repositories.conversation_repository import ConversationRepository
from moto_chat.repositories.message_repository import MessageRepository
from moto_chat.repositories.user_repository import UserRepository
from moto_chat.services.access_policy import (
    Action,
    can_join_direct,
    conversation_list_query,
    ensure_access,
    is_participant,
    require_admin,
    require_staff_or_admin,
)


logger = logging.getLogger(__name__)

ATTACHMENT_FIELDS = ("filename", "original_name", "mimetype", "size", "url")


def storage_guard(func):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except PyMongoError as exc:
            logger.exception("Storage failure in %s", func.__name__)
            raise StorageError() from exc
    return wrapper


def serialize_message(doc: Dict[str, Any]) -> Dict[str, Any]:
    edit_history = doc.get("edit_history") or []
    return {
        "id": doc["_id"],
        "conversation_id": doc["conversation_id"],
        "sender_id": doc["sender_id"],
        "sender_role": doc.get("sender_role"),
        "content": doc.get("content"),
        "message_type": doc.get("message_type", "text"),
        "attachment": doc.get("attachment"),
        "reply_to": doc.get("reply_to"),
        "reactions": {emoji: users for emoji, users in (doc.get("reactions") or {}).items() if users},
        "is_read": not doc.get("unread_by"),
        "is_deleted": bool(doc.get("is_deleted")),
        "deleted_at": doc.get("deleted_at"),
        "edit_history": edit_history,
        "is_edited": bool(edit_history),
        "created_at": doc.get("created_at"),
        "updated_at": doc.get("updated_at"),
    }


def build_preview(message: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "message_id": message["_id"],
        "content": message["content"],
        "sender_id": message["sender_id"],
        "message_type": message.get("message_type", "text"),
        "timestamp": message.get("created_at"),
    }


class MessagingService:

    def __init__(
        self,
        conversation_repo: ConversationRepository,
        message_repo: MessageRepository,
        user_repo: UserRepository,
        booking_repo: BookingRepository,
        gateway,
        settings: Optional[Settings] = None,
    ) -> None:
        self._conversation_repo = conversation_repo
        self._message_repo = message_repo
        self._user_repo = user_repo
        self._booking_repo = booking_repo
        self._gateway = gateway
        self._settings = settings or get_settings()

    # conversations

    @storage_guard
    async def get_conversations_for_user(
        self,
        user_id: str,
        role: str,
        status: str = "active",
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        if status not in CONVERSATION_STATUSES:
            raise ValidationError(f"Unknown conversation status: {status!r}")
        if status == "deleted" and role != "admin":
            raise AccessDeniedError("Only admins can list deleted conversations")
        page, limit, skip = self._page_window(page, limit, self._settings.default_page_size)
        query = {**conversation_list_query(user_id, role), "status": status}
        items, total = await self._conversation_repo.list_page(query, skip=skip, limit=limit)
        result = []
        for conv in items:
            unread = await self._message_repo.count_unread(conv["_id"], user_id)
            result.append(self._serialize_conversation(conv, viewer_id=user_id, unread_count=unread))
        return {"items": result, "page": page, "limit": limit, "total": total}

    @storage_guard
    async def get_or_create_booking_conversation(self, booking_id: str, user_id: str, role: str) -> Dict[str, Any]:
        booking = await self._booking_repo.find_booking(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        owner_id = booking["owner_user_id"]
        if role not in STAFF_ROLES and owner_id != user_id:
            raise AccessDeniedError("Access denied to booking conversation")

        thread_key = booking_thread_key(booking["id"])
        conversation = await self._conversation_repo.find_by_thread_key(thread_key)
        if conversation is None:
            now = datetime.now(timezone.utc)
            participants = [{"user_id": owner_id, "role": "customer", "joined_at": now}]
            if user_id != owner_id:
                participants.append({"user_id": user_id, "role": role, "joined_at": now})
            conversation = await self._create_or_fetch(thread_key, {
                "type": "booking",
                "status": "active",
                "participants": participants,
                "related_booking": booking["id"],
                "thread_key": thread_key,
                "last_message_preview": None,
                "unread_counters": {p["user_id"]: 0 for p in participants},
                "created_at": now,
                "updated_at": now,
            })

        if role in STAFF_ROLES and not is_participant(conversation, user_id):
            if await self._conversation_repo.add_participant(conversation["_id"], user_id, role):
                logger.info("Added %s %s to booking conversation %s", role, user_id, conversation["_id"])
            conversation = await self._conversation_repo.find_by_id(conversation["_id"])
        return await self._serialize_for(conversation, user_id)

    @storage_guard
    async def get_or_create_direct_conversation(self, user_id: str, target_user_id: str, role: str) -> Dict[str, Any]:
        if not can_join_direct(role):
            raise AccessDeniedError("Direct conversations are limited to admin and staff")
        if target_user_id == user_id:
            raise ValidationError("Cannot start a direct conversation with yourself")
        target = await self._user_repo.find_user(target_user_id)
        if target is None:
            raise NotFoundError("User not found")
        if not can_join_direct(target["role"]):
            raise AccessDeniedError("Direct conversations require an admin or staff recipient")

        thread_key = direct_thread_key(user_id, target["id"])
        conversation = await self._conversation_repo.find_by_thread_key(thread_key)
        if conversation is None:
            now = datetime.now(timezone.utc)
            participants = [
                {"user_id": user_id, "role": role, "joined_at": now},
                {"user_id": target["id"], "role": target["role"], "joined_at": now},
            ]
            conversation = await self._create_or_fetch(thread_key, {
                "type": "direct",
                "status": "active",
                "participants": participants,
                "thread_key": thread_key,
                "last_message_preview": None,
                "unread_counters": {p["user_id"]: 0 for p in participants},
                "created_at": now,
                "updated_at": now,
            })
        return await self._serialize_for(conversation, user_id)

    @storage_guard
    async def archive_conversation(self, conversation_id: str, user_id: str, role: str) -> Dict[str, Any]:
        conversation = await self._load_conversation(conversation_id)
        ensure_access(conversation, user_id, role, Action.ARCHIVE)
        now = datetime.now(timezone.utc)
        updated = await self._conversation_repo.transition_status(
            conversation_id, "archived", {"archived_at": now, "archived_by": user_id}
        )
        return await self._after_transition(conversation, updated, "archive", "conversation_archived", user_id)

    @storage_guard
    async def unarchive_conversation(self, conversation_id: str, user_id: str, role: str) -> Dict[str, Any]:
        conversation = await self._load_conversation(conversation_id)
        ensure_access(conversation, user_id, role, Action.ARCHIVE)
        updated = await self._conversation_repo.transition_status(
            conversation_id, "active", unset=["archived_at", "archived_by"]
        )
        return await self._after_transition(conversation, updated, "unarchive", "conversation_unarchived", user_id)

    @storage_guard
    async def close_conversation(self, conversation_id: str, user_id: str, role: str) -> Dict[str, Any]:
        conversation = await self._load_conversation(conversation_id)
        ensure_access(conversation, user_id, role, Action.CLOSE)
        updated = await self._conversation_repo.transition_status(
            conversation_id, "closed", {"closed_at": datetime.now(timezone.utc)}
        )
        return await self._after_transition(conversation, updated, "close", "conversation_closed", user_id)

    @storage_guard
    async def delete_conversation(self, conversation_id: str, user_id: str, role: str) -> Dict[str, Any]:
        require_admin(role)
        conversation = await self._conversation_repo.find_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        ensure_access(conversation, user_id, role, Action.DELETE)
        if conversation.get("status") == "deleted":
            return await self._finish_delete(conversation)
        now = datetime.now(timezone.utc)
        updated = await self._conversation_repo.transition_status(
            conversation_id, "deleted", {"deleted_at": now}, unset=["thread_key"]
        )
        if updated is None:
            raise NotFoundError("Conversation not found")
        removed = await self._message_repo.soft_delete_conversation(conversation_id)
        members = participant_ids(updated)
        await self._conversation_repo.set_unread_counters(conversation_id, {uid: 0 for uid in members})
        logger.info("Conversation %s deleted by %s (%d messages)", conversation_id, user_id, removed)

        payload = {"conversation_id": conversation_id, "deleted_at": now, "deleted_by": user_id}
        await self._emit_conversation(conversation_id, "conversation_deleted", payload)
        await self._emit_users(members, "conversation_deleted", payload)
        return {"conversation_id": conversation_id, "deleted_at": now, "messages_deleted": removed}

    # messages

    @storage_guard
    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        sender_role: str,
        content: Any,
        message_type: str = "text",
        reply_to: Optional[str] = None,
        attachment: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        conversation = await self._load_conversation(conversation_id)
        ensure_access(conversation, sender_id, sender_role, Action.WRITE)
        if conversation["status"] == "closed":
            raise ValidationError("Conversation is closed")

        text = self._clean_content(content)
        message_type = message_type or "text"
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"Invalid message type: {message_type!r}")
        cleaned_attachment = self._clean_attachment(attachment, message_type)
        if reply_to:
            parent = await self._message_repo.find_by_id(reply_to)
            if parent is None or parent["conversation_id"] != conversation["_id"]:
                raise ValidationError("reply_to must reference a message in the same conversation")

        recipients = [uid for uid in participant_ids(conversation) if uid != sender_id]
        now = datetime.now(timezone.utc)
        message = await self._message_repo.insert({
            "conversation_id": conversation["_id"],
            "sender_id": sender_id,
            "sender_role": sender_role,
            "content": text,
            "message_type": message_type,
            "attachment": cleaned_attachment,
            "reply_to": reply_to or None,
            "unread_by": recipients,
            "reactions": {},
            "is_deleted": False,
            "deleted_at": None,
            "edit_history": [],
            "created_at": now,
            "updated_at": now,
        })
        current = await self._conversation_repo.find_by_id(conversation["_id"])
        if current is None or current.get("status") == "deleted":
            # deleted while the insert was in flight; its cascade may have missed this message
            await self._message_repo.soft_delete(message["_id"])
            raise NotFoundError("Conversation not found")
        preview = build_preview(message)
        await self._update_preview_after_send(conversation["_id"], preview, recipients)

        payload = serialize_message(message)
        await self._emit_conversation(
            conversation["_id"], "new_message", {"conversation_id": conversation["_id"], "message": payload}
        )
        await self._emit_users(
            recipients,
            "conversation_updated",
            {"conversation_id": conversation["_id"], "last_message_preview": preview},
        )
        return payload

    @storage_guard
    async def get_messages(
        self,
        conversation_id: str,
        user_id: str,
        role: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        conversation = await self._load_conversation(conversation_id)
        ensure_access(conversation, user_id, role, Action.READ)
        page, limit, skip = self._page_window(page, limit, self._settings.message_page_size)
        items, total = await self._message_repo.list_for_conversation(conversation["_id"], skip=skip, limit=limit)

        if items:
            modified = await self._message_repo.mark_read([m["_id"] for m in items], user_id)
            for message in items:
                if user_id in message.get("unread_by", []):
                    message["unread_by"] = [uid for uid in message["unread_by"] if uid != user_id]
            if modified:
                await self._sync_unread_counter(conversation["_id"], user_id)
                await self._emit_conversation(conversation["_id"], "messages_read", {
                    "conversation_id": conversation["_id"],
                    "read_by": user_id,
                    "message_ids": [m["_id"] for m in items],
                    "read_at": datetime.now(timezone.utc),
                })
        return {"items": [serialize_message(m) for m in items], "page": page, "limit": limit, "total": total}

    @storage_guard
    async def mark_conversation_as_read(self, conversation_id: str, user_id: str, role: str) -> Dict[str, Any]:
        conversation = await self._load_conversation(conversation_id)
        ensure_access(conversation, user_id, role, Action.READ)
        modified = await self._message_repo.mark_conversation_read(conversation["_id"], user_id)
        await self._sync_unread_counter(conversation["_id"], user_id)
        if modified:
            await self._emit_conversation(conversation["_id"], "messages_read", {
                "conversation_id": conversation["_id"],
                "read_by": user_id,
                "read_at": datetime.now(timezone.utc),
            })
        return {"conversation_id": conversation["_id"], "updated": modified}

    @storage_guard
    async def edit_message(self, message_id: str, user_id: str, role: str, content: Any) -> Dict[str, Any]:
        message, conversation = await self._load_message(message_id)
        ensure_access(conversation, user_id, role, Action.WRITE)
        if message["sender_id"] != user_id:
            raise AccessDeniedError("Only the sender can edit a message")
        text = self._clean_content(content)

        for _ in range(self._settings.preview_update_attempts):
            if message["content"] == text:
                return serialize_message(message)
            updated = await self._message_repo.apply_edit(message_id, message["content"], text)
            if updated is not None:
                break
            message = await self._message_repo.find_by_id(message_id)
            if message is None or message.get("is_deleted"):
                raise NotFoundError("Message not found")
        else:
            raise ConflictError("Message was modified concurrently, try again")

        await self._conversation_repo.replace_preview_if_current(
            conversation["_id"], updated["_id"], build_preview(updated)
        )
        payload = serialize_message(updated)
        await self._emit_conversation(
            conversation["_id"], "message_edited", {"conversation_id": conversation["_id"], "message": payload}
        )
        return payload

    @storage_guard
    async def delete_message(self, message_id: str, user_id: str, role: str) -> Dict[str, Any]:
        message, conversation = await self._load_message(message_id)
        ensure_access(conversation, user_id, role, Action.READ)
        if message["sender_id"] != user_id and role != "admin":
            raise AccessDeniedError("Only the sender or an admin can delete a message")
        deleted = await self._message_repo.soft_delete(message_id)
        if deleted is None:
            raise NotFoundError("Message not found")

        await self._recount_unread(conversation)
        if (conversation.get("last_message_preview") or {}).get("message_id") == message_id:
            latest = await self._message_repo.latest_visible(conversation["_id"])
            await self._conversation_repo.replace_preview_if_current(
                conversation["_id"], message_id, build_preview(latest) if latest else None
            )
        payload = {
            "conversation_id": conversation["_id"],
            "message_id": message_id,
            "deleted_at": deleted.get("deleted_at"),
        }
        await self._emit_conversation(conversation["_id"], "message_deleted", payload)
        return payload

    @storage_guard
    async def add_reaction(self, message_id: str, user_id: str, role: str, emoji: str) -> Dict[str, Any]:
        return await self._react(message_id, user_id, role, emoji, add=True)

    @storage_guard
    async def remove_reaction(self, message_id: str, user_id: str, role: str, emoji: str) -> Dict[str, Any]:
        return await self._react(message_id, user_id, role, emoji, add=False)

    @storage_guard
    async def search_messages(
        self,
        query: str,
        role: str,
        page: int = 1,
        limit: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        require_staff_or_admin(role)
        term = (query or "").strip()
        if not term:
            raise ValidationError("Search query cannot be empty")
        page, limit, skip = self._page_window(page, limit, self._settings.default_page_size)
        conversation_ids = None
        if role == "staff" and user_id:
            visible = {**conversation_list_query(user_id, role), "status": {"$ne": "deleted"}}
            conversation_ids = await self._conversation_repo.find_ids(visible)
        items, total = await self._message_repo.search(
            re.escape(term), skip=skip, limit=limit, conversation_ids=conversation_ids
        )
        return {"items": [serialize_message(m) for m in items], "page": page, "limit": limit, "total": total}

    # directory, stats, presence

    @storage_guard
    async def get_messaging_users(self, user_id: str, role: str) -> List[Dict[str, Any]]:
        require_staff_or_admin(role)
        users = await self._user_repo.list_by_roles(STAFF_ROLES, exclude_id=user_id)
        return [{**user, "is_online": self._gateway.is_online(user["id"])} for user in users]

    @storage_guard
    async def get_messaging_stats(self, role: str) -> Dict[str, Any]:
        require_admin(role)
        total_conversations, active_conversations, total_messages = await asyncio.gather(
            self._conversation_repo.count({}),
            self._conversation_repo.count({"status": "active"}),
            self._message_repo.count({"is_deleted": False}),
        )
        return {
            "total_conversations": total_conversations,
            "active_conversations": active_conversations,
            "total_messages": total_messages,
            "online_users": len(self._gateway.online_user_ids()),
            "timestamp": datetime.now(timezone.utc),
        }

    @storage_guard
    async def get_contact_ids(self, user_id: str) -> List[str]:
        contacts = set()
        for conversation in await self._conversation_repo.list_for_participant(user_id):
            contacts.update(participant_ids(conversation))
        contacts.discard(user_id)
        return sorted(contacts)

    @storage_guard
    async def authorize_room(self, conversation_id: str, user_id: str, role: str) -> str:
        conversation = await self._load_conversation(conversation_id)
        ensure_access(conversation, user_id, role, Action.READ)
        return conversation["_id"]

    def is_online(self, user_id: str) -> bool:
        return self._gateway.is_online(user_id)

    # internals

    async def _create_or_fetch(self, thread_key: str, doc: Dict[str, Any]) -> Dict[str, Any]:
        try:
            conversation = await self._conversation_repo.insert(doc)
        except DuplicateKeyError:
            # a concurrent request created the thread first; use theirs
            logger.info("Lost creation race for %s, returning existing conversation", thread_key)
            conversation = await self._conversation_repo.find_by_thread_key(thread_key)
            if conversation is None:
                raise ConflictError("Conversation was created and removed concurrently")
            return conversation
        logger.info("Created %s conversation %s", doc["type"], conversation["_id"])
        return conversation

    async def _finish_delete(self, conversation: Dict[str, Any]) -> Dict[str, Any]:
        # an earlier delete changed the status but its message cascade failed
        removed = await self._message_repo.soft_delete_conversation(conversation["_id"])
        if not removed:
            raise NotFoundError("Conversation not found")
        await self._conversation_repo.set_unread_counters(
            conversation["_id"], {uid: 0 for uid in participant_ids(conversation)}
        )
        logger.info("Finished deleting conversation %s (%d messages)", conversation["_id"], removed)
        return {
            "conversation_id": conversation["_id"],
            "deleted_at": conversation.get("deleted_at"),
            "messages_deleted": removed,
        }

    async def _load_conversation(self, conversation_id: str) -> Dict[str, Any]:
        conversation = await self._conversation_repo.find_by_id(conversation_id)
        if conversation is None or conversation.get("status") == "deleted":
            raise NotFoundError("Conversation not found")
        return conversation

    async def _load_message(self, message_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        message = await self._message_repo.find_by_id(message_id)
        if message is None or message.get("is_deleted"):
            raise NotFoundError("Message not found")
        conversation = await self._load_conversation(message["conversation_id"])
        return message, conversation

    async def _react(self, message_id: str, user_id: str, role: str, emoji: str, add: bool) -> Dict[str, Any]:
        emoji = (emoji or "").strip()
        if not emoji or len(emoji) > 32 or "." in emoji or emoji.startswith("$"):
            raise ValidationError("Invalid reaction")
        message, conversation = await self._load_message(message_id)
        ensure_access(conversation, user_id, role, Action.READ)
        if add:
            updated = await self._message_repo.add_reaction(message_id, emoji, user_id)
        else:
            updated = await self._message_repo.remove_reaction(message_id, emoji, user_id)
        if updated is None:
            raise NotFoundError("Message not found")
        payload = serialize_message(updated)
        await self._emit_conversation(conversation["_id"], "message_reaction", {
            "conversation_id": conversation["_id"],
            "message_id": message_id,
            "reactions": payload["reactions"],
        })
        return payload

    async def _update_preview_after_send(self, conversation_id: str, preview: Dict[str, Any], recipients: List[str]) -> None:
        # the message is already stored; a stale preview must not fail the send
        attempts = max(1, self._settings.preview_update_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await self._conversation_repo.update_on_new_message(conversation_id, preview, recipients)
                return
            except PyMongoError:
                if attempt == attempts:
                    logger.exception(
                        "Preview update for conversation %s failed after %d attempts", conversation_id, attempts
                    )
                    return
                logger.warning("Preview update for conversation %s failed, retrying (%d)", conversation_id, attempt)
                await asyncio.sleep(0.05 * attempt)

    async def _sync_unread_counter(self, conversation_id: str, user_id: str) -> None:
        remaining = await self._message_repo.count_unread(conversation_id, user_id)
        await self._conversation_repo.set_unread(conversation_id, user_id, remaining)

    async def _recount_unread(self, conversation: Dict[str, Any]) -> None:
        counters = {}
        for uid in participant_ids(conversation):
            counters[uid] = await self._message_repo.count_unread(conversation["_id"], uid)
        await self._conversation_repo.set_unread_counters(conversation["_id"], counters)

    async def _after_transition(
        self,
        conversation: Dict[str, Any],
        updated: Optional[Dict[str, Any]],
        verb: str,
        event: str,
        user_id: str,
    ) -> Dict[str, Any]:
        if updated is None:
            raise ValidationError(f"Cannot {verb} a conversation that is {conversation['status']}")
        logger.info("Conversation %s is now %s (by %s)", updated["_id"], updated["status"], user_id)
        payload = {"conversation_id": updated["_id"], "status": updated["status"], "by": user_id}
        await self._emit_conversation(updated["_id"], event, payload)
        await self._emit_users(participant_ids(updated), event, payload)
        return await self._serialize_for(updated, user_id)

    async def _serialize_for(self, conversation: Dict[str, Any], user_id: str) -> Dict[str, Any]:
        unread = await self._message_repo.count_unread(conversation["_id"], user_id)
        return self._serialize_conversation(conversation, viewer_id=user_id, unread_count=unread)

    def _serialize_conversation(
        self,
        doc: Dict[str, Any],
        viewer_id: Optional[str] = None,
        unread_count: Optional[int] = None,
    ) -> Dict[str, Any]:
        participants = [
            {
                "user_id": p["user_id"],
                "role": p.get("role"),
                "joined_at": p.get("joined_at"),
                "is_online": self._gateway.is_online(p["user_id"]),
            }
            for p in doc.get("participants", [])
        ]
        result = {
            "id": doc["_id"],
            "type": doc.get("type"),
            "status": doc.get("status"),
            "participants": participants,
            "related_booking": doc.get("related_booking"),
            "last_message_preview": doc.get("last_message_preview"),
            "created_at": doc.get("created_at"),
            "updated_at": doc.get("updated_at"),
            "archived_at": doc.get("archived_at"),
            "archived_by": doc.get("archived_by"),
            "closed_at": doc.get("closed_at"),
            "deleted_at": doc.get("deleted_at"),
        }
        if viewer_id is not None:
            result["is_online"] = any(p["is_online"] for p in participants if p["user_id"] != viewer_id)
        if unread_count is not None:
            result["unread_count"] = unread_count
        return result

    async def _emit_conversation(self, conversation_id: str, event: str, payload: Dict[str, Any]) -> None:
        try:
            await self._gateway.emit_to_conversation(conversation_id, event, payload)
        except Exception:
            logger.exception("Failed to emit %s to conversation %s", event, conversation_id)

    async def _emit_users(self, user_ids: List[str], event: str, payload: Dict[str, Any]) -> None:
        try:
            await self._gateway.emit_to_users(user_ids, event, payload)
        except Exception:
            logger.exception("Failed to emit %s to users", event)

    def _clean_content(self, content: Any) -> str:
        if not isinstance(content, str):
            raise ValidationError("Message content is required")
        text = content.strip()
        if not text:
            raise ValidationError("Message content cannot be empty")
        limit = self._settings.message_max_length
        if len(text) > limit:
            raise ValidationError(f"Message content cannot exceed {limit} characters")
        return text

    def _clean_attachment(self, attachment: Optional[Mapping[str, Any]], message_type: str) -> Optional[Dict[str, Any]]:
        if not attachment:
            return None
        cleaned = {key: attachment.get(key) for key in ATTACHMENT_FIELDS}
        if message_type != "text" and not cleaned["filename"]:
            raise ValidationError("Attachment filename is required")
        size = cleaned["size"]
        if size is not None and (not isinstance(size, int) or size < 0):
            raise ValidationError("File size cannot be negative")
        return cleaned

    def _page_window(self, page: Optional[int], limit: Optional[int], default_limit: int) -> Tuple[int, int, int]:
        page = 1 if page is None else page
        limit = default_limit if limit is None else limit
        if page < 1:
            raise ValidationError("page must be at least 1")
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        limit = min(limit, self._settings.max_page_size)
        return page, limit, (page - 1) * limit
