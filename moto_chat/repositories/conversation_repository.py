from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from moto_chat.models.conversation import STATUS_TRANSITIONS


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants.user_id", ASCENDING)])
        await self.collection.create_index([("updated_at", DESCENDING)])
        await self.collection.create_index([("type", ASCENDING), ("status", ASCENDING)])
        # one live thread per booking / per staff pair; deleted threads drop the key
        await self.collection.create_index([("thread_key", ASCENDING)], unique=True, sparse=True)

    async def find_by_id(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        oid = self._to_object_id(conversation_id)
        if oid is None:
            return None
        return self._normalize(await self.collection.find_one({"_id": oid}))

    async def find_by_thread_key(self, thread_key: str) -> Optional[Dict[str, Any]]:
        return self._normalize(await self.collection.find_one({"thread_key": thread_key}))

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new conversation; DuplicateKeyError propagates on a thread_key clash."""
        doc = dict(doc)
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def add_participant(self, conversation_id: str, user_id: str, role: str) -> bool:
        participant = {"user_id": user_id, "role": role, "joined_at": datetime.now(timezone.utc)}
        result = await self.collection.update_one(
            {"_id": self._to_object_id(conversation_id), "participants.user_id": {"$ne": user_id}},
            {
                "$push": {"participants": participant},
                "$set": {f"unread_counters.{user_id}": 0},
            },
        )
        return bool(result.modified_count)

    async def update_on_new_message(self, conversation_id: str, preview: Dict[str, Any], recipient_ids: Iterable[str]) -> None:
        update: Dict[str, Any] = {
            "$set": {
                "last_message_preview": preview,
                "updated_at": preview.get("timestamp") or datetime.now(timezone.utc),
            },
        }
        increments = {f"unread_counters.{uid}": 1 for uid in recipient_ids}
        if increments:
            update["$inc"] = increments
        await self.collection.update_one({"_id": self._to_object_id(conversation_id)}, update)

    async def replace_preview_if_current(self, conversation_id: str, message_id: str, preview: Optional[Dict[str, Any]]) -> bool:
        """Swap the preview only while it still points at ``message_id``."""
        result = await self.collection.update_one(
            {
                "_id": self._to_object_id(conversation_id),
                "last_message_preview.message_id": message_id,
            },
            {"$set": {"last_message_preview": preview}},
        )
        return bool(result.modified_count)

    async def set_unread(self, conversation_id: str, user_id: str, count: int) -> None:
        await self.collection.update_one(
            {"_id": self._to_object_id(conversation_id)},
            {"$set": {f"unread_counters.{user_id}": count}},
        )

    async def set_unread_counters(self, conversation_id: str, counters: Dict[str, int]) -> None:
        if not counters:
            return
        await self.collection.update_one(
            {"_id": self._to_object_id(conversation_id)},
            {"$set": {f"unread_counters.{uid}": count for uid, count in counters.items()}},
        )

    async def transition_status(
        self,
        conversation_id: str,
        target: str,
        extra: Optional[Dict[str, Any]] = None,
        unset: Optional[List[str]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Move to ``target`` if the current status allows it; returns the updated doc or None."""
        now = datetime.now(timezone.utc)
        update: Dict[str, Any] = {"$set": {"status": target, "updated_at": now, **(extra or {})}}
        if unset:
            update["$unset"] = {field: "" for field in unset}
        doc = await self.collection.find_one_and_update(
            {
                "_id": self._to_object_id(conversation_id),
                "status": {"$in": list(STATUS_TRANSITIONS[target])},
            },
            update,
            return_document=ReturnDocument.AFTER,
        )
        return self._normalize(doc)

    async def list_page(self, query: Dict[str, Any], skip: int, limit: int) -> Tuple[List[Dict[str, Any]], int]:
        sort = [("updated_at", DESCENDING), ("_id", DESCENDING)]
        cursor = self.collection.find(query).sort(sort).skip(skip).limit(limit)
        items = await cursor.to_list(length=limit)
        total = await self.collection.count_documents(query)
        return [self._normalize(it) for it in items], total

    async def find_ids(self, query: Dict[str, Any]) -> List[ObjectId]:
        return await self.collection.distinct("_id", query)

    async def list_for_participant(self, user_id: str) -> List[Dict[str, Any]]:
        cursor = self.collection.find(
            {"participants.user_id": user_id, "status": {"$ne": "deleted"}},
            {"participants": 1},
        )
        return [self._normalize(it) async for it in cursor]

    async def count(self, query: Dict[str, Any]) -> int:
        return await self.collection.count_documents(query)

    def _normalize(self, doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None
        doc["_id"] = str(doc.get("_id"))
        return doc

    def _to_object_id(self, value) -> Optional[ObjectId]:
        if isinstance(value, ObjectId):
            return value
        try:
            return ObjectId(value)
        except (InvalidId, TypeError):
            return None
