from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("conversation_id", ASCENDING), ("is_deleted", ASCENDING), ("created_at", DESCENDING)]
        )
        await self.collection.create_index([("conversation_id", ASCENDING), ("unread_by", ASCENDING)])
        await self.collection.create_index([("sender_id", ASCENDING), ("created_at", DESCENDING)])
        await self.collection.create_index([("is_deleted", ASCENDING), ("deleted_at", ASCENDING)])

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(doc)
        stored["conversation_id"] = self._to_object_id(doc["conversation_id"])
        if doc.get("reply_to"):
            stored["reply_to"] = self._to_object_id(doc["reply_to"])
        result = await self.collection.insert_one(stored)
        stored["_id"] = result.inserted_id
        return self._normalize(stored)

    async def find_by_id(self, message_id: str) -> Optional[Dict[str, Any]]:
        oid = self._to_object_id(message_id)
        if oid is None:
            return None
        return self._normalize(await self.collection.find_one({"_id": oid}))

    async def list_for_conversation(self, conversation_id: str, skip: int, limit: int) -> Tuple[List[Dict[str, Any]], int]:
        query = {"conversation_id": self._to_object_id(conversation_id), "is_deleted": False}
        sort = [("created_at", DESCENDING), ("_id", DESCENDING)]
        cursor = self.collection.find(query).sort(sort).skip(skip).limit(limit)
        items = await cursor.to_list(length=limit)
        total = await self.collection.count_documents(query)
        return [self._normalize(it) for it in items], total

    async def latest_visible(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        cursor = (
            self.collection.find({"conversation_id": self._to_object_id(conversation_id), "is_deleted": False})
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .limit(1)
        )
        items = await cursor.to_list(length=1)
        return self._normalize(items[0]) if items else None

    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        return await self.collection.count_documents(
            {"conversation_id": self._to_object_id(conversation_id), "is_deleted": False, "unread_by": user_id}
        )

    async def mark_read(self, message_ids: List[str], user_id: str) -> int:
        oids = [oid for oid in (self._to_object_id(mid) for mid in message_ids) if oid is not None]
        if not oids:
            return 0
        result = await self.collection.update_many(
            {"_id": {"$in": oids}, "unread_by": user_id},
            {"$pull": {"unread_by": user_id}},
        )
        return result.modified_count or 0

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> int:
        result = await self.collection.update_many(
            {"conversation_id": self._to_object_id(conversation_id), "is_deleted": False, "unread_by": user_id},
            {"$pull": {"unread_by": user_id}},
        )
        return result.modified_count or 0

    async def apply_edit(self, message_id: str, expected_content: str, new_content: str) -> Optional[Dict[str, Any]]:
        """Replace content only if nobody changed it since it was read."""
        now = datetime.now(timezone.utc)
        doc = await self.collection.find_one_and_update(
            {"_id": self._to_object_id(message_id), "is_deleted": False, "content": expected_content},
            {
                "$push": {"edit_history": {"content": expected_content, "edited_at": now}},
                "$set": {"content": new_content, "updated_at": now},
            },
            return_document=ReturnDocument.AFTER,
        )
        return self._normalize(doc)

    async def soft_delete(self, message_id: str) -> Optional[Dict[str, Any]]:
        now = datetime.now(timezone.utc)
        doc = await self.collection.find_one_and_update(
            {"_id": self._to_object_id(message_id), "is_deleted": False},
            {"$set": {"is_deleted": True, "deleted_at": now, "unread_by": [], "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        return self._normalize(doc)

    async def soft_delete_conversation(self, conversation_id: str) -> int:
        now = datetime.now(timezone.utc)
        result = await self.collection.update_many(
            {"conversation_id": self._to_object_id(conversation_id), "is_deleted": False},
            {"$set": {"is_deleted": True, "deleted_at": now, "unread_by": [], "updated_at": now}},
        )
        return result.modified_count or 0

    async def add_reaction(self, message_id: str, emoji: str, user_id: str) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one_and_update(
            {"_id": self._to_object_id(message_id), "is_deleted": False},
            {"$addToSet": {f"reactions.{emoji}": user_id}},
            return_document=ReturnDocument.AFTER,
        )
        return self._normalize(doc)

    async def remove_reaction(self, message_id: str, emoji: str, user_id: str) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one_and_update(
            {"_id": self._to_object_id(message_id), "is_deleted": False},
            {"$pull": {f"reactions.{emoji}": user_id}},
            return_document=ReturnDocument.AFTER,
        )
        return self._normalize(doc)

    async def search(
        self,
        pattern: str,
        skip: int,
        limit: int,
        conversation_ids: Optional[List[ObjectId]] = None,
    ) -> Tuple[List[Dict[str, Any]], int]:
        query: Dict[str, Any] = {"content": {"$regex": pattern, "$options": "i"}, "is_deleted": False}
        if conversation_ids is not None:
            query["conversation_id"] = {"$in": conversation_ids}
        cursor = self.collection.find(query).sort([("created_at", DESCENDING), ("_id", DESCENDING)]).skip(skip).limit(limit)
        items = await cursor.to_list(length=limit)
        total = await self.collection.count_documents(query)
        return [self._normalize(it) for it in items], total

    async def purge_deleted(self, before: datetime) -> int:
        result = await self.collection.delete_many({"is_deleted": True, "deleted_at": {"$lt": before}})
        return result.deleted_count or 0

    async def count(self, query: Dict[str, Any]) -> int:
        return await self.collection.count_documents(query)

    def _normalize(self, doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if doc is None:
            return None
        doc["_id"] = str(doc.get("_id"))
        doc["conversation_id"] = str(doc.get("conversation_id"))
        if doc.get("reply_to") is not None:
            doc["reply_to"] = str(doc["reply_to"])
        return doc

    def _to_object_id(self, value) -> Optional[ObjectId]:
        if isinstance(value, ObjectId):
            return value
        try:
            return ObjectId(value)
        except (InvalidId, TypeError):
            return None
