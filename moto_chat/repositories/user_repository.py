from typing import Any, Dict, List, Optional, Sequence

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase

from moto_chat.models.user import ROLES


class UserRepository:
    """Read-only view over the externally owned ``users`` collection."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def find_user(self, user_id: str) -> Optional[dict]:
        user = await self._collection.find_one({"_id": self._id_filter(user_id)})
        return self._normalize(user) if user else None

    async def list_by_roles(self, roles: Sequence[str], exclude_id: Optional[str] = None, limit: int = 200) -> List[dict]:
        query: Dict[str, Any] = {"role": {"$in": list(roles)}}
        if exclude_id:
            query["_id"] = {"$ne": self._id_filter(exclude_id)}
        cursor = self._collection.find(query).limit(limit)
        return [self._normalize(doc) async for doc in cursor]

    def _normalize(self, doc: dict) -> dict:
        role = doc.get("role")
        return {
            "id": str(doc["_id"]),
            # unknown roles leave the user ineligible rather than guessing one
            "role": role if role in ROLES else None,
            "email": doc.get("email"),
            "first_name": doc.get("first_name"),
            "last_name": doc.get("last_name"),
        }

    def _id_filter(self, user_id: str):
        try:
            return ObjectId(user_id)
        except (InvalidId, TypeError):
            return user_id
