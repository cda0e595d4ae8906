from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorDatabase


class BookingRepository:
    """Existence and ownership lookups over the ``bookings`` collection."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("bookings")

    async def find_booking(self, booking_id: str) -> Optional[dict]:
        try:
            key = ObjectId(booking_id)
        except (InvalidId, TypeError):
            key = booking_id
        booking = await self._collection.find_one({"_id": key}, {"user_id": 1})
        if not booking or booking.get("user_id") is None:
            return None
        return {"id": str(booking["_id"]), "owner_user_id": str(booking["user_id"])}
