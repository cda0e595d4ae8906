from datetime import datetime
from typing import Optional, TypedDict


class BookingDocument(TypedDict, total=False):

    _id: str
    # owning customer
    user_id: str
    service: Optional[str]
    date: Optional[datetime]
    status: Optional[str]
