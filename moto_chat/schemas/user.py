from typing import Optional

from pydantic import BaseModel


class Principal(BaseModel):
    """Authenticated caller, with a canonical role."""

    user_id: str
    role: str


class MessagingUser(BaseModel):

    id: str
    role: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_online: bool = False
