from typing import Literal, Optional, TypedDict


Role = Literal["customer", "staff", "admin"]

ROLES = ("customer", "staff", "admin")
STAFF_ROLES = ("staff", "admin")


class UserDocument(TypedDict, total=False):

    _id: str
    email: str
    role: Role
    first_name: Optional[str]
    last_name: Optional[str]
