from datetime import datetime
from typing import Dict, List, Literal, Optional, TypedDict


MessageType = Literal["text", "image", "file", "system"]

MESSAGE_TYPES = ("text", "image", "file", "system")


class AttachmentDocument(TypedDict, total=False):
    filename: str
    original_name: Optional[str]
    mimetype: Optional[str]
    size: Optional[int]
    url: Optional[str]


class EditRecord(TypedDict):
    content: str
    edited_at: datetime


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    # role held when the message was sent, never rewritten
    sender_role: str
    content: str
    message_type: MessageType
    attachment: Optional[AttachmentDocument]
    reply_to: Optional[str]
    # participants that have not read the message yet
    unread_by: List[str]
    # emoji -> user ids
    reactions: Dict[str, List[str]]
    is_deleted: bool
    deleted_at: Optional[datetime]
    edit_history: List[EditRecord]
    created_at: datetime
    updated_at: datetime
