from typing import Optional

from pydantic import BaseModel, Field


class AttachmentIn(BaseModel):

    filename: Optional[str] = None
    original_name: Optional[str] = None
    mimetype: Optional[str] = None
    size: Optional[int] = None
    url: Optional[str] = None


class SendMessageRequest(BaseModel):

    content: str
    message_type: str = "text"
    reply_to: Optional[str] = None
    attachment: Optional[AttachmentIn] = None
    client_temp_id: Optional[str] = None


class EditMessageRequest(BaseModel):

    content: str


class ReactionRequest(BaseModel):

    emoji: str = Field(min_length=1, max_length=32)
