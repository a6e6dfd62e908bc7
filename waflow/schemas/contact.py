# waflow/schemas/contact.py
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class ContactResponse(BaseModel):
    id: int
    owner_id: Optional[str]
    wa_id: str
    phone: str
    name: Optional[str]
    unread_count: int
    last_message_at: Optional[datetime]
    cursor_flow_id: Optional[int] = None
    cursor_node: Optional[str] = None

    class Config:
        from_attributes = True


class MessageResponse(BaseModel):
    id: int
    contact_id: int
    wa_message_id: Optional[str]
    direction: str
    message_type: str
    content: Optional[str]
    media_id: Optional[str]
    timestamp: datetime
    status: Optional[str]
    is_read: bool

    class Config:
        from_attributes = True


class ConversationResponse(BaseModel):
    contact: ContactResponse
    messages: List[MessageResponse] = Field(default_factory=list)


class MessageSendRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4096)
