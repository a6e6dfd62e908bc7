# waflow/models/message.py
"""
Message model for WhatsApp messages (incoming and outgoing).
"""
from sqlalchemy import Column, String, Text, Integer, Boolean, DateTime, Index
from waflow.models.base import BaseModel


class Message(BaseModel):
    """Store all WhatsApp messages"""
    __tablename__ = "messages"
    __table_args__ = (
        Index('ix_messages_contact_timestamp', 'contact_id', 'timestamp'),
    )

    contact_id = Column(Integer, index=True, nullable=False)
    wa_message_id = Column(String(255), unique=True, index=True, nullable=True)
    direction = Column(String(20), nullable=False)  # 'incoming' or 'outgoing'
    message_type = Column(String(50), nullable=False, default="text")
    content = Column(Text, nullable=True, default="")
    media_id = Column(String(255), nullable=True)
    timestamp = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=True, default='sent')  # 'sent', 'delivered', 'read', 'failed'
    is_read = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<Message {self.wa_message_id} ({self.direction})>"
