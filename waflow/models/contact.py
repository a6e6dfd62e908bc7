# waflow/models/contact.py
"""Contact model with the conversation cursor"""
from sqlalchemy import Column, String, Integer, DateTime, UniqueConstraint
from waflow.models.base import BaseModel


class Contact(BaseModel):
    __tablename__ = "contacts"
    __table_args__ = (
        UniqueConstraint('owner_id', 'wa_id', name='uq_owner_wa_id'),
    )

    wa_id = Column(String(50), index=True, nullable=False)
    phone = Column(String(50), nullable=False)
    name = Column(String(255), nullable=True, default="")
    last_message_at = Column(DateTime, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)

    # Conversation cursor: last node sent and the flow it came from.
    # cursor_version is bumped on every write (compare-and-swap).
    cursor_flow_id = Column(Integer, nullable=True)
    cursor_node = Column(String(255), nullable=True, default="")
    cursor_version = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<Contact {self.name or self.phone}>"
