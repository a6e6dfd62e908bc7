# waflow/models/custom_message.py
"""Custom interactive messages with {{placeholder}} substitution"""
import re
from typing import List

from sqlalchemy import Column, String, Text, JSON, UniqueConstraint, event
from waflow.models.base import BaseModel

PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")


def extract_placeholders(content: str) -> List[str]:
    """Unique placeholder names in order of first appearance"""
    seen = []
    for name in PLACEHOLDER_RE.findall(content or ""):
        if name not in seen:
            seen.append(name)
    return seen


class CustomMessage(BaseModel):
    __tablename__ = "custom_messages"
    __table_args__ = (
        UniqueConstraint('owner_id', 'name', name='uq_custom_message_owner_name'),
    )

    name = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    buttons = Column(JSON, nullable=False, default=list)  # [{type, text, payload, url, phone, flow_id, flow_action}]
    placeholders = Column(JSON, nullable=False, default=list)

    def __repr__(self):
        return f"<CustomMessage {self.name}>"


@event.listens_for(CustomMessage, "before_insert")
@event.listens_for(CustomMessage, "before_update")
def _refresh_placeholders(mapper, connection, target):
    target.placeholders = extract_placeholders(target.content)
