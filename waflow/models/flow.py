# waflow/models/flow.py
"""Conversation flow model: trigger, first node and the connection graph"""
from sqlalchemy import Column, String, Text, JSON
from waflow.models.base import BaseModel


class Flow(BaseModel):
    """
    Store an automation flow.

    `connections` and `functions` are stored as JSON lists and validated into
    a ConnectionGraph by the flow engine when the flow runs.
    """
    __tablename__ = "flows"

    name = Column(String(255), nullable=False, default="New Flow")
    description = Column(Text, nullable=True)

    # Trigger
    trigger_match_type = Column(String(20), nullable=False, default="any")  # any, includes, starts_with, exact
    trigger_match_text = Column(String(500), nullable=True, default="")

    # Graph
    first_node = Column(String(255), nullable=True, default="")
    connections = Column(JSON, nullable=False, default=list)
    functions = Column(JSON, nullable=False, default=list)

    def __repr__(self):
        return f"<Flow {self.name} ({self.id})>"
