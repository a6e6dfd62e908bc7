# waflow/models/function.py
"""Standalone user-authored functions"""
from sqlalchemy import Column, String, Text, Integer, UniqueConstraint
from waflow.models.base import BaseModel


class FunctionDefinition(BaseModel):
    __tablename__ = "functions"
    __table_args__ = (
        UniqueConstraint('owner_id', 'name', name='uq_function_owner_name'),
    )

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True, default="")
    code = Column(Text, nullable=False)
    input_key = Column(String(100), nullable=False, default="input")
    timeout_ms = Column(Integer, nullable=False, default=5000)
    next_node = Column(String(255), nullable=True, default="")

    def __repr__(self):
        return f"<FunctionDefinition {self.name}>"
