# waflow/models/base.py
"""
Declarative base and the owner-scoped mixin every table uses.
All timestamps are naive UTC.
"""
from datetime import datetime
from typing import Any, Dict, Iterable

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class BaseModel(Base):
    """
    Abstract base with:
    - id
    - owner_id: account that owns the row (NULL for ownerless bookings)
    - created_at / updated_at
    """
    __abstract__ = True

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(100), index=True, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self, exclude: Iterable[str] = ()) -> Dict[str, Any]:
        """Column values; datetimes as ISO strings"""
        skipped = set(exclude)
        return {
            column.name: self._serialize(getattr(self, column.name))
            for column in self.__table__.columns
            if column.name not in skipped
        }

    @staticmethod
    def _serialize(value: Any) -> Any:
        return value.isoformat() if isinstance(value, datetime) else value
