# waflow/models/webhook.py
"""Audit trail of webhook deliveries: stored messages, status updates and failures."""
from sqlalchemy import JSON, Column, Index, String, Text

from waflow.models.base import BaseModel

LOG_TYPES = ("message", "status", "error")


class WebhookLog(BaseModel):
    __tablename__ = "webhook_logs"
    __table_args__ = (
        Index("ix_webhook_logs_owner_created", "owner_id", "created_at"),
    )

    log_type = Column(String(20), index=True, nullable=False)
    phone = Column(String(50), nullable=True)
    message_id = Column(String(255), nullable=True)
    message_type = Column(String(50), nullable=True)
    status = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    raw_data = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<WebhookLog {self.log_type} owner={self.owner_id} message={self.message_id}>"
