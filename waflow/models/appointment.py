# waflow/models/appointment.py
"""Appointments booked through the WhatsApp booking flow or created manually"""
from sqlalchemy import Column, String, Text, Integer, Boolean, DateTime
from waflow.models.base import BaseModel

ACTIVE_STATUSES = ("scheduled", "confirmed")
APPOINTMENT_STATUSES = ("scheduled", "confirmed", "cancelled", "completed")


class Appointment(BaseModel):
    """
    `scheduled_at` is a naive UTC datetime. Conversion to the business zone
    happens only when rendering.
    """
    __tablename__ = "appointments"

    contact_wa_id = Column(String(50), index=True, nullable=False)
    customer_name = Column(String(255), nullable=False)
    customer_phone = Column(String(50), nullable=True)
    scheduled_at = Column(DateTime, index=True, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)
    status = Column(String(20), index=True, nullable=False, default="scheduled")
    flow_token = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True, default="")
    reminder_sent = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<Appointment {self.customer_name} @ {self.scheduled_at} ({self.status})>"
