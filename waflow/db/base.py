# waflow/db/base.py
"""Import all models so Base.metadata knows every table"""
from waflow.models.base import Base

from waflow.models.account import WhatsAppAccount
from waflow.models.appointment import Appointment
from waflow.models.contact import Contact
from waflow.models.custom_message import CustomMessage
from waflow.models.flow import Flow
from waflow.models.function import FunctionDefinition
from waflow.models.message import Message
from waflow.models.webhook import WebhookLog

__all__ = ["Base"]
