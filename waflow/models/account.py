# waflow/models/account.py
"""
WhatsApp Business account credentials per owner.
Overrides the global .env credentials when present.
"""
from sqlalchemy import Column, String, Text, Boolean, UniqueConstraint
from waflow.models.base import BaseModel


class WhatsAppAccount(BaseModel):
    __tablename__ = "whatsapp_accounts"
    __table_args__ = (
        UniqueConstraint('owner_id', name='uq_account_owner'),
    )

    phone_number_id = Column(String(255), nullable=False)
    business_account_id = Column(String(255), nullable=False)
    access_token = Column(Text, nullable=False)
    webhook_verify_token = Column(String(255), nullable=False)
    is_connected = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<WhatsAppAccount owner={self.owner_id} phone_number_id={self.phone_number_id}>"

    def to_public_dict(self):
        """Serialize without exposing the access token"""
        data = self.to_dict(exclude=("access_token",))
        data["access_token_set"] = bool(self.access_token)
        return data
