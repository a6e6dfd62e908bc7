# waflow/api/v1/settings.py
"""
Per-owner WhatsApp account settings.
The stored credentials override the global .env values for that owner.
"""
import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from waflow.api.deps import get_owner_id
from waflow.core.errors import NotFoundError, ValidationError
from waflow.db.session import get_db
from waflow.models.account import WhatsAppAccount
from waflow.schemas.account import AccountResponse, AccountUpdate

router = APIRouter()
log = logging.getLogger("waflow.api.settings")


def _account_response(account: WhatsAppAccount) -> dict:
    data = account.to_public_dict()
    data["webhook_path"] = f"/api/webhook/{account.owner_id}"
    return data


def _get_account(db: Session, owner_id: str) -> Optional[WhatsAppAccount]:
    return db.query(WhatsAppAccount).filter(WhatsAppAccount.owner_id == owner_id).first()


@router.get("", response_model=AccountResponse)
def get_settings(
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    account = _get_account(db, owner_id)
    if not account:
        raise NotFoundError("WhatsApp account not configured")
    return _account_response(account)


@router.put("", response_model=AccountResponse)
def update_settings(
    data: AccountUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """
    Create or update the owner's WhatsApp account

    - **access_token**: required on first save, kept when omitted later
    - **webhook_verify_token**: generated when omitted on first save
    """
    account = _get_account(db, owner_id)

    if account is None:
        if not data.access_token:
            raise ValidationError("access_token is required")
        account = WhatsAppAccount(
            owner_id=owner_id,
            phone_number_id=data.phone_number_id,
            business_account_id=data.business_account_id,
            access_token=data.access_token,
            webhook_verify_token=data.webhook_verify_token or secrets.token_urlsafe(24),
            is_connected=False,
        )
        db.add(account)
        log.info(f"✅ WhatsApp account created for owner {owner_id}")
    else:
        if data.phone_number_id != account.phone_number_id:
            # A new number has to be verified again
            account.is_connected = False
        account.phone_number_id = data.phone_number_id
        account.business_account_id = data.business_account_id
        if data.access_token:
            account.access_token = data.access_token
        if data.webhook_verify_token:
            account.webhook_verify_token = data.webhook_verify_token
        log.info(f"🔄 WhatsApp account updated for owner {owner_id}")

    db.commit()
    db.refresh(account)
    return _account_response(account)
