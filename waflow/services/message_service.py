# waflow/services/message_service.py
"""
Message store - contacts and messages for the inbox.

- Duplicate message prevention (webhook retries re-deliver the same id)
- Unread counters change only when a message is actually inserted
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from waflow.core.errors import NotFoundError
from waflow.models.contact import Contact
from waflow.models.message import Message

log = logging.getLogger("waflow.message_service")


@dataclass
class SavedMessage:
    message: Message
    created: bool


def _normalize_wa_id(wa_id: Optional[str]) -> str:
    """Provider ids are digits only; strip '+' and spaces users may type"""
    return str(wa_id or "").strip().lstrip("+").replace(" ", "")


def upsert_contact(
    db: Session,
    owner_id: str,
    wa_id: str,
    name: Optional[str] = None,
) -> Tuple[Contact, bool]:
    """Find or create the contact; refresh its display name when the provider sends one"""
    wa_id = _normalize_wa_id(wa_id)
    contact = db.query(Contact).filter(
        Contact.owner_id == owner_id,
        Contact.wa_id == wa_id
    ).first()

    if contact:
        if name and contact.name != name:
            contact.name = name
            db.commit()
        return contact, False

    contact = Contact(
        owner_id=owner_id,
        wa_id=wa_id,
        phone=wa_id,
        name=name or wa_id,
        unread_count=0,
        cursor_version=0,
    )
    db.add(contact)
    db.commit()
    db.refresh(contact)
    log.info(f"👤 New contact {wa_id} for owner {owner_id}")
    return contact, True


def save_incoming_message(
    db: Session,
    contact: Contact,
    wa_message_id: str,
    message_type: str,
    content: str,
    timestamp: datetime,
    media_id: Optional[str] = None,
) -> SavedMessage:
    """
    Store an inbound message once per provider id.

    Returns the existing row with created=False on re-delivery.
    """
    if wa_message_id:
        existing = db.query(Message).filter(Message.wa_message_id == wa_message_id).first()
        if existing:
            log.info(f"💾 Message already stored, skipping: {wa_message_id}")
            return SavedMessage(existing, created=False)

    message = Message(
        owner_id=contact.owner_id,
        contact_id=contact.id,
        wa_message_id=wa_message_id,
        direction="incoming",
        message_type=message_type,
        content=content,
        media_id=media_id,
        timestamp=timestamp,
        status="received",
        is_read=False,
    )
    db.add(message)
    contact.last_message_at = datetime.utcnow()
    contact.unread_count = (contact.unread_count or 0) + 1

    try:
        db.commit()
    except IntegrityError:
        # A concurrent delivery of the same id won the insert
        db.rollback()
        existing = db.query(Message).filter(Message.wa_message_id == wa_message_id).first()
        log.info(f"💾 Message inserted concurrently, skipping: {wa_message_id}")
        return SavedMessage(existing, created=False)

    db.refresh(message)
    log.info(f"✅ Incoming {message_type} saved: ID={message.id} from {contact.wa_id}")
    return SavedMessage(message, created=True)


def save_outgoing_message(
    db: Session,
    contact: Contact,
    wa_message_id: Optional[str],
    message_type: str,
    content: str,
) -> Message:
    message = Message(
        owner_id=contact.owner_id,
        contact_id=contact.id,
        wa_message_id=wa_message_id,
        direction="outgoing",
        message_type=message_type,
        content=content,
        timestamp=datetime.utcnow(),
        status="sent",
        is_read=True,
    )
    db.add(message)
    contact.last_message_at = message.timestamp
    db.commit()
    db.refresh(message)
    return message


def update_message_status(db: Session, wa_message_id: str, status: str) -> Optional[Message]:
    message = db.query(Message).filter(Message.wa_message_id == wa_message_id).first()
    if not message:
        log.debug(f"Status '{status}' for unknown message {wa_message_id}")
        return None
    message.status = status
    db.commit()
    return message


def list_contacts(db: Session, owner_id: str) -> List[Contact]:
    return db.query(Contact).filter(
        Contact.owner_id == owner_id
    ).order_by(Contact.last_message_at.desc(), Contact.id.desc()).all()


def get_owned_contact(db: Session, owner_id: str, contact_id: int) -> Contact:
    contact = db.query(Contact).filter(
        Contact.owner_id == owner_id,
        Contact.id == contact_id
    ).first()
    if not contact:
        raise NotFoundError("Contact not found")
    return contact


def get_conversation(db: Session, owner_id: str, contact_id: int, mark_read: bool = True) -> Tuple[Contact, List[Message]]:
    """Messages of one contact, oldest first; optionally marks them read"""
    contact = get_owned_contact(db, owner_id, contact_id)

    messages = db.query(Message).filter(
        Message.contact_id == contact.id
    ).order_by(Message.timestamp.asc(), Message.id.asc()).all()

    if mark_read and contact.unread_count:
        db.query(Message).filter(
            Message.contact_id == contact.id,
            Message.direction == "incoming",
            Message.is_read == False  # noqa: E712
        ).update({Message.is_read: True}, synchronize_session=False)
        contact.unread_count = 0
        db.commit()

    return contact, messages
