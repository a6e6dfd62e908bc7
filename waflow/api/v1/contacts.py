# waflow/api/v1/contacts.py
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from waflow.api.deps import get_event_bus, get_owner_id
from waflow.core.errors import ConfigurationError
from waflow.db.session import get_db
from waflow.schemas.contact import (
    ContactResponse,
    ConversationResponse,
    MessageResponse,
    MessageSendRequest,
)
from waflow.services.message_service import (
    get_conversation,
    get_owned_contact,
    list_contacts,
    save_outgoing_message,
)
from waflow.services.sender import get_sender_for_owner
from waflow.ws.manager import EventBus

router = APIRouter()
log = logging.getLogger("waflow.api.contacts")


@router.get("", response_model=List[ContactResponse])
def get_contacts(
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """Contacts ordered by latest activity"""
    return list_contacts(db, owner_id)


@router.get("/{contact_id}/messages", response_model=ConversationResponse)
def get_contact_messages(
    contact_id: int,
    mark_read: bool = Query(True, description="Reset the unread counter"),
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """Conversation history, oldest first"""
    contact, messages = get_conversation(db, owner_id, contact_id, mark_read=mark_read)
    log.debug(f"Conversation {contact.wa_id}: {len(messages)} messages")
    return ConversationResponse(
        contact=ContactResponse.model_validate(contact),
        messages=messages,
    )


@router.post("/{contact_id}/messages", response_model=MessageResponse, status_code=201)
async def send_contact_message(
    contact_id: int,
    payload: MessageSendRequest,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id),
    bus: Optional[EventBus] = Depends(get_event_bus)
):
    """
    Operator reply from the inbox.

    Sends a text message, stores it as outgoing and pushes it to the owner's
    live connections. Provider failures answer 502 and nothing is stored.
    """
    contact = get_owned_contact(db, owner_id, contact_id)
    sender = get_sender_for_owner(db, owner_id)
    if sender is None:
        raise ConfigurationError("WhatsApp account not configured")

    result = await sender.send_text(contact.wa_id, payload.text)
    result.raise_for_status()

    message = save_outgoing_message(db, contact, result.message_id, "text", payload.text)
    log.info(f"📤 Operator message to {contact.wa_id}: {message.id}")

    if bus is not None:
        bus.publish(owner_id, "new_message", {
            "message": {
                "id": message.id,
                "contact_id": contact.id,
                "direction": "outgoing",
                "type": "text",
                "content": message.content,
                "timestamp": message.timestamp.isoformat(),
                "status": message.status,
            },
        })
    return message
