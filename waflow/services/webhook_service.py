# waflow/services/webhook_service.py
"""
Webhook ingestion - turns Meta's entry/change/value envelopes into stored
messages, status updates and routing work.

Storage happens inline; routing is returned as a list of RoutingJob so the
HTTP layer can acknowledge first and route in the background.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from waflow.core.errors import NotFoundError, ValidationError
from waflow.db.session import get_db_session
from waflow.models.account import WhatsAppAccount
from waflow.models.contact import Contact
from waflow.models.webhook import WebhookLog
from waflow.services.flow_engine import FlowRouter, InboundMessage
from waflow.services.message_service import (
    save_incoming_message,
    update_message_status,
    upsert_contact,
)

log = logging.getLogger("waflow.webhook")


@dataclass
class ParsedMessage:
    message_type: str
    content: str
    media_id: Optional[str] = None
    button_payload: Optional[str] = None
    button_text: Optional[str] = None


@dataclass
class RoutingJob:
    owner_id: str
    contact_id: int
    inbound: InboundMessage


def parse_message(msg: Dict[str, Any]) -> ParsedMessage:
    """Message type and display content of one provider message"""
    msg_type = msg.get("type") or "unknown"
    body = msg.get(msg_type) if isinstance(msg.get(msg_type), dict) else {}

    if msg_type == "text":
        return ParsedMessage("text", body.get("body", ""))
    if msg_type == "image":
        return ParsedMessage("image", body.get("caption") or "[Image]", body.get("id"))
    if msg_type == "document":
        return ParsedMessage("document", body.get("filename") or "[Document]", body.get("id"))
    if msg_type == "audio":
        return ParsedMessage("audio", "[Audio]", body.get("id"))
    if msg_type == "video":
        return ParsedMessage("video", body.get("caption") or "[Video]", body.get("id"))
    if msg_type == "sticker":
        return ParsedMessage("sticker", "[Sticker]", body.get("id"))
    if msg_type == "location":
        return ParsedMessage("location", f"[Location: {body.get('latitude')}, {body.get('longitude')}]")
    if msg_type == "button":
        # Template quick-reply buttons
        text = body.get("text") or ""
        return ParsedMessage("button", text, button_payload=body.get("payload") or None, button_text=text or None)
    if msg_type == "interactive":
        reply = body.get("button_reply") or body.get("list_reply")
        if isinstance(reply, dict):
            title = reply.get("title") or ""
            return ParsedMessage("interactive", title, button_payload=reply.get("id") or None, button_text=title or None)
        if isinstance(body.get("nfm_reply"), dict):
            return ParsedMessage("interactive", "[Flow response]")
    return ParsedMessage("unknown", f"[{msg_type}]")


def _timestamp(value: Any) -> datetime:
    try:
        return datetime.utcfromtimestamp(int(value))
    except (TypeError, ValueError, OverflowError):
        return datetime.utcnow()


def _iter_values(payload: Dict[str, Any]):
    for entry in payload.get("entry") or []:
        for change in (entry or {}).get("changes") or []:
            value = (change or {}).get("value")
            if isinstance(value, dict):
                yield value


def _log_webhook(db: Session, owner_id: str, log_type: str, **fields) -> None:
    db.add(WebhookLog(owner_id=owner_id, log_type=log_type, **fields))
    db.commit()


# ────────────────────────────────────────────
# Verification
# ────────────────────────────────────────────

def verify_subscription(db: Session, owner_id: str, mode: Optional[str], token: Optional[str], challenge: Optional[str], bus=None) -> str:
    """
    Meta's GET handshake. Returns the challenge to echo.

    Raises ValidationError (missing params), PermissionError (bad mode or
    token) or NotFoundError (unknown owner).
    """
    if not mode or not token or not challenge:
        raise ValidationError("Missing parameters")
    if mode != "subscribe":
        raise PermissionError("Invalid mode")

    account = db.query(WhatsAppAccount).filter(WhatsAppAccount.owner_id == owner_id).first()
    if not account:
        raise NotFoundError("Account not found")
    if token != account.webhook_verify_token:
        raise PermissionError("Invalid verify token")

    account.is_connected = True
    db.commit()
    log.info(f"✅ Webhook verified for owner {owner_id}")
    if bus is not None:
        bus.publish(owner_id, "webhook_connected", {"is_connected": True})
    return challenge


# ────────────────────────────────────────────
# Ingestion
# ────────────────────────────────────────────

def ingest_webhook(db: Session, owner_id: str, payload: Dict[str, Any], bus=None) -> List[RoutingJob]:
    """
    Store every message and status in the payload.

    Only newly stored messages produce routing jobs, so provider retries are
    neither stored twice nor routed twice. A malformed entry is rolled back
    and logged as an error; the rest of the payload is still ingested.
    """
    account = db.query(WhatsAppAccount).filter(WhatsAppAccount.owner_id == owner_id).first()
    if account and not account.is_connected:
        account.is_connected = True
        db.commit()
        if bus is not None:
            bus.publish(owner_id, "webhook_connected", {"is_connected": True})

    jobs: List[RoutingJob] = []
    for value in _iter_values(payload):
        profiles = {
            c.get("wa_id"): (c.get("profile") or {}).get("name")
            for c in value.get("contacts") or []
            if isinstance(c, dict)
        }

        for msg in value.get("messages") or []:
            try:
                job = _ingest_message(db, owner_id, msg, profiles, bus)
            except Exception as e:
                # earlier entries are committed; keep their jobs
                log.exception(f"❌ Failed to ingest message entry: {e}")
                record_webhook_error(db, owner_id, e, msg)
                continue
            if job is not None:
                jobs.append(job)

        for status in value.get("statuses") or []:
            try:
                _ingest_status(db, owner_id, status, bus)
            except Exception as e:
                log.exception(f"❌ Failed to ingest status entry: {e}")
                record_webhook_error(db, owner_id, e, status)

    return jobs


def _ingest_message(db: Session, owner_id: str, msg: Dict[str, Any], profiles: Dict[str, Optional[str]], bus) -> Optional[RoutingJob]:
    sender = msg.get("from")
    wa_message_id = msg.get("id")
    if not sender or not wa_message_id:
        log.warning(f"⚠️ Skipping message without sender or id: {msg}")
        return None

    contact, is_new_contact = upsert_contact(db, owner_id, sender, profiles.get(sender))
    parsed = parse_message(msg)
    saved = save_incoming_message(
        db,
        contact,
        wa_message_id=wa_message_id,
        message_type=parsed.message_type,
        content=parsed.content,
        timestamp=_timestamp(msg.get("timestamp")),
        media_id=parsed.media_id,
    )
    if not saved.created:
        return None

    _log_webhook(db, owner_id, "message", phone=contact.wa_id, message_id=wa_message_id,
                 message_type=parsed.message_type, raw_data=msg)
    log.info(f"📨 {parsed.message_type} from {contact.wa_id}: {parsed.content[:80]!r}")

    if bus is not None:
        bus.publish(owner_id, "new_message", {
            "message": {
                "id": saved.message.id,
                "contact_id": contact.id,
                "direction": "incoming",
                "type": parsed.message_type,
                "content": parsed.content,
                "timestamp": saved.message.timestamp.isoformat(),
                "status": "received",
            },
            "contact": {
                "id": contact.id,
                "wa_id": contact.wa_id,
                "phone": contact.phone,
                "name": contact.name,
                "last_message_at": contact.last_message_at.isoformat() if contact.last_message_at else None,
                "unread_count": contact.unread_count,
                "is_new": is_new_contact,
            },
        })

    return RoutingJob(
        owner_id=owner_id,
        contact_id=contact.id,
        inbound=InboundMessage(
            text=parsed.content if parsed.message_type in ("text", "button", "interactive") else "",
            button_payload=parsed.button_payload,
            button_text=parsed.button_text,
        ),
    )


def _ingest_status(db: Session, owner_id: str, status: Dict[str, Any], bus) -> None:
    wa_message_id = status.get("id")
    state = status.get("status")
    if not wa_message_id or not state:
        return

    update_message_status(db, wa_message_id, state)
    _log_webhook(db, owner_id, "status", phone=status.get("recipient_id"), message_id=wa_message_id,
                 status=state, raw_data=status)
    if bus is not None:
        bus.publish(owner_id, "message_status", {"wa_message_id": wa_message_id, "status": state})


async def route_jobs(jobs: List[RoutingJob], router: FlowRouter) -> None:
    """Background task: route newly stored messages one by one, in arrival order"""
    for job in jobs:
        try:
            with get_db_session() as db:
                contact = db.query(Contact).filter(Contact.id == job.contact_id).first()
                if contact is None:
                    continue
                result = await router.route(db, contact, job.inbound)
                log.info(f"🧭 Routed message from {contact.wa_id}: {result.action}")
        except Exception as e:
            log.exception(f"❌ Background routing failed for contact {job.contact_id}: {e}")


def record_webhook_error(db: Session, owner_id: str, error: Exception, payload: Any) -> None:
    try:
        db.rollback()
        _log_webhook(db, owner_id, "error", error_message=str(error), raw_data=payload if isinstance(payload, dict) else None)
    except Exception as e:
        log.error(f"❌ Could not record webhook error: {e}")

