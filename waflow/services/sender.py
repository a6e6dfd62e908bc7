# waflow/services/sender.py
"""
Outbound WhatsApp sends through pywa.

pywa's client is synchronous, so every call is pushed onto a worker thread.
Provider errors are folded into a SendResult instead of raised; callers that
need an exception use SendResult.raise_for_status().
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import anyio
from pywa import WhatsApp
from pywa.types import Button
from pywa.types.templates import TemplateLanguage
from sqlalchemy.orm import Session

from waflow.core.config import BUSINESS_ACCOUNT_ID, PHONE_ID, TOKEN, TEMPLATE_LANGUAGE
from waflow.core.errors import ConfigurationError, ProviderError, SendFailureError
from waflow.models.account import WhatsAppAccount

log = logging.getLogger("waflow.sender")

MAX_REPLY_BUTTONS = 3
MAX_BUTTON_TITLE = 20


@dataclass
class SendResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

    def raise_for_status(self) -> "SendResult":
        if not self.success:
            raise SendFailureError(self.error or "Failed to send message")
        return self


def _message_id(response: Any) -> Optional[str]:
    if response is None:
        return None
    if hasattr(response, 'id'):
        return response.id
    return str(response)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _template_language(code: str) -> TemplateLanguage:
    try:
        return TemplateLanguage(code)
    except ValueError:
        log.warning(f"⚠️ Unknown template language '{code}', falling back to English")
        return TemplateLanguage.ENGLISH


def build_custom_message(content: str, buttons: Optional[List[Dict[str, Any]]]):
    """
    Split custom message buttons into interactive reply buttons and text.

    Only quick replies are native interactive buttons (max 3, 20-char titles).
    URL and call buttons are appended to the body.
    """
    buttons = buttons or []
    quick_replies = [b for b in buttons if b.get("type") == "quick_reply"]
    url_buttons = [b for b in buttons if b.get("type") == "url" and b.get("url")]
    call_buttons = [b for b in buttons if b.get("type") == "call" and b.get("phone")]

    body = content or ""
    if url_buttons:
        body += "\n\n" + "\n".join(f"🔗 {b.get('text', '')}: {b['url']}" for b in url_buttons)
    if call_buttons:
        body += "\n\n" + "\n".join(f"📞 {b.get('text', '')}: {b['phone']}" for b in call_buttons)

    reply_buttons = [
        Button(
            title=(b.get("text") or "")[:MAX_BUTTON_TITLE],
            callback_data=b.get("payload") or f"btn_{i}",
        )
        for i, b in enumerate(quick_replies[:MAX_REPLY_BUTTONS])
    ]
    return body, reply_buttons


class WhatsAppSender:
    """Send capability for one WhatsApp Business phone number."""

    def __init__(
        self,
        phone_id: str,
        token: str,
        waba_id: Optional[str] = None,
        language: str = TEMPLATE_LANGUAGE,
        client: Optional[WhatsApp] = None,
    ):
        if client is None and not (phone_id and token):
            raise ConfigurationError("WhatsApp phone number id and access token are required")
        self.phone_id = phone_id
        self.waba_id = waba_id or None
        self.language = language
        self.wa = client or WhatsApp(phone_id=phone_id, token=token)

    async def _call(self, description: str, to: str, func, /, *args, **kwargs) -> SendResult:
        try:
            response = await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))
        except Exception as e:
            log.error(f"❌ Failed to send {description} to {to}: {e}")
            return SendResult(success=False, error=str(e))

        message_id = _message_id(response)
        log.info(f"✅ Sent {description} to {to}: {message_id}")
        return SendResult(success=True, message_id=message_id)

    async def send_template(self, to: str, name: str, language: Optional[str] = None) -> SendResult:
        return await self._call(
            f"template '{name}'", to,
            self.wa.send_template,
            to=to,
            name=name,
            language=_template_language(language or self.language),
            params=[],
        )

    async def send_text(self, to: str, text: str) -> SendResult:
        return await self._call("text", to, self.wa.send_text, to=to, text=text)

    async def send_custom_message(self, to: str, content: str, buttons: Optional[List[Dict[str, Any]]] = None) -> SendResult:
        body, reply_buttons = build_custom_message(content, buttons)
        if not reply_buttons:
            return await self.send_text(to, body)
        return await self._call(
            "custom message", to,
            self.wa.send_text,
            to=to,
            text=body,
            buttons=reply_buttons,
        )

    async def list_templates(self) -> List[Dict[str, Any]]:
        """
        Message templates of the business account (name, status, category,
        language). Raises ProviderError when the listing fails.
        """
        if not self.waba_id:
            raise ConfigurationError("WhatsApp business account id is required to list templates")
        try:
            result = await anyio.to_thread.run_sync(
                functools.partial(self.wa.get_templates, waba_id=self.waba_id)
            )
        except Exception as e:
            log.error(f"❌ Failed to fetch templates for {self.waba_id}: {e}")
            raise ProviderError(f"Failed to fetch templates: {e}")

        templates = [
            {
                "id": getattr(t, "id", None),
                "name": t.name,
                "status": _enum_value(getattr(t, "status", None)),
                "category": _enum_value(getattr(t, "category", None)),
                "language": _enum_value(getattr(t, "language", None)),
            }
            for t in result
        ]
        log.info(f"📋 Fetched {len(templates)} templates for {self.waba_id}")
        return templates


def get_sender_for_owner(db: Session, owner_id: Optional[str]) -> Optional[WhatsAppSender]:
    """
    Sender for the owner's own account, falling back to the global
    WHATSAPP_PHONE_ID / WHATSAPP_TOKEN. Returns None when neither is set.
    """
    account = None
    if owner_id:
        account = db.query(WhatsAppAccount).filter(WhatsAppAccount.owner_id == owner_id).first()

    if account and account.phone_number_id and account.access_token:
        return WhatsAppSender(account.phone_number_id, account.access_token, waba_id=account.business_account_id)

    if PHONE_ID and TOKEN:
        log.debug(f"Using global WhatsApp credentials for owner {owner_id}")
        return WhatsAppSender(PHONE_ID, TOKEN, waba_id=BUSINESS_ACCOUNT_ID)

    log.warning(f"⚠️ No WhatsApp credentials available for owner {owner_id}")
    return None
