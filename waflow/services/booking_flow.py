# waflow/services/booking_flow.py
"""
WhatsApp Flows data endpoint for appointment booking.

Screens: SELECT_DATE -> SELECT_TIME -> CONFIRM -> SUCCESS. Each request is
stateless; customer identity travels in the flow token
``ownerId:channelId:urlEncodedDisplayName``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import quote, unquote

from sqlalchemy.orm import Session

from waflow.core.config import (
    FLOWS_API_VERSION,
    FLOWS_PRIVATE_KEY,
    FLOWS_PRIVATE_KEY_PASSPHRASE,
)
from waflow.core.crypto import decrypt_request, load_private_key, seal_envelope
from waflow.core.errors import ConfigurationError, DecryptionError, ValidationError
from waflow.models.appointment import Appointment
from waflow.services.sender import get_sender_for_owner
from waflow.services.slots import (
    BusinessCalendar,
    find_available_slots,
    long_date_label,
    parse_date_id,
    parse_slot_id,
    time_label,
)

log = logging.getLogger("waflow.booking")

NO_SLOTS_MESSAGE = "No available slots for this date. Please select another date."
BOOKING_FAILED_MESSAGE = "There was an issue booking your appointment. Please try again."


@dataclass
class FlowToken:
    owner_id: Optional[str] = None
    channel_id: str = ""
    display_name: str = ""

    @classmethod
    def parse(cls, token: Optional[str]) -> "FlowToken":
        parts = (token or "").split(":")
        owner_id = parts[0] if parts and parts[0] else None
        channel_id = parts[1] if len(parts) > 1 else ""
        name = unquote(parts[2]) if len(parts) > 2 and parts[2] else ""
        return cls(owner_id=owner_id, channel_id=channel_id, display_name=name)

    def format(self) -> str:
        return f"{self.owner_id or ''}:{self.channel_id}:{quote(self.display_name or '', safe='')}"

    @property
    def customer_name(self) -> str:
        if self.display_name:
            return self.display_name
        return f"+{self.channel_id}" if self.channel_id else "Customer"


@dataclass
class BookingHttpResponse:
    """What the HTTP layer should send back: JSON (dict) or encrypted text (str)"""
    status_code: int
    body: Union[Dict[str, Any], str]

    @property
    def encrypted(self) -> bool:
        return isinstance(self.body, str)


def confirmation_text(date_label: str, time_text: str, duration_minutes: int, name: str) -> str:
    return (
        "✅ *Appointment Confirmed!*\n\n"
        f"📅 *Date:* {date_label}\n"
        f"⏰ *Time:* {time_text}\n"
        f"⏱️ *Duration:* {duration_minutes} minutes\n\n"
        f"Thank you for booking with us, {name}!\n\n"
        "📍 *Please share your location* so we can assist you better.\n\n"
        "We look forward to seeing you!"
    )


class BookingFlowHandler:
    """Screen state machine. handle_action() never raises for data_exchange."""

    def __init__(
        self,
        calendar: Optional[BusinessCalendar] = None,
        sender_factory: Callable = get_sender_for_owner,
        bus=None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.calendar = calendar or BusinessCalendar()
        self.sender_factory = sender_factory
        self.bus = bus
        self.clock = clock

    def _response(self, screen: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response: Dict[str, Any] = {"version": FLOWS_API_VERSION}
        if screen:
            response["screen"] = screen
        if data is not None:
            response["data"] = data
        return response

    def select_date_screen(self, error_message: str = "") -> Dict[str, Any]:
        return self._response("SELECT_DATE", {
            "available_dates": self.calendar.next_days(self.clock()),
            "error_message": error_message,
            "has_error": bool(error_message),
        })

    # ────────────────────────────────────────────
    # Actions
    # ────────────────────────────────────────────

    async def handle_action(self, db: Session, request: Dict[str, Any]) -> Dict[str, Any]:
        action = request.get("action")
        screen = request.get("screen")
        data = request.get("data") or {}
        flow_token = request.get("flow_token")

        log.info(f"📲 Flow request: action={action} screen={screen}")

        if action == "ping":
            return self._response(data={"status": "active"})
        if action == "INIT":
            return self.select_date_screen()
        if action == "data_exchange":
            return await self.handle_data_exchange(db, screen, data if isinstance(data, dict) else {}, flow_token)

        log.warning(f"⚠️ Unknown flow action: {action}")
        return self._response(data={"error": "Unknown action"})

    async def handle_data_exchange(self, db: Session, screen: Optional[str], data: Dict[str, Any], flow_token: Optional[str]) -> Dict[str, Any]:
        if screen == "WELCOME":
            return self.select_date_screen()
        if screen == "SELECT_DATE":
            return self._select_date(db, data)
        if screen == "SELECT_TIME":
            return self._select_time(data)
        if screen == "CONFIRM":
            return await self._confirm(db, data, flow_token)
        return self.select_date_screen()

    def _select_date(self, db: Session, data: Dict[str, Any]) -> Dict[str, Any]:
        selected = data.get("appointment_date") or self.calendar.now_local(self.clock()).date().isoformat()
        try:
            day = parse_date_id(selected)
            slots = find_available_slots(db, day, self.calendar, now=self.clock())
        except ValidationError:
            log.warning(f"⚠️ Invalid appointment_date {selected!r}")
            return self.select_date_screen(NO_SLOTS_MESSAGE)
        except Exception as e:
            db.rollback()
            log.error(f"❌ Slot lookup failed for {selected}: {e}")
            return self.select_date_screen(NO_SLOTS_MESSAGE)

        if not slots:
            return self.select_date_screen(NO_SLOTS_MESSAGE)

        return self._response("SELECT_TIME", {
            "selected_date": selected,
            "slots_header": f"Available slots for {long_date_label(day)}",
            "time_slots": slots,
        })

    def _select_time(self, data: Dict[str, Any]) -> Dict[str, Any]:
        selected_time = data.get("selected_time") or ""
        selected_date = data.get("selected_date") or ""

        display_date = selected_date
        display_time = selected_time
        try:
            if selected_date:
                display_date = long_date_label(parse_date_id(selected_date))
            if "T" in selected_time:
                slot = parse_slot_id(selected_time)
                display_time = time_label(slot.hour, slot.minute)
        except ValidationError:
            log.warning(f"⚠️ Unparseable selection date={selected_date!r} time={selected_time!r}")

        return self._response("CONFIRM", {
            "selected_date": selected_date,
            "selected_time": selected_time,
            "date_line": f"📅 Date: {display_date}",
            "time_line": f"⏰ Time: {display_time}",
            "summary": f"Appointment on {display_date} at {display_time}",
        })

    async def _confirm(self, db: Session, data: Dict[str, Any], flow_token: Optional[str]) -> Dict[str, Any]:
        token = FlowToken.parse(flow_token)
        try:
            local = self._requested_local_time(data)
            appointment = Appointment(
                owner_id=token.owner_id,
                contact_wa_id=token.channel_id or "unknown",
                customer_name=token.customer_name,
                customer_phone=token.channel_id,
                scheduled_at=self.calendar.local_to_utc(local),
                duration_minutes=self.calendar.duration_minutes,
                status="scheduled",
                flow_token=flow_token or "",
                notes="",
            )
            db.add(appointment)
            db.commit()
            db.refresh(appointment)
        except Exception as e:
            db.rollback()
            log.error(f"❌ Failed to save appointment: {e}")
            return self._response("SUCCESS", {
                "appointment_id": "",
                "confirmation_message": BOOKING_FAILED_MESSAGE,
            })

        date_text = long_date_label(local.date())
        time_text = time_label(local.hour, local.minute)
        log.info(f"✅ Appointment {appointment.id} booked for {token.customer_name} at {date_text} {time_text}")

        await self._send_confirmation(db, token, date_text, time_text)
        if self.bus is not None and token.owner_id:
            self.bus.publish(token.owner_id, "appointment_created", {
                "id": appointment.id,
                "customer_name": appointment.customer_name,
                "scheduled_at": appointment.scheduled_at.isoformat(),
            })

        return self._response("SUCCESS", {
            "appointment_id": str(appointment.id),
            "confirmation_message": f"Your appointment has been booked for {date_text} at {time_text}. We'll send you a reminder!",
        })

    def _requested_local_time(self, data: Dict[str, Any]) -> datetime:
        selected_time = data.get("selected_time") or ""
        selected_date = data.get("selected_date") or ""
        if "T" in selected_time:
            return parse_slot_id(selected_time)
        if selected_date:
            day = parse_date_id(selected_date)
            return datetime(day.year, day.month, day.day, self.calendar.open_hour, 0)
        return self.calendar.now_local(self.clock()).replace(second=0, microsecond=0)

    async def _send_confirmation(self, db: Session, token: FlowToken, date_text: str, time_text: str) -> None:
        """Best effort: a failed send never undoes the booking"""
        if not (token.owner_id and token.channel_id):
            return
        try:
            sender = self.sender_factory(db, token.owner_id)
            if sender is None:
                log.warning(f"⚠️ No WhatsApp account for owner {token.owner_id}, confirmation not sent")
                return
            result = await sender.send_text(
                token.channel_id,
                confirmation_text(date_text, time_text, self.calendar.duration_minutes, token.customer_name),
            )
            if result.success:
                log.info(f"📤 Confirmation sent to {token.channel_id}")
            else:
                log.error(f"❌ Failed to send confirmation: {result.error}")
        except Exception as e:
            log.error(f"❌ Error sending confirmation message: {e}")

    # ────────────────────────────────────────────
    # HTTP envelope
    # ────────────────────────────────────────────

    async def process(self, db: Session, body: Any, private_key_loader: Optional[Callable] = None) -> BookingHttpResponse:
        """
        Full request cycle including the crypto envelope.

        - plaintext request -> plaintext JSON
        - encrypted request -> base64 text sealed with the request key
        - undecryptable request -> 421 so the client refreshes our public key
        - missing or broken private key -> 500
        """
        if not isinstance(body, dict):
            return BookingHttpResponse(400, {"error": "Invalid request body"})

        encrypted = all(body.get(k) for k in ("encrypted_flow_data", "encrypted_aes_key", "initial_vector"))
        if not encrypted:
            try:
                return BookingHttpResponse(200, await self.handle_action(db, body))
            except Exception as e:
                log.exception(f"❌ Flow request failed: {e}")
                return BookingHttpResponse(500, {"error": str(e)})

        loader = private_key_loader or (lambda: load_private_key(FLOWS_PRIVATE_KEY, FLOWS_PRIVATE_KEY_PASSPHRASE))
        try:
            decrypted = decrypt_request(body, loader())
        except ConfigurationError as e:
            log.error(f"❌ {e.message}")
            return BookingHttpResponse(500, {"error": "Private key not configured"})
        except DecryptionError as e:
            log.error(f"❌ Decryption failed: {e.message}")
            return BookingHttpResponse(421, {"error": "Failed to decrypt request"})

        try:
            payload = await self.handle_action(db, decrypted.payload)
        except Exception as e:
            log.exception(f"❌ Flow request failed: {e}")
            payload = self._response(data={"error": str(e)})

        return BookingHttpResponse(200, seal_envelope(payload, decrypted.aes_key, decrypted.iv))
