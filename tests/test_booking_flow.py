import asyncio
import base64
import json
import os
from datetime import datetime
from unittest.mock import AsyncMock, Mock

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from waflow.core.crypto import invert_iv
from waflow.core.errors import ConfigurationError
from waflow.models.appointment import Appointment
from waflow.services.booking_flow import (
    BOOKING_FAILED_MESSAGE,
    NO_SLOTS_MESSAGE,
    BookingFlowHandler,
    FlowToken,
)
from waflow.services.sender import SendResult
from waflow.services.slots import BusinessCalendar
from tests.conftest import encrypt_like_client

# 2026-10-19 17:30 IST
NOW = datetime(2026, 10, 19, 12, 0)


@pytest.fixture
def handler(sender_factory, bus):
    return BookingFlowHandler(
        calendar=BusinessCalendar(utc_offset="+05:30"),
        sender_factory=sender_factory,
        bus=bus,
        clock=lambda: NOW,
    )


def act(handler, db, **request):
    return asyncio.run(handler.handle_action(db, request))


class TestFlowToken:
    def test_parse_full(self):
        token = FlowToken.parse("owner-1:919876543210:Asha%20K")
        assert token.owner_id == "owner-1"
        assert token.channel_id == "919876543210"
        assert token.customer_name == "Asha K"

    def test_name_falls_back_to_channel(self):
        assert FlowToken.parse("owner-1:919876543210:").customer_name == "+919876543210"

    def test_empty_token(self):
        token = FlowToken.parse(None)
        assert token.owner_id is None
        assert token.customer_name == "Customer"

    def test_format_round_trip(self):
        token = FlowToken("owner-1", "91999", "Ravi & Co: Ltd")
        assert FlowToken.parse(token.format()) == token


class TestScreens:
    def test_ping(self, handler, db):
        assert act(handler, db, action="ping") == {"version": "3.0", "data": {"status": "active"}}

    def test_init_lists_seven_days(self, handler, db):
        response = act(handler, db, action="INIT")
        assert response["screen"] == "SELECT_DATE"
        dates = response["data"]["available_dates"]
        assert len(dates) == 7
        assert dates[0] == {"id": "2026-10-19", "title": "Mon, Oct 19"}
        assert response["data"]["has_error"] is False

    def test_welcome_continues_to_date_selection(self, handler, db):
        response = act(handler, db, action="data_exchange", screen="WELCOME", data={})
        assert response["screen"] == "SELECT_DATE"

    def test_unknown_screen_restarts(self, handler, db):
        response = act(handler, db, action="data_exchange", screen="MYSTERY", data={})
        assert response["screen"] == "SELECT_DATE"

    def test_unknown_action(self, handler, db):
        assert act(handler, db, action="BACK") == {"version": "3.0", "data": {"error": "Unknown action"}}

    def test_select_date_lists_slots(self, handler, db):
        response = act(handler, db, action="data_exchange", screen="SELECT_DATE", data={"appointment_date": "2026-10-20"})

        assert response["screen"] == "SELECT_TIME"
        assert response["data"]["selected_date"] == "2026-10-20"
        assert response["data"]["slots_header"] == "Available slots for Tuesday, October 20, 2026"
        assert response["data"]["time_slots"][0] == {"id": "2026-10-20T09:00", "title": "9:00 AM"}

    def test_select_date_today_after_hours_has_error(self, handler, db):
        response = act(handler, db, action="data_exchange", screen="SELECT_DATE", data={"appointment_date": "2026-10-19"})

        assert response["screen"] == "SELECT_DATE"
        assert response["data"]["has_error"] is True
        assert response["data"]["error_message"] == NO_SLOTS_MESSAGE
        assert len(response["data"]["available_dates"]) == 7

    def test_select_date_in_the_past_has_error(self, handler, db):
        response = act(handler, db, action="data_exchange", screen="SELECT_DATE", data={"appointment_date": "2026-10-12"})

        assert response["screen"] == "SELECT_DATE"
        assert response["data"]["has_error"] is True
        assert response["data"]["error_message"] == NO_SLOTS_MESSAGE

    def test_select_date_invalid(self, handler, db):
        response = act(handler, db, action="data_exchange", screen="SELECT_DATE", data={"appointment_date": "soon"})
        assert response["screen"] == "SELECT_DATE"
        assert response["data"]["has_error"] is True

    def test_select_time_summary(self, handler, db):
        response = act(handler, db, action="data_exchange", screen="SELECT_TIME", data={
            "selected_date": "2026-10-20",
            "selected_time": "2026-10-20T14:30",
        })

        assert response["screen"] == "CONFIRM"
        data = response["data"]
        assert data["date_line"] == "📅 Date: Tuesday, October 20, 2026"
        assert data["time_line"] == "⏰ Time: 2:30 PM"
        assert data["summary"] == "Appointment on Tuesday, October 20, 2026 at 2:30 PM"


class TestConfirm:
    def confirm(self, handler, db, token="owner-1:919876543210:Asha"):
        return act(handler, db, action="data_exchange", screen="CONFIRM", flow_token=token, data={
            "selected_date": "2026-10-20",
            "selected_time": "2026-10-20T10:00",
        })

    def test_creates_appointment(self, handler, db, bus):
        response = self.confirm(handler, db)

        assert response["screen"] == "SUCCESS"
        appointment = db.query(Appointment).one()
        assert response["data"]["appointment_id"] == str(appointment.id)
        assert response["data"]["confirmation_message"] == (
            "Your appointment has been booked for Tuesday, October 20, 2026 at 10:00 AM. We'll send you a reminder!"
        )
        assert appointment.scheduled_at == datetime(2026, 10, 20, 4, 30)
        assert appointment.duration_minutes == 30
        assert appointment.status == "scheduled"
        assert appointment.owner_id == "owner-1"
        assert appointment.customer_name == "Asha"
        assert appointment.contact_wa_id == "919876543210"
        assert bus.publish.call_args[0][:2] == ("owner-1", "appointment_created")

    def test_booked_slot_disappears(self, handler, db):
        self.confirm(handler, db)
        response = act(handler, db, action="data_exchange", screen="SELECT_DATE", data={"appointment_date": "2026-10-20"})
        ids = [s["id"] for s in response["data"]["time_slots"]]
        assert "2026-10-20T10:00" not in ids
        assert "2026-10-20T10:30" in ids

    def test_sends_confirmation(self, handler, db, sender, sender_factory):
        self.confirm(handler, db)

        sender_factory.assert_called_once_with(db, "owner-1")
        to, text = sender.send_text.await_args[0]
        assert to == "919876543210"
        assert "Appointment Confirmed" in text
        assert "10:00 AM" in text

    def test_no_confirmation_without_owner(self, handler, db, sender):
        response = self.confirm(handler, db, token=":919876543210:")
        assert response["screen"] == "SUCCESS"
        assert db.query(Appointment).one().owner_id is None
        sender.send_text.assert_not_called()

    def test_failed_confirmation_keeps_booking(self, handler, db, sender):
        sender.send_text = AsyncMock(return_value=SendResult(False, error="rate limited"))
        response = self.confirm(handler, db)
        assert response["data"]["appointment_id"] != ""
        assert db.query(Appointment).count() == 1

    def test_sender_crash_keeps_booking(self, db, bus):
        handler = BookingFlowHandler(
            calendar=BusinessCalendar(utc_offset="+05:30"),
            sender_factory=Mock(side_effect=RuntimeError("boom")),
            bus=bus,
            clock=lambda: NOW,
        )
        response = self.confirm(handler, db)
        assert response["screen"] == "SUCCESS"
        assert db.query(Appointment).count() == 1

    def test_storage_failure_apologises(self, handler, db):
        db.commit = Mock(side_effect=RuntimeError("db down"))
        response = self.confirm(handler, db)
        assert response == {
            "version": "3.0",
            "screen": "SUCCESS",
            "data": {"appointment_id": "", "confirmation_message": BOOKING_FAILED_MESSAGE},
        }


class TestProcess:
    def test_plaintext_request(self, handler, db):
        response = asyncio.run(handler.process(db, {"action": "ping"}))
        assert response.status_code == 200
        assert response.encrypted is False
        assert response.body["data"] == {"status": "active"}

    def test_encrypted_request(self, handler, db, rsa_key):
        body, aes_key, iv = encrypt_like_client({"action": "INIT", "version": "3.0"}, rsa_key.public_key())

        response = asyncio.run(handler.process(db, body, private_key_loader=lambda: rsa_key))

        assert response.status_code == 200
        assert response.encrypted is True
        plain = AESGCM(aes_key).decrypt(invert_iv(iv), base64.b64decode(response.body), None)
        assert json.loads(plain)["screen"] == "SELECT_DATE"

    def test_undecryptable_request_is_421(self, handler, db, rsa_key):
        body, _, _ = encrypt_like_client({"action": "INIT"}, rsa_key.public_key())
        body["encrypted_flow_data"] = base64.b64encode(os.urandom(64)).decode()

        response = asyncio.run(handler.process(db, body, private_key_loader=lambda: rsa_key))

        assert response.status_code == 421
        assert response.encrypted is False

    def test_missing_private_key_is_500(self, handler, db, rsa_key):
        body, _, _ = encrypt_like_client({"action": "INIT"}, rsa_key.public_key())

        def no_key():
            raise ConfigurationError("WhatsApp Flows private key is not configured")

        response = asyncio.run(handler.process(db, body, private_key_loader=no_key))
        assert response.status_code == 500
        assert response.body == {"error": "Private key not configured"}

    def test_non_object_body(self, handler, db):
        assert asyncio.run(handler.process(db, ["nope"])).status_code == 400
