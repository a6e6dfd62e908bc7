import asyncio
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from waflow.core.errors import ConfigurationError, ProviderError, SendFailureError
from waflow.models.account import WhatsAppAccount
from waflow.services.sender import (
    SendResult,
    WhatsAppSender,
    build_custom_message,
    get_sender_for_owner,
)
from tests.conftest import OWNER


@pytest.fixture
def wa():
    client = Mock()
    client.send_text.return_value = SimpleNamespace(id="wamid.sent")
    client.send_template.return_value = SimpleNamespace(id="wamid.tpl")
    return client


class TestBuildCustomMessage:
    def test_plain(self):
        assert build_custom_message("Hi", []) == ("Hi", [])

    def test_links_and_calls_appended(self):
        body, buttons = build_custom_message("Hi", [
            {"type": "url", "text": "Site", "url": "https://example.com"},
            {"type": "call", "text": "Desk", "phone": "+911234"},
            {"type": "flow", "text": "Book", "flow_id": "123"},
        ])
        assert body == "Hi\n\n🔗 Site: https://example.com\n\n📞 Desk: +911234"
        assert buttons == []

    def test_quick_replies_limited(self):
        replies = [{"type": "quick_reply", "text": f"Option number {i} is long", "payload": ""} for i in range(5)]
        _, buttons = build_custom_message("Pick", replies)
        assert len(buttons) == 3
        assert buttons[0].title == "Option number 0 is l"
        assert buttons[1].callback_data == "btn_1"


class TestWhatsAppSender:
    def test_requires_credentials(self):
        with pytest.raises(ConfigurationError):
            WhatsAppSender("", "")

    def test_send_text(self, wa):
        result = asyncio.run(WhatsAppSender("1", "t", client=wa).send_text("9199", "hello"))
        assert result == SendResult(True, "wamid.sent")
        wa.send_text.assert_called_once_with(to="9199", text="hello")

    def test_send_template(self, wa):
        result = asyncio.run(WhatsAppSender("1", "t", client=wa).send_template("9199", "welcome"))
        assert result.message_id == "wamid.tpl"
        assert wa.send_template.call_args.kwargs["name"] == "welcome"

    def test_custom_message_with_buttons(self, wa):
        sender = WhatsAppSender("1", "t", client=wa)
        asyncio.run(sender.send_custom_message("9199", "Pick", [{"type": "quick_reply", "text": "Yes", "payload": "Y"}]))
        kwargs = wa.send_text.call_args.kwargs
        assert kwargs["text"] == "Pick"
        assert kwargs["buttons"][0].callback_data == "Y"

    def test_provider_error_is_a_failed_result(self, wa):
        wa.send_text.side_effect = RuntimeError("rate limited")
        result = asyncio.run(WhatsAppSender("1", "t", client=wa).send_text("9199", "hello"))
        assert result.success is False
        assert "rate limited" in result.error
        with pytest.raises(SendFailureError):
            result.raise_for_status()

    def test_list_templates(self, wa):
        wa.get_templates.return_value = [
            SimpleNamespace(id="t1", name="welcome", status=SimpleNamespace(value="APPROVED"),
                            category=SimpleNamespace(value="MARKETING"), language=SimpleNamespace(value="en")),
        ]
        templates = asyncio.run(WhatsAppSender("1", "t", waba_id="waba", client=wa).list_templates())
        assert templates == [
            {"id": "t1", "name": "welcome", "status": "APPROVED", "category": "MARKETING", "language": "en"},
        ]
        wa.get_templates.assert_called_once_with(waba_id="waba")

    def test_list_templates_requires_business_account(self, wa):
        with pytest.raises(ConfigurationError):
            asyncio.run(WhatsAppSender("1", "t", client=wa).list_templates())

    def test_list_templates_provider_error(self, wa):
        wa.get_templates.side_effect = RuntimeError("token expired")
        with pytest.raises(ProviderError, match="token expired"):
            asyncio.run(WhatsAppSender("1", "t", waba_id="waba", client=wa).list_templates())


class TestSenderForOwner:
    def test_owner_account(self, db, monkeypatch):
        created = []
        monkeypatch.setattr("waflow.services.sender.WhatsAppSender", lambda phone, token, waba_id=None: created.append((phone, token, waba_id)) or "sender")
        db.add(WhatsAppAccount(owner_id=OWNER, phone_number_id="555", business_account_id="b",
                               access_token="tok", webhook_verify_token="v"))
        db.commit()

        assert get_sender_for_owner(db, OWNER) == "sender"
        assert created == [("555", "tok", "b")]

    def test_global_fallback(self, db, monkeypatch):
        monkeypatch.setattr("waflow.services.sender.PHONE_ID", "global-phone")
        monkeypatch.setattr("waflow.services.sender.TOKEN", "global-token")
        monkeypatch.setattr("waflow.services.sender.WhatsAppSender", lambda phone, token, waba_id=None: (phone, token))
        assert get_sender_for_owner(db, "nobody") == ("global-phone", "global-token")

    def test_no_credentials(self, db):
        assert get_sender_for_owner(db, "nobody") is None
