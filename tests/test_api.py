from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import jwt
import pytest
from fastapi.testclient import TestClient

from waflow.main import app
from waflow.models.account import WhatsAppAccount
from waflow.models.message import Message
from waflow.services.sandbox import FunctionRunResult
from waflow.services.sender import SendResult
from tests.conftest import OWNER

HEADERS = {"X-Owner-Id": OWNER}
ECHO_CODE = "def handler(input, context):\n    return {'echo': input, 'owner': context['owner_id']}\n"


@pytest.fixture
def client(db):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def account(db):
    acc = WhatsAppAccount(
        owner_id=OWNER,
        phone_number_id="123",
        business_account_id="456",
        access_token="token",
        webhook_verify_token="verify-me",
    )
    db.add(acc)
    db.commit()
    return acc


def bearer(claims):
    return {"Authorization": f"Bearer {jwt.encode(claims, 'test-secret', algorithm='HS256')}"}


class TestOwnerResolution:
    def test_header(self, client):
        assert client.get("/api/flows", headers=HEADERS).status_code == 200

    def test_missing_owner(self, client):
        assert client.get("/api/flows").status_code == 401

    def test_jwt_owner(self, client):
        client.post("/api/flows", json={"name": "mine"}, headers=bearer({"user_id": "jwt-owner"}))
        flows = client.get("/api/flows", headers=bearer({"sub": "jwt-owner"})).json()
        assert [f["name"] for f in flows] == ["mine"]
        assert client.get("/api/flows", headers=HEADERS).json() == []

    def test_jwt_without_owner_claim(self, client):
        assert client.get("/api/flows", headers=bearer({"role": "admin"})).status_code == 401

    def test_expired_jwt(self, client):
        expired = datetime.now(timezone.utc) - timedelta(minutes=5)
        assert client.get("/api/flows", headers=bearer({"sub": "x", "exp": expired})).status_code == 401

    def test_bad_jwt(self, client):
        assert client.get("/api/flows", headers={"Authorization": "Bearer nope"}).status_code == 401


class TestFlows:
    def create(self, client, **body):
        body.setdefault("name", "Booking")
        return client.post("/api/flows", json=body, headers=HEADERS)

    def test_create_with_builder_keys(self, client):
        response = self.create(
            client,
            trigger={"matchType": "includes", "matchText": "book"},
            firstTemplate="booking_menu",
            connections=[{"sourceTemplate": "booking_menu", "button": "Yes", "targetType": "custom_message",
                          "target": "custom:thanks", "nextTemplate": ""}],
        )

        assert response.status_code == 201
        flow = response.json()
        assert flow["trigger"] == {"match_type": "includes", "match_text": "book"}
        assert flow["first_node"] == "booking_menu"
        assert flow["connections"][0]["source_node"] == "booking_menu"
        assert flow["connections"][0]["target_type"] == "custom_message"
        assert flow["connections"][0]["next_node"] is None

    def test_invalid_trigger(self, client):
        assert self.create(client, trigger={"match_type": "regex"}).status_code == 422

    def test_duplicate_embedded_function_names(self, client):
        fn = {"name": "calc", "code": ECHO_CODE}
        assert self.create(client, functions=[fn, fn]).status_code == 422

    def test_list_most_recent_first(self, client):
        self.create(client, name="first")
        second = self.create(client, name="second").json()
        client.put(f"/api/flows/{second['id']}", json={"description": "touched"}, headers=HEADERS)
        names = [f["name"] for f in client.get("/api/flows", headers=HEADERS).json()]
        assert names == ["second", "first"]

    def test_update_and_replace_parts(self, client):
        flow_id = self.create(client).json()["id"]

        updated = client.put(f"/api/flows/{flow_id}", json={"name": "Renamed", "trigger": {"match_type": "exact", "match_text": "hi"}},
                             headers=HEADERS).json()
        assert updated["name"] == "Renamed"
        assert updated["trigger"]["match_type"] == "exact"

        connections = client.put(f"/api/flows/{flow_id}/connections", json={"connections": [
            {"source_node": "menu", "target": "next_tpl"},
        ]}, headers=HEADERS).json()["connections"]
        assert connections[0]["target_type"] == "template"

        functions = client.put(f"/api/flows/{flow_id}/functions", json={"functions": [
            {"name": "calc", "code": ECHO_CODE, "timeoutMs": 999999},
        ]}, headers=HEADERS).json()["functions"]
        assert functions[0]["timeout_ms"] == 20000

    def test_replace_functions_with_duplicates(self, client):
        flow_id = self.create(client).json()["id"]
        fn = {"name": "calc", "code": ECHO_CODE}
        response = client.put(f"/api/flows/{flow_id}", json={"functions": [fn, fn]}, headers=HEADERS)
        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"

    def test_other_owner_cannot_see_flow(self, client):
        flow_id = self.create(client).json()["id"]
        response = client.get(f"/api/flows/{flow_id}", headers={"X-Owner-Id": "someone-else"})
        assert response.status_code == 404
        assert response.json() == {"detail": "Flow not found", "error": "NotFoundError"}

    def test_delete(self, client):
        flow_id = self.create(client).json()["id"]
        assert client.delete(f"/api/flows/{flow_id}", headers=HEADERS).json()["id"] == flow_id
        assert client.get(f"/api/flows/{flow_id}", headers=HEADERS).status_code == 404

    def test_execute_embedded_function(self, client, monkeypatch):
        runner = AsyncMock(return_value=FunctionRunResult({"total": 42}, ["ran"], 3))
        monkeypatch.setattr("waflow.services.flow_engine.run_user_function", runner)
        flow_id = self.create(client, functions=[
            {"name": "calc", "code": ECHO_CODE, "inputKey": "qty", "nextNode": "custom:total"},
        ]).json()["id"]

        response = client.post("/api/flows/execute", json={
            "flowId": flow_id, "functionName": "calc", "input": "3", "context": {"name": "Asha"},
        }, headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {
            "success": True, "output": {"total": 42}, "logs": ["ran"], "duration_ms": 3, "next_node": "custom:total",
        }
        code, input_value, context, timeout = runner.await_args[0]
        assert input_value == "3"
        assert context == {"owner_id": OWNER, "name": "Asha", "qty": "3"}

    def test_execute_unknown_function(self, client):
        flow_id = self.create(client).json()["id"]
        response = client.post("/api/flows/execute", json={"flow_id": flow_id, "function_name": "nope"}, headers=HEADERS)
        assert response.status_code == 404


class TestFunctions:
    def test_crud(self, client):
        created = client.post("/api/functions", json={"name": " calc ", "code": ECHO_CODE, "timeout_ms": 1}, headers=HEADERS)
        assert created.status_code == 201
        fn = created.json()
        assert fn["name"] == "calc"
        assert fn["timeout_ms"] == 100
        assert fn["input_key"] == "input"

        updated = client.put(f"/api/functions/{fn['id']}", json={"next_node": "done"}, headers=HEADERS).json()
        assert updated["next_node"] == "done"
        assert [f["name"] for f in client.get("/api/functions", headers=HEADERS).json()] == ["calc"]

        assert client.delete(f"/api/functions/{fn['id']}", headers=HEADERS).status_code == 200
        assert client.get(f"/api/functions/{fn['id']}", headers=HEADERS).status_code == 404

    def test_duplicate_name_is_409(self, client):
        client.post("/api/functions", json={"name": "calc", "code": ECHO_CODE}, headers=HEADERS)
        response = client.post("/api/functions", json={"name": "calc", "code": ECHO_CODE}, headers=HEADERS)
        assert response.status_code == 409
        assert response.json()["error"] == "DuplicateNameError"

    def test_same_name_for_other_owner(self, client):
        client.post("/api/functions", json={"name": "calc", "code": ECHO_CODE}, headers=HEADERS)
        response = client.post("/api/functions", json={"name": "calc", "code": ECHO_CODE}, headers={"X-Owner-Id": "other"})
        assert response.status_code == 201

    def test_rename_onto_existing(self, client):
        client.post("/api/functions", json={"name": "a", "code": ECHO_CODE}, headers=HEADERS)
        b = client.post("/api/functions", json={"name": "b", "code": ECHO_CODE}, headers=HEADERS).json()
        assert client.put(f"/api/functions/{b['id']}", json={"name": "a"}, headers=HEADERS).status_code == 409

    def test_test_run(self, client):
        response = client.post("/api/functions/test", json={"code": ECHO_CODE, "input": "hi", "timeout_ms": 5000}, headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["output"] == {"echo": "hi", "owner": OWNER}

    def test_test_run_errors_map_to_status(self, client):
        response = client.post("/api/functions/test", json={"code": "x = 1\n"}, headers=HEADERS)
        assert response.status_code == 400
        assert response.json()["error"] == "NotAFunctionError"

        response = client.post("/api/functions/test", json={"code": "import os\ndef handler(i, c):\n    return 1\n"},
                               headers=HEADERS)
        assert response.status_code == 422
        assert response.json()["error"] == "ExecutionFailureError"


class TestCustomMessages:
    def test_create_extracts_placeholders(self, client):
        response = client.post("/api/custom-messages", json={
            "name": "total",
            "content": "Hi {{name}}, your total is {{total}}. Thanks {{name}}!",
            "buttons": [{"type": "url", "text": "Pay", "url": "https://pay.example"}],
        }, headers=HEADERS)

        assert response.status_code == 201
        message = response.json()
        assert message["placeholders"] == ["name", "total"]
        assert message["buttons"][0]["url"] == "https://pay.example"

    def test_update_refreshes_placeholders(self, client):
        message = client.post("/api/custom-messages", json={"name": "m", "content": "{{a}}"}, headers=HEADERS).json()
        updated = client.put(f"/api/custom-messages/{message['id']}", json={"content": "{{b}} {{c}}"}, headers=HEADERS)
        assert updated.json()["placeholders"] == ["b", "c"]

    def test_call_button_needs_phone(self, client):
        response = client.post("/api/custom-messages", json={
            "name": "m", "content": "x", "buttons": [{"type": "call", "text": "Call"}],
        }, headers=HEADERS)
        assert response.status_code == 422

    def test_duplicate_name(self, client):
        client.post("/api/custom-messages", json={"name": "m", "content": "x"}, headers=HEADERS)
        assert client.post("/api/custom-messages", json={"name": "m", "content": "y"}, headers=HEADERS).status_code == 409


class TestAppointments:
    def book(self, client, date="2026-10-20T10:00", **extra):
        body = {"contact_wa_id": "919876543210", "customer_name": "Asha", "date": date, **extra}
        return client.post("/api/appointments", json=body, headers=HEADERS)

    def test_create_stores_utc(self, client):
        response = self.book(client)

        assert response.status_code == 201
        appointment = response.json()
        assert appointment["scheduled_at"].startswith("2026-10-20T04:30")
        assert appointment["local_time"] == "2026-10-20T10:00+05:30"
        assert appointment["duration_minutes"] == 30
        assert appointment["status"] == "scheduled"
        assert appointment["customer_phone"] == "919876543210"

    def test_list_filters(self, client):
        self.book(client, "2026-10-20T10:00")
        self.book(client, "2026-10-21T10:00")
        # 00:30 local on the 22nd is still the 21st in UTC
        self.book(client, "2026-10-22T00:30")

        listed = client.get("/api/appointments", params={"start_date": "2026-10-21", "end_date": "2026-10-21"},
                            headers=HEADERS).json()
        assert [a["local_time"] for a in listed] == ["2026-10-21T10:00+05:30"]

    def test_delete_cancels(self, client):
        appointment_id = self.book(client).json()["id"]

        assert client.delete(f"/api/appointments/{appointment_id}", headers=HEADERS).status_code == 200

        kept = client.get(f"/api/appointments/{appointment_id}", headers=HEADERS).json()
        assert kept["status"] == "cancelled"
        listed = client.get("/api/appointments", params={"status": "scheduled"}, headers=HEADERS).json()
        assert listed == []

    def test_update(self, client):
        appointment_id = self.book(client).json()["id"]
        updated = client.put(f"/api/appointments/{appointment_id}", json={"date": "2026-10-20T11:00", "status": "confirmed"},
                             headers=HEADERS).json()
        assert updated["local_time"] == "2026-10-20T11:00+05:30"
        assert updated["status"] == "confirmed"

    def test_unknown(self, client):
        assert client.get("/api/appointments/999", headers=HEADERS).status_code == 404


class TestSettings:
    def test_not_configured(self, client):
        assert client.get("/api/settings", headers=HEADERS).status_code == 404

    def test_create_requires_token(self, client):
        response = client.put("/api/settings", json={"phone_number_id": "1", "business_account_id": "2"}, headers=HEADERS)
        assert response.status_code == 400

    def test_create_and_update(self, client):
        created = client.put("/api/settings", json={
            "phoneNumberId": "1", "businessAccountId": "2", "accessToken": "secret",
        }, headers=HEADERS).json()

        assert created["access_token_set"] is True
        assert "access_token" not in created
        assert created["webhook_verify_token"]
        assert created["webhook_path"] == f"/api/webhook/{OWNER}"

        updated = client.put("/api/settings", json={"phone_number_id": "1", "business_account_id": "3"}, headers=HEADERS).json()
        assert updated["business_account_id"] == "3"
        assert updated["webhook_verify_token"] == created["webhook_verify_token"]


class TestWebhookEndpoints:
    def test_verify(self, client, account):
        response = client.get(f"/api/webhook/{OWNER}", params={
            "hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "abc",
        })
        assert response.status_code == 200
        assert response.text == "abc"

    def test_verify_wrong_token(self, client, account):
        response = client.get(f"/api/webhook/{OWNER}", params={
            "hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "abc",
        })
        assert response.status_code == 403

    def test_receive_stores_and_routes(self, client, account, db):
        router = Mock()
        router.route = AsyncMock(return_value=Mock(action="none"))
        client.app.state.flow_router = router

        payload = {"entry": [{"changes": [{"value": {"messages": [
            {"from": "919876543210", "id": "wamid.x", "type": "text", "text": {"body": "book"}},
        ]}}]}]}
        response = client.post(f"/api/webhook/{OWNER}", json=payload)

        assert response.json() == {"message": "OK"}
        assert db.query(Message).filter(Message.wa_message_id == "wamid.x").count() == 1
        assert router.route.await_count == 1

        logs = client.get("/api/webhooks/logs", headers=HEADERS).json()
        assert logs[0]["log_type"] == "message"

    def test_receive_routes_valid_messages_next_to_bad_entries(self, client, account):
        router = Mock()
        router.route = AsyncMock(return_value=Mock(action="none"))
        client.app.state.flow_router = router

        payload = {"entry": [{"changes": [{"value": {
            "messages": [{"from": "919876543210", "id": "wamid.ok", "type": "text", "text": {"body": "hi"}}],
            "statuses": ["garbage"],
        }}]}]}
        client.post(f"/api/webhook/{OWNER}", json=payload)
        client.post(f"/api/webhook/{OWNER}", json=payload)

        assert router.route.await_count == 1

    def test_receive_garbage_still_acknowledged(self, client, account):
        response = client.post(f"/api/webhook/{OWNER}", content=b"not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 200
        logs = client.get("/api/webhooks/logs", params={"log_type": "error"}, headers=HEADERS).json()
        assert len(logs) == 1

    def test_conversation(self, client, account):
        client.app.state.flow_router = Mock(route=AsyncMock(return_value=Mock(action="none")))
        client.post(f"/api/webhook/{OWNER}", json={"entry": [{"changes": [{"value": {"messages": [
            {"from": "919876543210", "id": "wamid.y", "type": "text", "text": {"body": "hello"}},
        ]}}]}]})

        contacts = client.get("/api/contacts", headers=HEADERS).json()
        assert contacts[0]["unread_count"] == 1

        conversation = client.get(f"/api/contacts/{contacts[0]['id']}/messages", headers=HEADERS).json()
        assert conversation["messages"][0]["content"] == "hello"
        assert client.get("/api/contacts", headers=HEADERS).json()[0]["unread_count"] == 0

    def test_logs_reject_unknown_type(self, client):
        response = client.get("/api/webhooks/logs", params={"log_type": "nope"}, headers=HEADERS)
        assert response.status_code == 400


class TestContactMessages:
    def test_send_stores_outgoing(self, client, contact, sender, db, monkeypatch):
        monkeypatch.setattr("waflow.api.v1.contacts.get_sender_for_owner", lambda db, owner_id: sender)

        response = client.post(f"/api/contacts/{contact.id}/messages", json={"text": "On my way"}, headers=HEADERS)

        assert response.status_code == 201
        body = response.json()
        assert (body["direction"], body["content"], body["wa_message_id"]) == ("outgoing", "On my way", "wamid.text")
        sender.send_text.assert_awaited_once_with("919876543210", "On my way")
        assert db.query(Message).filter(Message.direction == "outgoing").count() == 1

    def test_send_failure_stores_nothing(self, client, contact, sender, db, monkeypatch):
        sender.send_text = AsyncMock(return_value=SendResult(False, error="rate limited"))
        monkeypatch.setattr("waflow.api.v1.contacts.get_sender_for_owner", lambda db, owner_id: sender)

        response = client.post(f"/api/contacts/{contact.id}/messages", json={"text": "hi"}, headers=HEADERS)

        assert response.status_code == 502
        assert response.json()["error"] == "SendFailureError"
        assert db.query(Message).count() == 0

    def test_send_to_unknown_contact(self, client):
        response = client.post("/api/contacts/999/messages", json={"text": "hi"}, headers=HEADERS)
        assert response.status_code == 404

    def test_send_without_account(self, client, contact):
        response = client.post(f"/api/contacts/{contact.id}/messages", json={"text": "hi"}, headers=HEADERS)
        assert response.status_code == 500
        assert response.json()["error"] == "ConfigurationError"

    def test_empty_text_rejected(self, client, contact):
        response = client.post(f"/api/contacts/{contact.id}/messages", json={"text": ""}, headers=HEADERS)
        assert response.status_code == 422


class TestTemplates:
    def test_lists_account_templates(self, client, monkeypatch):
        sender = Mock()
        sender.list_templates = AsyncMock(return_value=[
            {"id": "t1", "name": "welcome", "status": "APPROVED", "category": "MARKETING", "language": "en"},
        ])
        monkeypatch.setattr("waflow.api.v1.templates.get_sender_for_owner", lambda db, owner_id: sender)

        response = client.get("/api/templates", headers=HEADERS)

        assert response.status_code == 200
        assert [t["name"] for t in response.json()["templates"]] == ["welcome"]

    def test_without_account(self, client):
        response = client.get("/api/templates", headers=HEADERS)
        assert response.status_code == 404

class TestWhatsAppFlowsEndpoint:
    def test_health(self, client):
        assert client.get("/api/whatsapp/flows").json() == {"status": "active", "version": "3.0"}

    def test_plaintext_ping(self, client):
        response = client.post("/api/whatsapp/flows", json={"action": "ping"})
        assert response.status_code == 200
        assert response.json() == {"version": "3.0", "data": {"status": "active"}}

    def test_invalid_json(self, client):
        response = client.post("/api/whatsapp/flows", content=b"{", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_encrypted_without_key(self, client):
        response = client.post("/api/whatsapp/flows", json={
            "encrypted_aes_key": "AAAA", "encrypted_flow_data": "AAAA", "initial_vector": "AAAA",
        })
        assert response.status_code == 500
        assert response.json() == {"error": "Private key not configured"}


class TestHealth:
    def test_healthz(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "ok"
        assert body["database_ok"] is True
        assert body["jwt_enabled"] is True
