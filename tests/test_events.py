import asyncio
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from waflow.main import app
from waflow.ws.manager import EventBus
from tests.conftest import OWNER


class TestEventBus:
    def test_publish_without_subscribers(self):
        assert EventBus().publish(OWNER, "new_message", {}) == 0

    def test_not_started_drops_events(self):
        bus = EventBus()
        callback = Mock()
        bus.subscribe(OWNER, callback)
        assert bus.publish(OWNER, "new_message", {}) == 0
        callback.assert_not_called()

    def test_delivers_to_owner_only(self):
        received = []

        async def scenario():
            bus = EventBus()
            bus.start()
            bus.subscribe(OWNER, received.append)
            bus.subscribe("other", lambda payload: received.append("wrong owner"))

            assert bus.publish(OWNER, "appointment_created", {"id": 7}) == 1
            await asyncio.sleep(0)
            await bus.shutdown()

        asyncio.run(scenario())

        assert len(received) == 1
        assert received[0]["type"] == "appointment_created"
        assert received[0]["data"] == {"id": 7}
        assert "timestamp" in received[0]

    def test_async_subscriber_and_unsubscribe(self):
        received = []

        async def subscriber(payload):
            received.append(payload["type"])

        async def scenario():
            bus = EventBus()
            bus.start()
            unsubscribe = bus.subscribe(OWNER, subscriber)
            bus.publish(OWNER, "first", {})
            await asyncio.sleep(0.01)
            unsubscribe()
            assert bus.subscriber_count(OWNER) == 0
            assert bus.publish(OWNER, "second", {}) == 0
            await bus.shutdown()

        asyncio.run(scenario())
        assert received == ["first"]

    def test_failing_subscriber_does_not_break_others(self):
        received = []

        async def scenario():
            bus = EventBus()
            bus.start()
            bus.subscribe(OWNER, Mock(side_effect=RuntimeError("boom")))
            bus.subscribe(OWNER, received.append)
            assert bus.publish(OWNER, "x", {}) == 2
            await asyncio.sleep(0)
            await bus.shutdown()

        asyncio.run(scenario())
        assert len(received) == 1


class TestWebSocket:
    @pytest.fixture
    def client(self, db):
        with TestClient(app) as c:
            yield c

    def test_ping_pong(self, client):
        with client.websocket_connect(f"/ws/{OWNER}") as ws:
            ws.send_text("ping")
            assert ws.receive_text() == "pong"

    def test_receives_owner_events(self, client):
        with client.websocket_connect(f"/ws/{OWNER}") as ws:
            ws.send_text("ping")
            ws.receive_text()

            client.post("/api/appointments", json={
                "contact_wa_id": "919876543210", "customer_name": "Asha", "date": "2026-10-20T10:00",
            }, headers={"X-Owner-Id": OWNER})

            event = ws.receive_json()
            assert event["type"] == "appointment_created"
            assert event["data"]["customer_name"] == "Asha"
