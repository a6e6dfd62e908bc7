# waflow/ws/manager.py
"""
Live update plumbing: an owner-keyed event bus and the WebSocket fan-out on top of it.

Usage:
- Lifespan: bus = EventBus(); bus.start(); ... await bus.shutdown()
- Any thread: bus.publish(owner_id, "new_message", {...})
- Route: await ws_manager.connect(owner_id, websocket) / ws_manager.disconnect(owner_id, websocket)
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import WebSocket

log = logging.getLogger("waflow.ws")

Subscriber = Callable[[Dict[str, Any]], Any]


class EventBus:
    """
    In-memory publish/subscribe registry keyed by owner id.

    Callbacks always run on the bus loop; publish() is safe from any thread.
    Coroutine callbacks are scheduled as tasks.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._loop is not None and not self._loop.is_closed()

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        log.info("📡 Event bus started")

    async def shutdown(self) -> None:
        with self._lock:
            self._subscribers.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loop = None
        log.info("📡 Event bus stopped")

    def subscribe(self, owner_id: str, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that removes it again."""
        with self._lock:
            self._subscribers.setdefault(owner_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(owner_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._subscribers.pop(owner_id, None)

        return unsubscribe

    def subscriber_count(self, owner_id: Optional[str] = None) -> int:
        with self._lock:
            if owner_id is None:
                return sum(len(c) for c in self._subscribers.values())
            return len(self._subscribers.get(owner_id, []))

    def publish(self, owner_id: str, event: str, data: Dict[str, Any]) -> int:
        """Queue an event for every subscriber of the owner. Returns the number queued."""
        payload = {
            "type": event,
            "data": data,
            "timestamp": datetime.utcnow().isoformat(),
        }
        with self._lock:
            callbacks = list(self._subscribers.get(owner_id, []))

        if not callbacks:
            log.debug(f"No subscribers for {event} (owner {owner_id})")
            return 0
        if not self.running:
            log.warning(f"⚠️ Event bus not started, dropping {event} for owner {owner_id}")
            return 0

        for callback in callbacks:
            self._loop.call_soon_threadsafe(self._invoke, callback, payload)
        log.debug(f"🔔 {event} queued for {len(callbacks)} subscriber(s) of owner {owner_id}")
        return len(callbacks)

    def _invoke(self, callback: Subscriber, payload: Dict[str, Any]) -> None:
        try:
            result = callback(payload)
        except Exception as e:
            log.error(f"❌ Event subscriber failed: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)


class WebSocketConnectionManager:
    """Fans bus events out to the WebSocket clients of each owner."""

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus
        # Map owner_id -> set of WebSocket connections
        self.active: Dict[str, Set[WebSocket]] = {}
        self._unsubscribers: Dict[str, Callable[[], None]] = {}

    async def connect(self, owner_id: str, websocket: WebSocket) -> None:
        """Accept and register a websocket under an owner."""
        await websocket.accept()
        if owner_id not in self.active:
            self.active[owner_id] = set()
            self._unsubscribers[owner_id] = self.bus.subscribe(
                owner_id, lambda payload: self.notify_clients(owner_id, payload)
            )
        self.active[owner_id].add(websocket)
        log.info("WS connected: owner=%s total=%d", owner_id, self.connection_count(owner_id))

    def disconnect(self, owner_id: str, websocket: WebSocket) -> None:
        """Unregister a websocket from an owner."""
        conns = self.active.get(owner_id)
        if conns is not None:
            conns.discard(websocket)
            if not conns:
                self._drop_owner(owner_id)
        log.info("WS disconnected: owner=%s total=%d", owner_id, self.connection_count(owner_id))

    def _drop_owner(self, owner_id: str) -> None:
        self.active.pop(owner_id, None)
        unsubscribe = self._unsubscribers.pop(owner_id, None)
        if unsubscribe:
            unsubscribe()

    async def notify_clients(self, owner_id: str, message_data: dict) -> None:
        """Send JSON to all connected clients of an owner."""
        connections = list(self.active.get(owner_id, set()))
        if not connections:
            return

        stale: Set[WebSocket] = set()
        for ws in connections:
            try:
                await ws.send_json(message_data)
            except Exception as e:
                log.warning(f"⚠️ WS send failed, marking stale: {e}")
                stale.add(ws)

        log.debug(f"✅ Sent {message_data.get('type')} to {len(connections) - len(stale)}/{len(connections)} clients of owner {owner_id}")

        if stale:
            alive = self.active.get(owner_id, set())
            for ws in stale:
                alive.discard(ws)
            if not alive:
                self._drop_owner(owner_id)
            log.info(f"🧹 Removed {len(stale)} stale connections")

    def connection_count(self, owner_id: Optional[str] = None) -> int:
        if owner_id is None:
            return sum(len(s) for s in self.active.values())
        return len(self.active.get(owner_id, set()))
