# waflow/main.py
"""
FastAPI application: WhatsApp booking screens, webhook ingestion, flow and
function management, and live updates over WebSocket.
"""
import logging
import re
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from waflow import __version__
from waflow.api.v1.router import api_router
from waflow.core.config import (
    FLOWS_PRIVATE_KEY, JWT_SECRET_KEY, LOG_LEVEL, PHONE_ID, TOKEN, VERIFY_TOKEN
)
from waflow.core.errors import WaflowError
from waflow.core.logging_config import setup_logging
from waflow.db.session import init_db, test_db_connection
from waflow.services.flow_engine import FlowRouter
from waflow.ws.manager import EventBus, WebSocketConnectionManager

log = logging.getLogger("waflow")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging("waflow", LOG_LEVEL)
    log.info("=" * 80)
    log.info(f"🚀 waflow {__version__} starting")
    log.info("=" * 80)

    try:
        init_db()
        if test_db_connection():
            log.info("✅ Database initialized")
    except Exception as e:
        log.error(f"❌ Database error: {e}")

    bus = EventBus()
    bus.start()
    app.state.event_bus = bus
    app.state.ws_manager = WebSocketConnectionManager(bus)
    app.state.flow_router = FlowRouter(bus=bus)

    if not FLOWS_PRIVATE_KEY:
        log.warning("⚠️ WHATSAPP_FLOWS_PRIVATE_KEY not set, encrypted booking requests will fail")

    yield

    await bus.shutdown()
    log.info("👋 waflow stopped")


app = FastAPI(
    title="waflow - WhatsApp conversation automation",
    description="Booking screens, conversation flows and sandboxed functions for WhatsApp Business",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ────────────────────────────────────────────
# CORS Configuration
# ────────────────────────────────────────────

ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]

LOCAL_ORIGIN_RE = re.compile(r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_origin_regex=LOCAL_ORIGIN_RE.pattern,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Owner-Id", "Authorization", "Content-Type"],
    max_age=86400,
)

app.include_router(api_router, prefix="/api")


# ────────────────────────────────────────────
# Public routes
# ────────────────────────────────────────────

@app.get("/healthz", tags=["System"])
def health(request: Request):
    """Health check endpoint"""
    db_ok = test_db_connection()
    ws_manager = getattr(request.app.state, "ws_manager", None)

    return {
        "status": "ok" if db_ok else "degraded",
        "version": __version__,
        "phone_id_ok": bool(PHONE_ID),
        "token_ok": bool(TOKEN),
        "verify_token_ok": bool(VERIFY_TOKEN),
        "flows_key_ok": bool(FLOWS_PRIVATE_KEY),
        "database_ok": db_ok,
        "jwt_enabled": bool(JWT_SECRET_KEY),
        "websocket_connections": ws_manager.connection_count() if ws_manager else 0,
    }


# ────────────────────────────────────────────
# WebSocket Endpoint
# ────────────────────────────────────────────

@app.websocket("/ws/{owner_id}")
async def websocket_endpoint(websocket: WebSocket, owner_id: str):
    """Live updates (new_message, message_status, appointment_created, ...)"""
    ws_manager: WebSocketConnectionManager = websocket.app.state.ws_manager
    try:
        await ws_manager.connect(owner_id, websocket)

        while True:
            try:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
            except WebSocketDisconnect:
                log.info(f"🔌 WebSocket disconnected for owner: {owner_id}")
                break
    except Exception as e:
        log.error(f"❌ WebSocket error for owner {owner_id}: {e}")
    finally:
        ws_manager.disconnect(owner_id, websocket)


# ────────────────────────────────────────────
# Exception Handlers
# ────────────────────────────────────────────

@app.exception_handler(WaflowError)
async def waflow_error_handler(request: Request, exc: WaflowError):
    if exc.status_code >= 500:
        log.error(f"❌ {request.method} {request.url.path}: {exc.__class__.__name__}: {exc.message}")
    else:
        log.info(f"↩️ {request.method} {request.url.path}: {exc.__class__.__name__}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8100)
