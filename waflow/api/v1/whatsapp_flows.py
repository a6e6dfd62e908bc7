# waflow/api/v1/whatsapp_flows.py
"""WhatsApp Flows data endpoint (appointment booking screens)"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from waflow.api.deps import get_event_bus
from waflow.core.config import FLOWS_API_VERSION
from waflow.db.session import get_db
from waflow.services.booking_flow import BookingFlowHandler

router = APIRouter()
log = logging.getLogger("waflow.booking")


def get_booking_handler(bus=Depends(get_event_bus)) -> BookingFlowHandler:
    return BookingFlowHandler(bus=bus)


@router.get("")
def flows_endpoint_health():
    return {"status": "active", "version": FLOWS_API_VERSION}


@router.post("")
async def flows_data_exchange(
    request: Request,
    db: Session = Depends(get_db),
    handler: BookingFlowHandler = Depends(get_booking_handler)
):
    """
    Meta posts every screen transition here. Encrypted calls are answered
    with base64 text; plaintext calls (local testing) with JSON.
    """
    try:
        body = await request.json()
    except ValueError:
        log.warning("⚠️ Flows endpoint received a non-JSON body")
        return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

    response = await handler.process(db, body)
    if response.encrypted:
        return PlainTextResponse(content=response.body, status_code=response.status_code)
    return JSONResponse(content=response.body, status_code=response.status_code)
