# waflow/api/v1/webhooks.py
"""Meta webhook endpoints (per owner) and webhook activity logs"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from waflow.api.deps import get_event_bus, get_flow_router, get_owner_id
from waflow.core.errors import ValidationError
from waflow.db.session import get_db
from waflow.models.webhook import LOG_TYPES, WebhookLog
from waflow.services.flow_engine import FlowRouter
from waflow.services.webhook_service import (
    ingest_webhook,
    record_webhook_error,
    route_jobs,
    verify_subscription,
)

log = logging.getLogger("waflow.webhook")

router = APIRouter()


class WebhookLogResponse(BaseModel):
    id: int
    owner_id: Optional[str]
    log_type: str
    phone: Optional[str]
    message_id: Optional[str]
    status: Optional[str]
    error_message: Optional[str]
    message_type: Optional[str]
    raw_data: Optional[dict]
    created_at: datetime

    class Config:
        from_attributes = True


# ────────────────────────────────────────────
# Meta webhook
# ────────────────────────────────────────────

@router.get("/webhook/{owner_id}", response_class=PlainTextResponse)
def verify_webhook(
    owner_id: str,
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus)
):
    """Subscription handshake: echo hub.challenge when the verify token matches"""
    try:
        return verify_subscription(db, owner_id, hub_mode, hub_verify_token, hub_challenge, bus=bus)
    except PermissionError as e:
        log.warning(f"⚠️ Webhook verification rejected for owner {owner_id}: {e}")
        raise HTTPException(status_code=403, detail=str(e))


@router.post("/webhook/{owner_id}")
async def receive_webhook(
    owner_id: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    bus=Depends(get_event_bus),
    flow_router: FlowRouter = Depends(get_flow_router)
):
    """
    Store incoming messages and statuses, then route new messages in the
    background. Always acknowledges so Meta does not retry.
    """
    payload = None
    try:
        payload = await request.json()
        if not isinstance(payload, dict):
            raise ValueError("Webhook payload must be a JSON object")
        jobs = ingest_webhook(db, owner_id, payload, bus=bus)
        if jobs:
            background_tasks.add_task(route_jobs, jobs, flow_router)
    except Exception as e:
        log.exception(f"❌ Webhook processing failed for owner {owner_id}: {e}")
        record_webhook_error(db, owner_id, e, payload)

    return {"message": "OK"}


# ────────────────────────────────────────────
# Logs
# ────────────────────────────────────────────

@router.get("/webhooks/logs", response_model=List[WebhookLogResponse])
def get_webhook_logs(
    limit: int = Query(50, le=200),
    skip: int = 0,
    log_type: Optional[str] = None,
    phone: Optional[str] = None,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """Get webhook logs, newest first"""
    query = db.query(WebhookLog).filter(WebhookLog.owner_id == owner_id)

    if log_type:
        if log_type not in LOG_TYPES:
            raise ValidationError(f"log_type must be one of: {', '.join(LOG_TYPES)}")
        query = query.filter(WebhookLog.log_type == log_type)
    if phone:
        query = query.filter(WebhookLog.phone.ilike(f"%{phone}%"))

    return query.order_by(WebhookLog.created_at.desc(), WebhookLog.id.desc()).offset(skip).limit(limit).all()


@router.delete("/webhooks/logs/cleanup")
def cleanup_old_logs(
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """Delete webhook logs older than `days`"""
    cutoff_date = datetime.utcnow() - timedelta(days=days)

    deleted_count = db.query(WebhookLog).filter(
        WebhookLog.owner_id == owner_id,
        WebhookLog.created_at < cutoff_date
    ).delete()
    db.commit()

    return {"deleted": deleted_count, "cutoff_date": cutoff_date}
