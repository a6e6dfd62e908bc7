# waflow/api/v1/appointments.py
"""Appointment API endpoints"""
import logging
from datetime import timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import or_
from sqlalchemy.orm import Session

from waflow.api.deps import get_event_bus, get_owner_id
from waflow.core.errors import NotFoundError
from waflow.db.session import get_db
from waflow.models.appointment import Appointment
from waflow.schemas.appointment import (
    AppointmentCreate,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentUpdate,
)
from waflow.services.slots import BusinessCalendar, parse_date_id

log = logging.getLogger("waflow.api.appointments")

router = APIRouter()


def get_calendar() -> BusinessCalendar:
    return BusinessCalendar()


def appointment_to_response(appointment: Appointment, calendar: BusinessCalendar) -> Dict[str, Any]:
    data = {c.name: getattr(appointment, c.name) for c in Appointment.__table__.columns}
    local = appointment.scheduled_at.replace(tzinfo=timezone.utc).astimezone(calendar.tz)
    data["local_time"] = local.isoformat(timespec="minutes")
    return data


def _visible(db: Session, owner_id: str):
    """Owner's appointments plus bookings that arrived without an owner"""
    return db.query(Appointment).filter(
        or_(Appointment.owner_id == owner_id, Appointment.owner_id.is_(None))
    )


def _get_appointment(db: Session, owner_id: str, appointment_id: int) -> Appointment:
    appointment = _visible(db, owner_id).filter(Appointment.id == appointment_id).first()
    if not appointment:
        raise NotFoundError("Appointment not found")
    return appointment


@router.get("", response_model=List[AppointmentResponse])
def list_appointments(
    status: Optional[AppointmentStatus] = Query(None, description="Filter by status"),
    start_date: Optional[str] = Query(None, description="First local day (YYYY-MM-DD)"),
    end_date: Optional[str] = Query(None, description="Last local day (YYYY-MM-DD), inclusive"),
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id),
    calendar: BusinessCalendar = Depends(get_calendar)
):
    """List appointments ordered by start time"""
    query = _visible(db, owner_id)

    if status:
        query = query.filter(Appointment.status == status)
    if start_date:
        start, _ = calendar.day_bounds_utc(parse_date_id(start_date))
        query = query.filter(Appointment.scheduled_at >= start)
    if end_date:
        _, end = calendar.day_bounds_utc(parse_date_id(end_date))
        query = query.filter(Appointment.scheduled_at < end)

    appointments = query.order_by(Appointment.scheduled_at.asc()).all()
    return [appointment_to_response(a, calendar) for a in appointments]


@router.post("", response_model=AppointmentResponse, status_code=201)
def create_appointment(
    data: AppointmentCreate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id),
    calendar: BusinessCalendar = Depends(get_calendar),
    bus=Depends(get_event_bus)
):
    """
    Book an appointment manually

    - **date**: business-local `YYYY-MM-DDTHH:MM`, a bare date (opening hour),
      or any ISO timestamp with an offset
    - **duration**: minutes, defaults to the configured appointment length
    """
    appointment = Appointment(
        owner_id=owner_id,
        contact_wa_id=data.contact_wa_id,
        customer_name=data.customer_name,
        customer_phone=data.customer_phone or data.contact_wa_id,
        scheduled_at=calendar.parse_local_datetime(data.date),
        duration_minutes=data.duration_minutes or calendar.duration_minutes,
        status="scheduled",
        notes=data.notes or "",
    )
    db.add(appointment)
    db.commit()
    db.refresh(appointment)

    log.info(f"✅ Manual appointment {appointment.id} for {appointment.customer_name} at {appointment.scheduled_at} UTC")
    if bus is not None:
        bus.publish(owner_id, "appointment_created", {
            "id": appointment.id,
            "customer_name": appointment.customer_name,
            "scheduled_at": appointment.scheduled_at.isoformat(),
        })
    return appointment_to_response(appointment, calendar)


@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id),
    calendar: BusinessCalendar = Depends(get_calendar)
):
    return appointment_to_response(_get_appointment(db, owner_id, appointment_id), calendar)


@router.put("/{appointment_id}", response_model=AppointmentResponse)
def update_appointment(
    appointment_id: int,
    data: AppointmentUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id),
    calendar: BusinessCalendar = Depends(get_calendar)
):
    appointment = _get_appointment(db, owner_id, appointment_id)

    if data.customer_name is not None:
        appointment.customer_name = data.customer_name
    if data.customer_phone is not None:
        appointment.customer_phone = data.customer_phone
    if data.date is not None:
        appointment.scheduled_at = calendar.parse_local_datetime(data.date)
    if data.duration_minutes is not None:
        appointment.duration_minutes = data.duration_minutes
    if data.status is not None:
        appointment.status = data.status
    if data.notes is not None:
        appointment.notes = data.notes

    db.commit()
    db.refresh(appointment)
    return appointment_to_response(appointment, calendar)


@router.delete("/{appointment_id}")
def cancel_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_owner_id)
):
    """Cancel (the row is kept with status 'cancelled' and its slot frees up)"""
    appointment = _get_appointment(db, owner_id, appointment_id)
    appointment.status = "cancelled"
    db.commit()

    log.info(f"🗑️ Appointment {appointment_id} cancelled")
    return {"message": "Appointment cancelled", "id": appointment_id}
