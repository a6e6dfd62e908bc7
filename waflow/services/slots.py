# waflow/services/slots.py
"""
Business calendar and slot availability.

All business-local arithmetic uses a fixed UTC offset from configuration,
never the host timezone. Stored instants are naive UTC datetimes.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from waflow.core.config import (
    APPOINTMENT_DURATION_MINUTES,
    BOOKING_SLOT_MINUTES,
    BOOKING_WINDOW_DAYS,
    BUSINESS_CLOSE_HOUR,
    BUSINESS_OPEN_HOUR,
    BUSINESS_UTC_OFFSET,
)
from waflow.core.errors import ConfigurationError, ValidationError
from waflow.models.appointment import ACTIVE_STATUSES, Appointment

log = logging.getLogger("waflow.slots")

_OFFSET_RE = re.compile(r"^(?:UTC)?([+-])(\d{1,2}):?(\d{2})?$")


def parse_utc_offset(value: str) -> timezone:
    """'+05:30' / '-0400' / 'UTC+5' -> fixed timezone"""
    value = (value or "").strip()
    if value.upper() in ("Z", "UTC", "+00:00"):
        return timezone.utc
    match = _OFFSET_RE.match(value)
    if not match:
        raise ConfigurationError(f"Invalid BUSINESS_UTC_OFFSET: {value!r}")
    sign, hours, minutes = match.groups()
    delta = timedelta(hours=int(hours), minutes=int(minutes or 0))
    return timezone(-delta if sign == "-" else delta)


def time_label(hour: int, minute: int) -> str:
    """12-hour clock label: 9:30 AM, 12:00 PM"""
    display_hour = hour % 12 or 12
    return f"{display_hour}:{minute:02d} {'PM' if hour >= 12 else 'AM'}"


def short_date_label(day: date) -> str:
    """Mon, Oct 19"""
    return f"{day:%a}, {day:%b} {day.day}"


def long_date_label(day: date) -> str:
    """Monday, October 19, 2026"""
    return f"{day:%A}, {day:%B} {day.day}, {day.year}"


def parse_date_id(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date: {value!r}")


def parse_slot_id(value: str) -> datetime:
    """'YYYY-MM-DDTHH:MM' -> naive business-local datetime"""
    try:
        return datetime.strptime(value[:16], "%Y-%m-%dT%H:%M")
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid time slot: {value!r}")


@dataclass
class BusyInterval:
    """An existing booking, as a naive UTC start and a length in minutes"""
    start: datetime
    duration_minutes: int

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)


class BusinessCalendar:
    """Opening hours, slot grid and booking window in one fixed UTC offset."""

    def __init__(
        self,
        utc_offset: str = BUSINESS_UTC_OFFSET,
        open_hour: int = BUSINESS_OPEN_HOUR,
        close_hour: int = BUSINESS_CLOSE_HOUR,
        slot_minutes: int = BOOKING_SLOT_MINUTES,
        window_days: int = BOOKING_WINDOW_DAYS,
        duration_minutes: int = APPOINTMENT_DURATION_MINUTES,
    ):
        if not 0 <= open_hour < close_hour <= 24:
            raise ConfigurationError(f"Invalid business hours {open_hour}-{close_hour}")
        if slot_minutes <= 0:
            raise ConfigurationError("Slot size must be positive")
        self.tz = parse_utc_offset(utc_offset)
        self.open_hour = open_hour
        self.close_hour = close_hour
        self.slot_minutes = slot_minutes
        self.window_days = window_days
        self.duration_minutes = duration_minutes

    # ────────────────────────────────────────────
    # Conversions
    # ────────────────────────────────────────────

    def now_local(self, now: Optional[datetime] = None) -> datetime:
        """Current business-local time as a naive datetime. `now` is naive UTC or aware."""
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.tz).replace(tzinfo=None)

    def local_to_utc(self, local: datetime) -> datetime:
        return local.replace(tzinfo=self.tz).astimezone(timezone.utc).replace(tzinfo=None)

    def utc_to_local(self, utc: datetime) -> datetime:
        return utc.replace(tzinfo=timezone.utc).astimezone(self.tz).replace(tzinfo=None)

    def day_bounds_utc(self, day: date) -> Tuple[datetime, datetime]:
        """UTC instants of local midnight and the following midnight"""
        start = self.local_to_utc(datetime.combine(day, time.min))
        return start, start + timedelta(days=1)

    def parse_local_datetime(self, value: Union[str, date, datetime]) -> datetime:
        """
        Interpret a manual appointment time and return naive UTC.

        Naive values are business-local, aware values are converted exactly,
        and a bare date means the opening hour.
        """
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, date):
            parsed = datetime.combine(value, time(self.open_hour, 0))
        else:
            text = (value or "").strip()
            if not text:
                raise ValidationError("date is required")
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                if len(text) == 10:
                    parsed = datetime.combine(date.fromisoformat(text), time(self.open_hour, 0))
                else:
                    parsed = datetime.fromisoformat(text)
            except ValueError:
                raise ValidationError(f"Invalid date: {value!r}")

        if parsed.tzinfo is not None:
            return parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return self.local_to_utc(parsed)

    # ────────────────────────────────────────────
    # Labels
    # ────────────────────────────────────────────

    def next_days(self, now: Optional[datetime] = None) -> List[Dict[str, str]]:
        """The booking window starting at today's local date"""
        today = self.now_local(now).date()
        days = []
        for offset in range(self.window_days):
            day = today + timedelta(days=offset)
            days.append({"id": day.isoformat(), "title": short_date_label(day)})
        return days

    # ────────────────────────────────────────────
    # Slots
    # ────────────────────────────────────────────

    def slot_starts(self, day: date) -> List[datetime]:
        """Local slot start times from opening to closing"""
        current = datetime.combine(day, time(self.open_hour, 0))
        closing = datetime.combine(day, time.min) + timedelta(hours=self.close_hour)
        step = timedelta(minutes=self.slot_minutes)
        starts = []
        while current + step <= closing:
            starts.append(current)
            current += step
        return starts

    def available_slots(
        self,
        day: date,
        busy: Iterable[BusyInterval],
        now: Optional[datetime] = None,
    ) -> List[Dict[str, str]]:
        """
        Slots on `day` that do not overlap any busy interval and start
        strictly after the current local time. Past days have none.
        """
        busy = list(busy)
        now_local = self.now_local(now)
        step = timedelta(minutes=self.slot_minutes)
        available = []

        for local_start in self.slot_starts(day):
            utc_start = self.local_to_utc(local_start)
            utc_end = utc_start + step
            if any(utc_start < b.end and b.start < utc_end for b in busy):
                continue
            if local_start <= now_local:
                continue
            available.append({
                "id": local_start.strftime("%Y-%m-%dT%H:%M"),
                "title": time_label(local_start.hour, local_start.minute),
            })
        return available


def busy_intervals(db: Session, calendar: BusinessCalendar, day: date) -> List[BusyInterval]:
    """
    Active appointments that can touch `day`.

    The window starts one day early so a booking that runs over local midnight
    still blocks the first slots of the next day.
    """
    day_start, day_end = calendar.day_bounds_utc(day)
    rows = db.query(Appointment).filter(
        Appointment.status.in_(ACTIVE_STATUSES),
        Appointment.scheduled_at >= day_start - timedelta(days=1),
        Appointment.scheduled_at < day_end,
    ).all()
    return [
        BusyInterval(start=row.scheduled_at, duration_minutes=row.duration_minutes or calendar.duration_minutes)
        for row in rows
    ]


def find_available_slots(
    db: Session,
    day: date,
    calendar: Optional[BusinessCalendar] = None,
    now: Optional[datetime] = None,
) -> List[Dict[str, str]]:
    calendar = calendar or BusinessCalendar()
    busy = busy_intervals(db, calendar, day)
    slots = calendar.available_slots(day, busy, now=now)
    log.info(f"📅 {day.isoformat()}: {len(busy)} active bookings, {len(slots)} slots free")
    return slots
