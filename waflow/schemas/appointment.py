# waflow/schemas/appointment.py
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import Literal, Optional
from datetime import datetime

AppointmentStatus = Literal["scheduled", "confirmed", "cancelled", "completed"]


class AppointmentCreate(BaseModel):
    """Manual booking. `date` is business-local unless it carries an offset."""
    model_config = ConfigDict(populate_by_name=True)

    contact_wa_id: str = Field(..., min_length=1, validation_alias=AliasChoices("contact_wa_id", "contactWaId"))
    customer_name: str = Field(..., min_length=1, validation_alias=AliasChoices("customer_name", "customerName"))
    customer_phone: Optional[str] = Field("", validation_alias=AliasChoices("customer_phone", "customerPhone"))
    date: str = Field(..., min_length=1)
    duration_minutes: Optional[int] = Field(
        None, gt=0, le=24 * 60, validation_alias=AliasChoices("duration_minutes", "duration"),
    )
    notes: Optional[str] = ""


class AppointmentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_name: Optional[str] = Field(None, min_length=1, validation_alias=AliasChoices("customer_name", "customerName"))
    customer_phone: Optional[str] = Field(None, validation_alias=AliasChoices("customer_phone", "customerPhone"))
    date: Optional[str] = None
    duration_minutes: Optional[int] = Field(
        None, gt=0, le=24 * 60, validation_alias=AliasChoices("duration_minutes", "duration"),
    )
    status: Optional[AppointmentStatus] = None
    notes: Optional[str] = None


class AppointmentResponse(BaseModel):
    id: int
    owner_id: Optional[str]
    contact_wa_id: str
    customer_name: str
    customer_phone: Optional[str]
    scheduled_at: datetime
    local_time: Optional[str] = None
    duration_minutes: int
    status: str
    flow_token: Optional[str]
    notes: Optional[str]
    reminder_sent: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
