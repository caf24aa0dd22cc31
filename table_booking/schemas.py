import re
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .models import BookingStatus, TableStatus

_TIME_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")


def normalize_time(value: str) -> str:
    """Validate ``H:MM``/``HH:MM`` and return the zero-padded ``HH:MM`` form."""
    match = _TIME_RE.match(value.strip())
    if not match:
        raise ValueError("Invalid time format, expected HH:MM")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


# ---------- Tables ----------

class TableBase(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    capacity: int = Field(ge=1, le=20)
    features: List[str] = Field(default_factory=list)

class TableCreate(TableBase):
    pass

class TableUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    capacity: Optional[int] = Field(None, ge=1, le=20)
    features: Optional[List[str]] = None
    status: Optional[TableStatus] = None

class Table(TableBase):
    id: int
    merchant_id: int
    status: TableStatus
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ---------- Weekly windows ----------

class WindowBase(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_time: str
    end_time: str
    duration: int = Field(ge=15, le=480)
    max_bookings: int = Field(1, ge=1, le=10)

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_time(cls, v: str) -> str:
        return normalize_time(v)

class WindowCreate(WindowBase):
    is_active: bool = True

class WindowUpdate(BaseModel):
    day_of_week: Optional[int] = Field(None, ge=0, le=6)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration: Optional[int] = Field(None, ge=15, le=480)
    max_bookings: Optional[int] = Field(None, ge=1, le=10)
    is_active: Optional[bool] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_time(cls, v: Optional[str]) -> Optional[str]:
        return normalize_time(v) if v is not None else v

class Window(WindowBase):
    id: int
    merchant_id: int
    is_active: bool

    class Config:
        from_attributes = True


# ---------- Booking policy ----------

class PolicyUpdate(BaseModel):
    advance_booking_days: Optional[int] = Field(None, ge=1, le=365)
    min_party_size: Optional[int] = Field(None, ge=1)
    max_party_size: Optional[int] = Field(None, ge=1, le=50)
    booking_duration: Optional[int] = Field(None, ge=15, le=480)
    requires_confirmation: Optional[bool] = None
    allows_modifications: Optional[bool] = None
    allows_cancellations: Optional[bool] = None
    cancellation_hours: Optional[int] = Field(None, ge=1, le=168)
    auto_confirm: Optional[bool] = None
    send_reminders: Optional[bool] = None
    reminder_hours: Optional[int] = Field(None, ge=1, le=24)

class Policy(BaseModel):
    merchant_id: int
    advance_booking_days: int
    min_party_size: int
    max_party_size: int
    booking_duration: int
    requires_confirmation: bool
    allows_modifications: bool
    allows_cancellations: bool
    cancellation_hours: int
    auto_confirm: bool
    send_reminders: bool
    reminder_hours: int

    class Config:
        from_attributes = True


# ---------- Bookings ----------

class BookingCreate(BaseModel):
    table_id: int = Field(gt=0)
    window_id: int = Field(gt=0)
    booking_date: date
    party_size: int = Field(ge=1)
    special_requests: Optional[str] = Field(None, max_length=500)
    contact_phone: Optional[str] = Field(None, max_length=30)
    contact_email: Optional[EmailStr] = None

class BookingUpdate(BaseModel):
    party_size: Optional[int] = Field(None, ge=1)
    special_requests: Optional[str] = Field(None, max_length=500)
    contact_phone: Optional[str] = Field(None, max_length=30)
    contact_email: Optional[EmailStr] = None

class BookingStatusUpdate(BaseModel):
    status: BookingStatus
    notes: Optional[str] = Field(None, max_length=1000)

class Booking(BaseModel):
    id: int
    merchant_id: int
    table_id: Optional[int] = None
    window_id: Optional[int] = None
    user_id: int
    booking_date: date
    party_size: int
    special_requests: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    notes: Optional[str] = None
    confirmation_code: str
    status: BookingStatus
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    created_at: Optional[datetime] = None
    table: Optional[Table] = None
    window: Optional[Window] = None

    class Config:
        from_attributes = True

class BookingPage(BaseModel):
    items: List[Booking]
    total: int
    limit: int
    offset: int
    has_more: bool


# ---------- Availability ----------

class CandidateTable(BaseModel):
    id: int
    name: str
    capacity: int
    features: List[str] = Field(default_factory=list)

class OpenWindow(BaseModel):
    window_id: int
    day_of_week: int
    start_time: str
    end_time: str
    duration: int
    max_bookings: int
    current_bookings: int
    available_spots: int
    open_table_ids: List[int]

class SuggestedSlot(BaseModel):
    date: date
    window: OpenWindow

class Availability(BaseModel):
    merchant_id: int
    date: date
    party_size: int
    open_windows: List[OpenWindow]
    candidate_tables: List[CandidateTable]
    suggested_next: Optional[SuggestedSlot] = None
