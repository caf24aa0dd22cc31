import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


class MerchantStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    SUSPENDED = "SUSPENDED"


class TableStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    UNAVAILABLE = "UNAVAILABLE"


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"
    CANCELLED = "CANCELLED"


# Lead time used for merchants that have no policy row yet
DEFAULT_REMINDER_HOURS = 2

# Bookings in these states hold a seat in their (table, window, date) slot
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)

TERMINAL_BOOKING_STATUSES = frozenset(
    {BookingStatus.COMPLETED, BookingStatus.NO_SHOW, BookingStatus.CANCELLED}
)

BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.COMPLETED, BookingStatus.NO_SHOW, BookingStatus.CANCELLED}
    ),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    """Return True if the booking state machine allows ``current -> target``."""
    return target in BOOKING_TRANSITIONS[current]


class Merchant(Base):
    """A venue accepting table bookings. Curated outside the booking engine."""
    __tablename__ = "merchants"

    id = Column(Integer, primary_key=True, index=True)
    business_name = Column(String(150), nullable=False)
    phone_number = Column(String(30))
    status = Column(Enum(MerchantStatus, name="merchant_status"), nullable=False,
                    default=MerchantStatus.PENDING)
    created_at = Column(DateTime, default=datetime.utcnow)

    tables = relationship("Table", back_populates="merchant")
    windows = relationship("WindowSchedule", back_populates="merchant")
    policy = relationship("BookingPolicy", back_populates="merchant", uselist=False)

    @property
    def is_operable(self) -> bool:
        return self.status == MerchantStatus.APPROVED


class Table(Base):
    """Bookable physical table"""
    __tablename__ = "tables"
    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_tables_capacity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    capacity = Column(Integer, nullable=False)
    features = Column(JSON, nullable=False, default=list)
    status = Column(Enum(TableStatus, name="table_status"), nullable=False,
                    default=TableStatus.AVAILABLE)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    merchant = relationship("Merchant", back_populates="tables")
    bookings = relationship("Booking", back_populates="table")


class WindowSchedule(Base):
    """Recurring weekly booking window. Day 0 is Sunday."""
    __tablename__ = "window_schedules"
    __table_args__ = (
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_windows_day_of_week"),
        CheckConstraint("start_time < end_time", name="ck_windows_start_before_end"),
        CheckConstraint("max_bookings > 0", name="ck_windows_max_bookings_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(String(5), nullable=False)  # HH:MM format
    end_time = Column(String(5), nullable=False)  # HH:MM format
    duration = Column(Integer, nullable=False)  # Duration in minutes
    max_bookings = Column(Integer, nullable=False, default=1)  # per table, per date
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    merchant = relationship("Merchant", back_populates="windows")
    bookings = relationship("Booking", back_populates="window")


class BookingPolicy(Base):
    """Per-merchant booking rules, created lazily with defaults"""
    __tablename__ = "booking_policies"

    id = Column(Integer, primary_key=True, index=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), nullable=False, unique=True)
    advance_booking_days = Column(Integer, nullable=False, default=30)
    min_party_size = Column(Integer, nullable=False, default=1)
    max_party_size = Column(Integer, nullable=False, default=12)
    booking_duration = Column(Integer, nullable=False, default=120)
    requires_confirmation = Column(Boolean, nullable=False, default=True)
    allows_modifications = Column(Boolean, nullable=False, default=True)
    allows_cancellations = Column(Boolean, nullable=False, default=True)
    cancellation_hours = Column(Integer, nullable=False, default=2)
    auto_confirm = Column(Boolean, nullable=False, default=False)
    send_reminders = Column(Boolean, nullable=False, default=True)
    reminder_hours = Column(Integer, nullable=False, default=DEFAULT_REMINDER_HOURS)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    merchant = relationship("Merchant", back_populates="policy")


class Booking(Base):
    """A reservation of one table in one window on one date"""
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), nullable=False, index=True)
    # Nullable so finished bookings survive deletion of their table or window
    table_id = Column(Integer, ForeignKey("tables.id", ondelete="SET NULL"), index=True)
    window_id = Column(Integer, ForeignKey("window_schedules.id", ondelete="SET NULL"), index=True)
    user_id = Column(Integer, nullable=False, index=True)
    booking_date = Column(Date, nullable=False, index=True)
    party_size = Column(Integer, nullable=False)
    special_requests = Column(Text)
    contact_phone = Column(String(30))
    contact_email = Column(String(150))
    notes = Column(Text)  # merchant-side notes
    confirmation_code = Column(String(16), nullable=False, unique=True, index=True)
    status = Column(Enum(BookingStatus, name="booking_status"), nullable=False,
                    default=BookingStatus.PENDING, index=True)
    confirmed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    cancelled_by = Column(Integer)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    merchant = relationship("Merchant")
    table = relationship("Table", back_populates="bookings")
    window = relationship("WindowSchedule", back_populates="bookings")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BOOKING_STATUSES


class SlotCounter(Base):
    """Number of active bookings held by one (table, window, date) slot.

    Booking creation increments ``booked`` with a conditional UPDATE guarded
    by the window's cap, so the count-then-insert sequence cannot overshoot
    under concurrent writers. Terminal transitions decrement it.
    """
    __tablename__ = "slot_counters"
    __table_args__ = (
        UniqueConstraint("table_id", "window_id", "booking_date", name="uq_slot_counters_slot"),
        CheckConstraint("booked >= 0", name="ck_slot_counters_booked_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    table_id = Column(Integer, ForeignKey("tables.id", ondelete="CASCADE"), nullable=False)
    window_id = Column(Integer, ForeignKey("window_schedules.id", ondelete="CASCADE"), nullable=False)
    booking_date = Column(Date, nullable=False)
    booked = Column(Integer, nullable=False, default=0)
