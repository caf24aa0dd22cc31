import os
import tempfile
from datetime import date, datetime, timedelta

# Point the engine at a throwaway database before the package reads its settings
_db_dir = tempfile.mkdtemp(prefix="table_booking_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"

import pytest
from fastapi.testclient import TestClient

from table_booking.database import Base, SessionLocal, engine
from table_booking.main import app
from table_booking.models import (
    BookingPolicy,
    Merchant,
    MerchantStatus,
    Table,
    WindowSchedule,
)
from table_booking.services.availability_service import day_of_week

# Wednesday morning
FIXED_NOW = datetime(2026, 3, 4, 10, 0)
NEXT_MONDAY = date(2026, 3, 9)


class Clock:
    """Settable stand-in for ``datetime.now``."""

    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def set(self, now: datetime) -> None:
        self.current = now

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return Clock(FIXED_NOW)


@pytest.fixture
def client(db):
    with TestClient(app) as test_client:
        yield test_client


def make_merchant(db, status=MerchantStatus.APPROVED, name="Lakeview Gardens", **policy):
    merchant = Merchant(business_name=name, phone_number="+1-555-0100", status=status)
    db.add(merchant)
    db.flush()
    if policy:
        db.add(BookingPolicy(merchant_id=merchant.id, **policy))
    db.commit()
    db.refresh(merchant)
    return merchant


def make_table(db, merchant, capacity=4, name=None, **kwargs):
    table = Table(
        merchant_id=merchant.id,
        name=name or f"T{capacity}-{db.query(Table).count() + 1}",
        capacity=capacity,
        features=kwargs.pop("features", []),
        **kwargs
    )
    db.add(table)
    db.commit()
    db.refresh(table)
    return table


def make_window(db, merchant, day, start="18:00", end="19:00", max_bookings=1, duration=60, **kwargs):
    if isinstance(day, date):
        day = day_of_week(day)
    window = WindowSchedule(
        merchant_id=merchant.id,
        day_of_week=day,
        start_time=start,
        end_time=end,
        duration=duration,
        max_bookings=max_bookings,
        **kwargs
    )
    db.add(window)
    db.commit()
    db.refresh(window)
    return window
