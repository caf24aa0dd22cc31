import logging
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import NotFoundError, PolicyViolationError
from ..models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    Merchant,
    Table,
    TableStatus,
    WindowSchedule,
)
from ..schemas import Availability, CandidateTable, OpenWindow, SuggestedSlot
from .policy_service import BookingPolicyService

logger = logging.getLogger(__name__)


def day_of_week(value: date) -> int:
    """Sunday-based day index used by window schedules (0 = Sunday, 6 = Saturday)."""
    return (value.weekday() + 1) % 7


def parse_time(value: str) -> time:
    return datetime.strptime(value, "%H:%M").time()


class AvailabilityService:
    """Answers "where can a party of N sit on this date" for one merchant.

    A window's ``max_bookings`` caps each (table, window, date) slot on its
    own; a window is open while at least one candidate table still has room
    in it.
    """

    def __init__(self, db: Session, now: Optional[Callable[[], datetime]] = None,
                 forward_search_days: Optional[int] = None):
        self.db = db
        self.now = now or datetime.now
        self.forward_search_days = (
            settings.forward_search_days if forward_search_days is None else forward_search_days
        )
        self.policies = BookingPolicyService(db)

    def get_operable_merchant(self, merchant_id: int) -> Merchant:
        merchant = self.db.query(Merchant).filter(Merchant.id == merchant_id).first()
        if not merchant or not merchant.is_operable:
            raise NotFoundError("Merchant not found or not approved")
        return merchant

    def is_within_booking_horizon(self, merchant_id: int, booking_date: date) -> Tuple[bool, Optional[str]]:
        """Check ``booking_date`` against today and the merchant's advance-booking limit."""
        policy = self.policies.get_or_create(merchant_id)
        days_ahead = (booking_date - self.now().date()).days

        if days_ahead < 0:
            return False, "Cannot book for past dates"
        if days_ahead > policy.advance_booking_days:
            return False, f"Cannot book more than {policy.advance_booking_days} days in advance"
        return True, None

    def candidate_tables(self, merchant_id: int, party_size: int) -> List[Table]:
        # Smallest sufficient table first
        return self.db.query(Table).filter(
            Table.merchant_id == merchant_id,
            Table.status == TableStatus.AVAILABLE,
            Table.capacity >= party_size
        ).order_by(Table.capacity, Table.id).all()

    def count_active_bookings(self, table_id: int, window_id: int, booking_date: date) -> int:
        return self.db.query(Booking).filter(
            Booking.table_id == table_id,
            Booking.window_id == window_id,
            Booking.booking_date == booking_date,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES)
        ).count()

    def _slot_counts(self, merchant_id: int, booking_date: date) -> Dict[Tuple[int, int], int]:
        rows = self.db.query(
            Booking.table_id, Booking.window_id, func.count(Booking.id)
        ).filter(
            Booking.merchant_id == merchant_id,
            Booking.booking_date == booking_date,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES)
        ).group_by(Booking.table_id, Booking.window_id).all()
        return {(table_id, window_id): count for table_id, window_id, count in rows}

    def open_windows_on(self, merchant_id: int, booking_date: date, tables: List[Table]) -> List[OpenWindow]:
        """Active windows on ``booking_date`` in which some table in ``tables`` has room."""
        if not tables:
            return []

        windows = self.db.query(WindowSchedule).filter(
            WindowSchedule.merchant_id == merchant_id,
            WindowSchedule.day_of_week == day_of_week(booking_date),
            WindowSchedule.is_active == True
        ).order_by(WindowSchedule.start_time).all()
        if not windows:
            return []

        counts = self._slot_counts(merchant_id, booking_date)
        now = self.now()

        open_windows = []
        for window in windows:
            # Windows that already started today cannot be booked any more
            if booking_date == now.date() and parse_time(window.start_time) <= now.time():
                continue

            occupancy = [(counts.get((table.id, window.id), 0), table) for table in tables]
            open_table_ids = [table.id for booked, table in occupancy if booked < window.max_bookings]
            if not open_table_ids:
                continue

            least_booked = min(booked for booked, _ in occupancy)
            open_windows.append(OpenWindow(
                window_id=window.id,
                day_of_week=window.day_of_week,
                start_time=window.start_time,
                end_time=window.end_time,
                duration=window.duration,
                max_bookings=window.max_bookings,
                current_bookings=least_booked,
                available_spots=window.max_bookings - least_booked,
                open_table_ids=open_table_ids,
            ))
        return open_windows

    def find_next_opening(self, merchant_id: int, after: date, tables: List[Table]) -> Optional[SuggestedSlot]:
        """Search the days following ``after`` for the first open window.

        The search stops after ``forward_search_days`` days and never proposes
        a date beyond the merchant's advance-booking limit.
        """
        policy = self.policies.get_or_create(merchant_id)
        last_bookable = self.now().date() + timedelta(days=policy.advance_booking_days)

        for offset in range(1, self.forward_search_days + 1):
            day = after + timedelta(days=offset)
            if day > last_bookable:
                break
            windows = self.open_windows_on(merchant_id, day, tables)
            if windows:
                return SuggestedSlot(date=day, window=windows[0])
        return None

    def compute_availability(self, merchant_id: int, booking_date: date, party_size: int) -> Availability:
        """
        Open windows and candidate tables for a party on a date.

        When nothing is open on ``booking_date`` the following days are
        searched and the first opening is returned as ``suggested_next``;
        ``open_windows`` stays empty in that case.
        """
        self.get_operable_merchant(merchant_id)

        allowed, reason = self.is_within_booking_horizon(merchant_id, booking_date)
        if not allowed:
            raise PolicyViolationError(reason)

        tables = self.candidate_tables(merchant_id, party_size)
        open_windows = self.open_windows_on(merchant_id, booking_date, tables)

        suggested_next = None
        if not open_windows and tables:
            suggested_next = self.find_next_opening(merchant_id, booking_date, tables)

        logger.debug(
            "Availability merchant=%s date=%s party=%s: %d open windows, suggestion=%s",
            merchant_id, booking_date, party_size, len(open_windows),
            suggested_next.date if suggested_next else None,
        )
        return Availability(
            merchant_id=merchant_id,
            date=booking_date,
            party_size=party_size,
            open_windows=open_windows,
            candidate_tables=[
                CandidateTable(id=t.id, name=t.name, capacity=t.capacity, features=t.features or [])
                for t in tables
            ],
            suggested_next=suggested_next,
        )
