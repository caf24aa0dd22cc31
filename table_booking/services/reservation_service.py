import logging
import secrets
import string
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import (
    BookingError,
    CapacityExceededError,
    FatalError,
    ForbiddenError,
    InvalidPartySizeError,
    InvalidReferenceError,
    NotFoundError,
    PolicyViolationError,
    StateConflictError,
)
from ..models import (
    DEFAULT_REMINDER_HOURS,
    TERMINAL_BOOKING_STATUSES,
    Booking,
    BookingPolicy,
    BookingStatus,
    SlotCounter,
    Table,
    TableStatus,
    WindowSchedule,
    can_transition,
)
from ..schemas import BookingCreate, BookingUpdate
from .availability_service import AvailabilityService, day_of_week, parse_time
from .policy_service import BookingPolicyService

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_confirmation_code(length: int = 6) -> str:
    """Short random upper-case alphanumeric code, e.g. ``K7Q2ZD``."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


class ReservationService:
    """
    Booking lifecycle: creation, modification, cancellation and merchant
    status transitions.

    Capacity is enforced through ``SlotCounter`` rows. Creating a booking
    increments the slot's counter with a conditional UPDATE
    (``booked < max_bookings``) and inserts the booking in the same
    transaction, so two writers can never both take the last seat. Moving a
    booking into a terminal state gives its seat back.
    """

    def __init__(self, db: Session, now: Optional[Callable[[], datetime]] = None,
                 code_length: Optional[int] = None, code_attempts: Optional[int] = None,
                 code_generator: Callable[[int], str] = generate_confirmation_code):
        self.db = db
        self.now = now or datetime.now
        self.code_length = code_length or settings.confirmation_code_length
        self.code_attempts = code_attempts or settings.confirmation_code_attempts
        self.code_generator = code_generator
        self.availability = AvailabilityService(db, now=self.now)
        self.policies = BookingPolicyService(db)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_booking(self, user_id: int, data: BookingCreate) -> Booking:
        """Reserve ``data.table_id`` in ``data.window_id`` on ``data.booking_date``."""
        table = self.db.query(Table).filter(Table.id == data.table_id).first()
        window = self.db.query(WindowSchedule).filter(WindowSchedule.id == data.window_id).first()
        if not table or not window:
            raise NotFoundError("Table or time window not found")

        self._check_references(table, window, data.booking_date)

        allowed, reason = self.availability.is_within_booking_horizon(table.merchant_id, data.booking_date)
        if not allowed:
            raise PolicyViolationError(reason)
        if datetime.combine(data.booking_date, parse_time(window.start_time)) <= self.now():
            raise PolicyViolationError("This time window has already started")

        booked = self.availability.count_active_bookings(table.id, window.id, data.booking_date)
        if booked >= window.max_bookings:
            raise CapacityExceededError("Time slot is fully booked")

        policy = self.policies.get_or_create(table.merchant_id)
        self._check_party_size(policy, table, data.party_size)

        return self._insert_booking(user_id, table, window, policy, data)

    def _check_references(self, table: Table, window: WindowSchedule, booking_date: date) -> None:
        if table.merchant_id != window.merchant_id:
            raise InvalidReferenceError("Table and time window do not belong to the same merchant")
        if not table.merchant or not table.merchant.is_operable:
            raise InvalidReferenceError("Merchant is not approved for bookings")
        if table.status != TableStatus.AVAILABLE:
            raise InvalidReferenceError("Table is not available")
        if not window.is_active:
            raise InvalidReferenceError("Time window is not active")
        if window.day_of_week != day_of_week(booking_date):
            raise InvalidReferenceError("Time window does not run on the requested date")

    def _check_party_size(self, policy: BookingPolicy, table: Table, party_size: int) -> None:
        if party_size < policy.min_party_size:
            raise InvalidPartySizeError(f"Minimum party size is {policy.min_party_size}")
        if party_size > policy.max_party_size:
            raise InvalidPartySizeError(f"Maximum party size is {policy.max_party_size}")
        if party_size > table.capacity:
            raise InvalidPartySizeError(
                f"Party size exceeds table capacity ({table.capacity} seats)"
            )

    def _insert_booking(self, user_id: int, table: Table, window: WindowSchedule,
                        policy: BookingPolicy, data: BookingCreate) -> Booking:
        # Plain values survive the rollbacks below without reloading
        merchant_id, table_id, window_id = table.merchant_id, table.id, window.id
        auto_confirm = policy.auto_confirm
        last_error = None

        for attempt in range(1, self.code_attempts + 1):
            code = self.code_generator(self.code_length)
            try:
                self._reserve_slot(table_id, window_id, data.booking_date, data.party_size)
                now = self.now()
                booking = Booking(
                    merchant_id=merchant_id,
                    table_id=table_id,
                    window_id=window_id,
                    user_id=user_id,
                    booking_date=data.booking_date,
                    party_size=data.party_size,
                    special_requests=data.special_requests,
                    contact_phone=data.contact_phone,
                    contact_email=data.contact_email,
                    confirmation_code=code,
                    status=BookingStatus.CONFIRMED if auto_confirm else BookingStatus.PENDING,
                    confirmed_at=now if auto_confirm else None,
                )
                self.db.add(booking)
                self.db.commit()
            except IntegrityError as exc:
                # Confirmation code collision or a concurrent first booking of the slot
                self.db.rollback()
                last_error = exc.orig
                logger.warning(
                    "Booking insert conflict (attempt %d/%d): %s",
                    attempt, self.code_attempts, exc.orig,
                )
                continue
            except BookingError:
                self.db.rollback()
                raise
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.error("Error creating booking: %s", exc, exc_info=True)
                raise FatalError("The booking could not be stored") from exc

            self.db.refresh(booking)
            logger.info(
                "Booking %s (%s) created: table=%s window=%s date=%s party=%s status=%s",
                booking.id, booking.confirmation_code, table_id, window_id,
                booking.booking_date, booking.party_size, booking.status.value,
            )
            return booking

        logger.error(
            "Gave up creating booking after %d conflicting attempts, last error: %s",
            self.code_attempts, last_error,
        )
        raise FatalError("The booking could not be stored because of repeated conflicts, please retry")

    def _reserve_slot(self, table_id: int, window_id: int, booking_date: date, party_size: int) -> None:
        """Take one seat in the slot or raise.

        The counter update runs first: it takes the write lock on SQLite, so
        the table and window read back afterwards reflect any merchant edit
        or deletion committed since the pre-checks.
        """
        cap = self.db.query(WindowSchedule.max_bookings).filter(
            WindowSchedule.id == window_id
        ).scalar_subquery()
        matched = self.db.query(SlotCounter).filter(
            SlotCounter.table_id == table_id,
            SlotCounter.window_id == window_id,
            SlotCounter.booking_date == booking_date,
            SlotCounter.booked < cap
        ).update({SlotCounter.booked: SlotCounter.booked + 1}, synchronize_session=False)

        table, window = self._lock_references(table_id, window_id)
        self._check_references(table, window, booking_date)
        if party_size > table.capacity:
            raise InvalidPartySizeError(
                f"Party size exceeds table capacity ({table.capacity} seats)"
            )
        if matched:
            return
        max_bookings = window.max_bookings

        counter = self.db.query(SlotCounter.id).filter(
            SlotCounter.table_id == table_id,
            SlotCounter.window_id == window_id,
            SlotCounter.booking_date == booking_date
        ).first()
        if counter:
            raise CapacityExceededError("Time slot is fully booked")

        # First seat of this slot. A concurrent creator trips the unique
        # constraint at flush and the caller retries against its row.
        booked = self.availability.count_active_bookings(table_id, window_id, booking_date)
        if booked >= max_bookings:
            raise CapacityExceededError("Time slot is fully booked")
        self.db.add(SlotCounter(
            table_id=table_id,
            window_id=window_id,
            booking_date=booking_date,
            booked=booked + 1,
        ))
        self.db.flush()

    def _lock_references(self, table_id: int, window_id: int) -> Tuple[Table, WindowSchedule]:
        # Shared row locks where the backend has them; merchant edits take FOR UPDATE
        table = self.db.query(Table).filter(Table.id == table_id) \
            .populate_existing().with_for_update(read=True).first()
        window = self.db.query(WindowSchedule).filter(WindowSchedule.id == window_id) \
            .populate_existing().with_for_update(read=True).first()
        if not table or not window:
            raise InvalidReferenceError("Table or time window was removed")
        return table, window

    def _release_slot(self, booking: Booking) -> None:
        if booking.table_id is None or booking.window_id is None:
            return
        self.db.query(SlotCounter).filter(
            SlotCounter.table_id == booking.table_id,
            SlotCounter.window_id == booking.window_id,
            SlotCounter.booking_date == booking.booking_date,
            SlotCounter.booked > 0
        ).update({SlotCounter.booked: SlotCounter.booked - 1}, synchronize_session=False)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(self, booking: Booking, target: BookingStatus,
                    actor_id: Optional[int] = None, notes: Optional[str] = None) -> Booking:
        current = booking.status
        if not can_transition(current, target):
            raise StateConflictError(
                f"Cannot change booking status from {current.value} to {target.value}"
            )

        now = self.now()
        values = {Booking.status: target}
        if target == BookingStatus.CONFIRMED and booking.confirmed_at is None:
            values[Booking.confirmed_at] = now
        if target == BookingStatus.CANCELLED:
            values[Booking.cancelled_at] = now
            values[Booking.cancelled_by] = actor_id
        if notes is not None:
            values[Booking.notes] = notes

        # Compare-and-set on the status so a seat is released at most once
        matched = self.db.query(Booking).filter(
            Booking.id == booking.id,
            Booking.status == current
        ).update(values, synchronize_session=False)
        if not matched:
            self.db.rollback()
            raise StateConflictError("Booking was changed by another request, please retry")

        if target in TERMINAL_BOOKING_STATUSES:
            self._release_slot(booking)
        self.db.commit()
        self.db.refresh(booking)
        logger.info("Booking %s: %s -> %s", booking.id, current.value, target.value)
        return booking

    def booking_start(self, booking: Booking) -> datetime:
        """Start of the booked window on the booking date (midnight if the window is gone)."""
        start = parse_time(booking.window.start_time) if booking.window else datetime.min.time()
        return datetime.combine(booking.booking_date, start)

    def _get_owned_booking(self, user_id: int, booking_id: int) -> Booking:
        booking = self.db.query(Booking).filter(Booking.id == booking_id).first()
        if not booking:
            raise NotFoundError("Booking not found")
        if booking.user_id != user_id:
            raise ForbiddenError("Access denied")
        return booking

    def modify_booking(self, user_id: int, booking_id: int, data: BookingUpdate) -> Booking:
        """Change party size, requests or contact details. Table, window and date are fixed."""
        booking = self._get_owned_booking(user_id, booking_id)

        if booking.status == BookingStatus.CANCELLED:
            raise StateConflictError("Cannot modify cancelled booking")
        if booking.is_terminal:
            raise StateConflictError(f"Cannot modify a {booking.status.value} booking")
        if booking.booking_date < self.now().date():
            raise StateConflictError("Cannot modify a booking whose date has passed")

        policy = self.policies.get_or_create(booking.merchant_id)
        if not policy.allows_modifications:
            raise PolicyViolationError("Modifications are not allowed for this merchant")

        changes = data.model_dump(exclude_unset=True)
        if changes.get("party_size") is None:
            changes.pop("party_size", None)
        else:
            self._check_party_size(policy, booking.table, changes["party_size"])

        for field, value in changes.items():
            setattr(booking, field, value)
        self.db.commit()
        self.db.refresh(booking)
        logger.info("Booking %s modified: %s", booking.id, sorted(changes))
        return booking

    def cancel_booking(self, user_id: int, booking_id: int) -> Booking:
        booking = self._get_owned_booking(user_id, booking_id)

        if booking.status == BookingStatus.CANCELLED:
            raise StateConflictError("Booking is already cancelled")
        if booking.is_terminal:
            raise StateConflictError(f"Cannot cancel a {booking.status.value} booking")

        policy = self.policies.get_or_create(booking.merchant_id)
        if not policy.allows_cancellations:
            raise PolicyViolationError("Cancellations are not allowed for this merchant")

        if self.booking_start(booking) - self.now() < timedelta(hours=policy.cancellation_hours):
            raise StateConflictError(
                f"Cancellation must be made at least {policy.cancellation_hours} hours "
                f"before the booking time"
            )

        return self._transition(booking, BookingStatus.CANCELLED, actor_id=user_id)

    def set_status(self, merchant_id: int, booking_id: int, new_status: BookingStatus,
                   notes: Optional[str] = None, staff_id: Optional[int] = None) -> Booking:
        """Merchant-side status change, restricted to the booking state machine."""
        booking = self.db.query(Booking).filter(
            Booking.id == booking_id,
            Booking.merchant_id == merchant_id
        ).first()
        if not booking:
            raise NotFoundError("Booking not found")
        return self._transition(booking, new_status, actor_id=staff_id, notes=notes)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _page_bounds(self, limit: Optional[int], offset: Optional[int]) -> Tuple[int, int]:
        limit = limit or settings.default_page_limit
        limit = max(1, min(limit, settings.max_page_limit))
        return limit, max(0, offset or 0)

    def list_user_bookings(self, user_id: int, status: Optional[BookingStatus] = None,
                           limit: Optional[int] = None, offset: Optional[int] = None
                           ) -> Tuple[List[Booking], int, int, int]:
        """Return ``(bookings, total, limit, offset)`` for the user's own bookings."""
        limit, offset = self._page_bounds(limit, offset)
        query = self.db.query(Booking).filter(Booking.user_id == user_id)
        if status:
            query = query.filter(Booking.status == status)

        total = query.count()
        bookings = query.order_by(Booking.booking_date.desc(), Booking.id.desc()) \
            .offset(offset).limit(limit).all()
        return bookings, total, limit, offset

    def list_merchant_bookings(self, merchant_id: int, status: Optional[BookingStatus] = None,
                               booking_date: Optional[date] = None,
                               limit: Optional[int] = None, offset: Optional[int] = None
                               ) -> Tuple[List[Booking], int, int, int]:
        limit, offset = self._page_bounds(limit, offset)
        query = self.db.query(Booking).filter(Booking.merchant_id == merchant_id)
        if status:
            query = query.filter(Booking.status == status)
        if booking_date:
            query = query.filter(Booking.booking_date == booking_date)

        total = query.count()
        bookings = query.order_by(Booking.booking_date.desc(), Booking.id.desc()) \
            .offset(offset).limit(limit).all()
        return bookings, total, limit, offset

    def get_booking_by_code(self, user_id: int, confirmation_code: str) -> Booking:
        booking = self.db.query(Booking).filter(
            Booking.confirmation_code == confirmation_code.strip().upper()
        ).first()
        if not booking:
            raise NotFoundError("Booking not found")
        if booking.user_id != user_id:
            raise ForbiddenError("Access denied")
        return booking

    def due_reminders(self, merchant_id: Optional[int] = None,
                      now: Optional[datetime] = None) -> List[Booking]:
        """Confirmed bookings starting within their merchant's reminder lead time.

        Only computes the list; delivering reminders happens elsewhere.
        """
        now = now or self.now()
        query = self.db.query(Booking, BookingPolicy.reminder_hours).outerjoin(
            BookingPolicy, BookingPolicy.merchant_id == Booking.merchant_id
        ).filter(
            Booking.status == BookingStatus.CONFIRMED,
            BookingPolicy.send_reminders.isnot(False),
            Booking.booking_date >= now.date(),
            # reminder lead time is capped at 24 hours
            Booking.booking_date <= (now + timedelta(hours=24)).date()
        )
        if merchant_id is not None:
            query = query.filter(Booking.merchant_id == merchant_id)

        due = []
        for booking, reminder_hours in query.all():
            lead = timedelta(hours=reminder_hours or DEFAULT_REMINDER_HOURS)
            if now < self.booking_start(booking) <= now + lead:
                due.append(booking)
        return sorted(due, key=self.booking_start)
