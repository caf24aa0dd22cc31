import logging
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import NotFoundError, ResourceInUseError, ValidationError
from ..models import ACTIVE_BOOKING_STATUSES, Booking, SlotCounter, WindowSchedule
from ..schemas import WindowCreate, WindowUpdate

logger = logging.getLogger(__name__)

# Fields that tie existing bookings to a start time
SCHEDULE_FIELDS = ("day_of_week", "start_time", "end_time")


def _check_time_range(start_time: str, end_time: str) -> None:
    # HH:MM strings are zero-padded, so string order is time order
    if start_time >= end_time:
        raise ValidationError(
            "Start time must be before end time",
            details=[
                {"field": "start_time", "message": "must be before end_time"},
                {"field": "end_time", "message": "must be after start_time"},
            ],
        )


class WindowScheduleService:
    """Recurring weekly booking windows of a merchant."""

    def __init__(self, db: Session):
        self.db = db

    def list_windows(self, merchant_id: int, day_of_week: Optional[int] = None) -> List[WindowSchedule]:
        query = self.db.query(WindowSchedule).filter(WindowSchedule.merchant_id == merchant_id)
        if day_of_week is not None:
            query = query.filter(WindowSchedule.day_of_week == day_of_week)
        return query.order_by(WindowSchedule.day_of_week, WindowSchedule.start_time).all()

    def get_window(self, merchant_id: int, window_id: int, for_update: bool = False) -> WindowSchedule:
        query = self.db.query(WindowSchedule).filter(
            WindowSchedule.id == window_id,
            WindowSchedule.merchant_id == merchant_id
        )
        if for_update:
            query = query.with_for_update()
        window = query.first()
        if not window:
            raise NotFoundError("Time window not found")
        return window

    def _active_bookings(self, window_id: int):
        return self.db.query(Booking).filter(
            Booking.window_id == window_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES)
        )

    def create_window(self, merchant_id: int, data: WindowCreate) -> WindowSchedule:
        _check_time_range(data.start_time, data.end_time)

        window = WindowSchedule(merchant_id=merchant_id, **data.model_dump())
        self.db.add(window)
        self.db.commit()
        self.db.refresh(window)
        logger.info(
            "Merchant %s created window %s (day %s, %s-%s, cap %s)",
            merchant_id, window.id, window.day_of_week,
            window.start_time, window.end_time, window.max_bookings,
        )
        return window

    def update_window(self, merchant_id: int, window_id: int, data: WindowUpdate) -> WindowSchedule:
        """Apply a partial update.

        While the window has pending or confirmed bookings its day and times
        are fixed, and its cap may not drop below the busiest slot.
        """
        window = self.get_window(merchant_id, window_id, for_update=True)
        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}

        _check_time_range(
            changes.get("start_time", window.start_time),
            changes.get("end_time", window.end_time),
        )
        moved = [f for f in SCHEDULE_FIELDS if f in changes and changes[f] != getattr(window, f)]
        new_cap = changes.get("max_bookings")
        shrinking = new_cap is not None and new_cap < window.max_bookings

        for field, value in changes.items():
            setattr(window, field, value)
        # Written before the checks so that concurrent bookings queue behind it
        self.db.flush()

        if moved:
            active = self._active_bookings(window.id).count()
            if active > 0:
                self.db.rollback()
                raise ResourceInUseError(
                    f"Cannot move a time window with active bookings ({active} pending or confirmed)",
                    details=[{"field": f, "message": "fixed while bookings are active"} for f in moved],
                )

        if shrinking:
            busiest = self._active_bookings(window.id).with_entities(func.count(Booking.id)) \
                .group_by(Booking.table_id, Booking.booking_date) \
                .order_by(func.count(Booking.id).desc()).first()
            if busiest and busiest[0] > new_cap:
                self.db.rollback()
                raise ResourceInUseError(
                    f"Cannot reduce max bookings to {new_cap}: a slot already holds {busiest[0]} bookings",
                    details=[{"field": "max_bookings", "message": f"must be at least {busiest[0]}"}],
                )

        self.db.commit()
        self.db.refresh(window)
        return window

    def delete_window(self, merchant_id: int, window_id: int) -> None:
        window = self.get_window(merchant_id, window_id, for_update=True)

        # Writes first so the count below sees every committed booking
        self.db.query(Booking).filter(
            Booking.window_id == window.id,
            Booking.status.notin_(ACTIVE_BOOKING_STATUSES)
        ).update({Booking.window_id: None}, synchronize_session=False)
        self.db.query(SlotCounter).filter(SlotCounter.window_id == window.id).delete(
            synchronize_session=False
        )

        active = self._active_bookings(window.id).count()
        if active > 0:
            self.db.rollback()
            raise ResourceInUseError(
                f"Cannot delete time window with active bookings ({active} pending or confirmed)"
            )

        self.db.delete(window)
        self.db.commit()
        logger.info("Merchant %s deleted window %s", merchant_id, window_id)
