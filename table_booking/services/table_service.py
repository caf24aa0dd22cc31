import logging
from typing import List

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..errors import NotFoundError, ResourceInUseError
from ..models import ACTIVE_BOOKING_STATUSES, Booking, SlotCounter, Table
from ..schemas import TableCreate, TableUpdate

logger = logging.getLogger(__name__)


class TableService:
    """Per-merchant inventory of bookable tables.

    Every lookup is scoped to the calling merchant; a table owned by another
    merchant is reported as missing rather than forbidden.
    """

    def __init__(self, db: Session):
        self.db = db

    def list_tables(self, merchant_id: int) -> List[Table]:
        return self.db.query(Table).filter(
            Table.merchant_id == merchant_id
        ).order_by(Table.name, Table.id).all()

    def get_table(self, merchant_id: int, table_id: int, for_update: bool = False) -> Table:
        query = self.db.query(Table).filter(
            Table.id == table_id,
            Table.merchant_id == merchant_id
        )
        if for_update:
            # Booking creation holds a shared lock on the row while it inserts
            query = query.with_for_update()
        table = query.first()
        if not table:
            raise NotFoundError("Table not found")
        return table

    def _active_bookings(self):
        return self.db.query(Booking).filter(Booking.status.in_(ACTIVE_BOOKING_STATUSES))

    def create_table(self, merchant_id: int, data: TableCreate) -> Table:
        table = Table(
            merchant_id=merchant_id,
            name=data.name,
            capacity=data.capacity,
            features=list(data.features),
        )
        self.db.add(table)
        self.db.commit()
        self.db.refresh(table)
        logger.info("Merchant %s created table %s (%s seats)", merchant_id, table.id, table.capacity)
        return table

    def update_table(self, merchant_id: int, table_id: int, data: TableUpdate) -> Table:
        """Apply a partial update.

        Capacity may not drop below the largest party holding a pending or
        confirmed booking at the table.
        """
        table = self.get_table(merchant_id, table_id, for_update=True)
        # null means "leave unchanged"; none of these columns are nullable
        changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
        shrinking = "capacity" in changes and changes["capacity"] < table.capacity

        for field, value in changes.items():
            setattr(table, field, value)
        # Written before the check so that concurrent bookings queue behind it
        self.db.flush()

        if shrinking:
            largest = self._active_bookings().filter(Booking.table_id == table.id) \
                .with_entities(func.max(Booking.party_size)).scalar()
            if largest and largest > changes["capacity"]:
                self.db.rollback()
                raise ResourceInUseError(
                    f"Cannot reduce capacity to {changes['capacity']}: "
                    f"an active booking has a party of {largest}",
                    details=[{"field": "capacity", "message": f"must be at least {largest}"}],
                )

        self.db.commit()
        self.db.refresh(table)
        return table

    def delete_table(self, merchant_id: int, table_id: int) -> None:
        table = self.get_table(merchant_id, table_id, for_update=True)

        # Finished bookings keep their history without the table reference.
        # These writes come first so the count below sees every committed booking.
        self.db.query(Booking).filter(
            Booking.table_id == table.id,
            Booking.status.notin_(ACTIVE_BOOKING_STATUSES)
        ).update({Booking.table_id: None}, synchronize_session=False)
        self.db.query(SlotCounter).filter(SlotCounter.table_id == table.id).delete(
            synchronize_session=False
        )

        active = self._active_bookings().filter(Booking.table_id == table.id).count()
        if active > 0:
            self.db.rollback()
            raise ResourceInUseError(
                f"Cannot delete table with active bookings ({active} pending or confirmed)"
            )

        self.db.delete(table)
        self.db.commit()
        logger.info("Merchant %s deleted table %s", merchant_id, table_id)
