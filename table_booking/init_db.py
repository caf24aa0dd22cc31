import logging

from .database import SessionLocal, init_db
from .models import BookingPolicy, Merchant, MerchantStatus, Table, WindowSchedule

logger = logging.getLogger(__name__)


def init_database():
    """Create the schema and a demo merchant with tables, weekly windows and a policy"""
    init_db()

    db = SessionLocal()

    try:
        # Check if data already exists
        if db.query(Merchant).first():
            logger.info("Database already initialized. Skipping...")
            return

        merchant = Merchant(
            business_name="Lakeview Gardens",
            phone_number="+1-555-0100",
            status=MerchantStatus.APPROVED,
        )
        db.add(merchant)
        db.flush()

        tables = [
            Table(merchant_id=merchant.id, name="Window 1", capacity=2, features=["window"]),
            Table(merchant_id=merchant.id, name="Window 2", capacity=2, features=["window"]),
            Table(merchant_id=merchant.id, name="Terrace 1", capacity=4, features=["outdoor", "lake view"]),
            Table(merchant_id=merchant.id, name="Terrace 2", capacity=4, features=["outdoor", "lake view"]),
            Table(merchant_id=merchant.id, name="Booth", capacity=6, features=["booth", "quiet"]),
            Table(merchant_id=merchant.id, name="Long Table", capacity=12, features=["private"]),
        ]
        db.add_all(tables)

        # Lunch and two dinner sittings Tuesday (2) through Sunday (0); closed Mondays
        windows = []
        for day in (0, 2, 3, 4, 5, 6):
            windows.extend([
                WindowSchedule(merchant_id=merchant.id, day_of_week=day, start_time="12:00",
                               end_time="14:00", duration=90, max_bookings=1),
                WindowSchedule(merchant_id=merchant.id, day_of_week=day, start_time="18:00",
                               end_time="20:00", duration=120, max_bookings=1),
                WindowSchedule(merchant_id=merchant.id, day_of_week=day, start_time="20:00",
                               end_time="22:00", duration=120, max_bookings=1),
            ])
        db.add_all(windows)

        db.add(BookingPolicy(merchant_id=merchant.id, advance_booking_days=60, max_party_size=12))
        db.commit()

        logger.info(
            "Database initialized: merchant %s with %d tables and %d weekly windows",
            merchant.id, len(tables), len(windows),
        )

    except Exception:
        logger.exception("Error initializing database")
        db.rollback()
        raise
    finally:
        db.close()

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_database()
