import uvicorn

from table_booking.config import settings
from table_booking.init_db import init_database

if __name__ == "__main__":
    print("🚀 Starting Table Booking Engine...")

    init_database()

    # Start the server
    uvicorn.run(
        "table_booking.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower()
    )
