import logging
from datetime import date, datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import __version__, schemas
from .auth import get_current_merchant_id, get_current_user_id, get_optional_user_id
from .config import settings
from .database import get_db, init_db
from .errors import BookingError, FatalError
from .models import BookingStatus
from .services import (
    AvailabilityService,
    BookingPolicyService,
    ReservationService,
    TableService,
    WindowScheduleService,
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Table Booking Engine",
    description="Weekly table windows, availability search and reservations for merchants",
    version=__version__
)


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    init_db()


# ---------------------------
# Error mapping
# ---------------------------

@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if isinstance(exc, FatalError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(part) for part in err["loc"] if part != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    logger.warning("%s %s validation error: %s", request.method, request.url.path, details)
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": "ValidationError", "message": "Validation error", "details": details},
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    error = FatalError("Booking store unavailable")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def _page(bookings, total: int, limit: int, offset: int) -> schemas.BookingPage:
    return schemas.BookingPage(
        items=[schemas.Booking.model_validate(b) for b in bookings],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(bookings) < total,
    )


# ---------------------------
# Merchant: tables
# ---------------------------

@app.get("/api/merchant/tables", response_model=List[schemas.Table])
async def list_tables(merchant_id: int = Depends(get_current_merchant_id), db: Session = Depends(get_db)):
    """Get the merchant's tables"""
    return TableService(db).list_tables(merchant_id)


@app.post("/api/merchant/tables", response_model=schemas.Table, status_code=201)
async def create_table(
    data: schemas.TableCreate,
    merchant_id: int = Depends(get_current_merchant_id),
    db: Session = Depends(get_db)
):
    return TableService(db).create_table(merchant_id, data)


@app.put("/api/merchant/tables/{table_id}", response_model=schemas.Table)
async def update_table(
    table_id: int,
    data: schemas.TableUpdate,
    merchant_id: int = Depends(get_current_merchant_id),
    db: Session = Depends(get_db)
):
    return TableService(db).update_table(merchant_id, table_id, data)


@app.delete("/api/merchant/tables/{table_id}")
async def delete_table(
    table_id: int,
    merchant_id: int = Depends(get_current_merchant_id),
    db: Session = Depends(get_db)
):
    TableService(db).delete_table(merchant_id, table_id)
    return {"success": True, "message": "Table deleted successfully"}


# ---------------------------
# Merchant: weekly windows
# ---------------------------

@app.get("/api/merchant/windows", response_model=List[schemas.Window])
async def list_windows(
    day_of_week: Optional[int] = Query(None, ge=0, le=6),
    merchant_id: int = Depends(get_current_merchant_id),
    db: Session = Depends(get_db)
):
    """Get the merchant's weekly windows, optionally for one day of the week"""
    return WindowScheduleService(db).list_windows(merchant_id, day_of_week)


@app.post("/api/merchant/windows", response_model=schemas.Window, status_code=201)
async def create_window(
    data: schemas.WindowCreate,
    merchant_id: int = Depends(get_current_merchant_id),
    db: Session = Depends(get_db)
):
    return WindowScheduleService(db).create_window(merchant_id, data)


@app.put("/api/merchant/windows/{window_id}", response_model=schemas.Window)
async def update_window(
    window_id: int,
    data: schemas.WindowUpdate,
    merchant_id: int = Depends(get_current_merchant_id),
    db: Session = Depends(get_db)
):
    return WindowScheduleService(db).update_window(merchant_id, window_id, data)


@app.delete("/api/merchant/windows/{window_id}")
async def delete_window(
    window_id: int,
    merchant_id: int = Depends(get_current_merchant_id),
    db: Session = Depends(get_db)
):
    WindowScheduleService(db).delete_window(merchant_id, window_id)
    return {"success": True, "message": "Time window deleted successfully"}


# ---------------------------
# Merchant: policy and bookings
# ---------------------------

@app.get("/api/merchant/policy", response_model=schemas.Policy)
async def get_policy(merchant_id: int = Depends(get_current_merchant_id), db: Session = Depends(get_db)):
    return BookingPolicyService(db).get_or_create(merchant_id)


@app.put("/api/merchant/policy", response_model=schemas.Policy)
async def update_policy(
    data: schemas.PolicyUpdate,
    merchant_id: int = Depends(get_current_merchant_id),
    db: Session = Depends(get_db)
):
    return BookingPolicyService(db).update(merchant_id, data)


@app.get("/api/merchant/bookings", response_model=schemas.BookingPage)
async def list_merchant_bookings(
    status: Optional[BookingStatus] = None,
    booking_date: Optional[date] = Query(None, alias="date"),
    limit: int = Query(settings.default_page_limit, ge=1),
    offset: int = Query(0, ge=0),
    merchant_id: int = Depends(get_current_merchant_id),
    db: Session = Depends(get_db)
):
    bookings, total, limit, offset = ReservationService(db).list_merchant_bookings(
        merchant_id, status=status, booking_date=booking_date, limit=limit, offset=offset
    )
    return _page(bookings, total, limit, offset)


@app.put("/api/merchant/bookings/{booking_id}/status", response_model=schemas.Booking)
async def set_booking_status(
    booking_id: int,
    data: schemas.BookingStatusUpdate,
    merchant_id: int = Depends(get_current_merchant_id),
    staff_id: Optional[int] = Depends(get_optional_user_id),
    db: Session = Depends(get_db)
):
    return ReservationService(db).set_status(
        merchant_id, booking_id, data.status, notes=data.notes, staff_id=staff_id
    )


@app.get("/api/merchant/reminders", response_model=List[schemas.Booking])
async def due_reminders(merchant_id: int = Depends(get_current_merchant_id), db: Session = Depends(get_db)):
    """Confirmed bookings whose reminder is due now"""
    return ReservationService(db).due_reminders(merchant_id=merchant_id)


# ---------------------------
# Public / user endpoints
# ---------------------------

@app.get("/api/merchants/{merchant_id}/availability", response_model=schemas.Availability)
async def get_availability(
    merchant_id: int,
    booking_date: date = Query(..., alias="date"),
    party_size: int = Query(1, ge=1),
    db: Session = Depends(get_db)
):
    """Open windows for a party size on a date, with the next opening if the date is full"""
    return AvailabilityService(db).compute_availability(merchant_id, booking_date, party_size)


@app.post("/api/bookings", response_model=schemas.Booking, status_code=201)
async def create_booking(
    data: schemas.BookingCreate,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    return ReservationService(db).create_booking(user_id, data)


@app.get("/api/bookings", response_model=schemas.BookingPage)
async def list_my_bookings(
    status: Optional[BookingStatus] = None,
    limit: int = Query(settings.default_page_limit, ge=1),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    bookings, total, limit, offset = ReservationService(db).list_user_bookings(
        user_id, status=status, limit=limit, offset=offset
    )
    return _page(bookings, total, limit, offset)


@app.get("/api/bookings/code/{confirmation_code}", response_model=schemas.Booking)
async def get_booking_by_code(
    confirmation_code: str,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    return ReservationService(db).get_booking_by_code(user_id, confirmation_code)


@app.put("/api/bookings/{booking_id}", response_model=schemas.Booking)
async def modify_booking(
    booking_id: int,
    data: schemas.BookingUpdate,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    return ReservationService(db).modify_booking(user_id, booking_id, data)


@app.delete("/api/bookings/{booking_id}", response_model=schemas.Booking)
async def cancel_booking(
    booking_id: int,
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """Cancel a booking"""
    return ReservationService(db).cancel_booking(user_id, booking_id)


@app.get("/api/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}
