from .availability_service import AvailabilityService
from .policy_service import BookingPolicyService
from .reservation_service import ReservationService, generate_confirmation_code
from .table_service import TableService
from .window_service import WindowScheduleService

__all__ = [
    "AvailabilityService",
    "BookingPolicyService",
    "ReservationService",
    "TableService",
    "WindowScheduleService",
    "generate_confirmation_code",
]
