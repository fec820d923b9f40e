from pydantic import BaseModel, Field, validator
from typing import List, Optional, Dict
from datetime import datetime, date
from decimal import Decimal
from enum import Enum

from src.timeutils import to_naive_utc

class BookingStatus(str, Enum):
    """Booking status enumeration"""
    PENDING = "pending"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    NO_SHOW = "no_show"

TERMINAL_STATUSES = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
    BookingStatus.REJECTED,
    BookingStatus.NO_SHOW,
})

# Statuses whose window blocks other bookings on the same station
OCCUPYING_STATUSES = frozenset({
    BookingStatus.PENDING,
    BookingStatus.APPROVED,
    BookingStatus.IN_PROGRESS,
    BookingStatus.COMPLETED,
})

# Terminal statuses that hand the slot back to the station
SLOT_RELEASING_STATUSES = frozenset({
    BookingStatus.CANCELLED,
    BookingStatus.REJECTED,
    BookingStatus.NO_SHOW,
})

# Statuses in which an issued QR code may be presented
QR_VALID_STATUSES = frozenset({
    BookingStatus.APPROVED,
    BookingStatus.IN_PROGRESS,
})

# Availability Models
class AvailabilityCheckRequest(BaseModel):
    """Request to check whether a window is free on a station"""
    station_id: int
    booking_date: Optional[date] = None
    start_time: datetime
    end_time: datetime
    exclude_booking_id: Optional[str] = None

    @validator('start_time', 'end_time')
    def normalize_times(cls, v):
        return to_naive_utc(v)

class ConflictingBooking(BaseModel):
    """Existing booking that occupies part of the requested window"""
    booking_id: str
    booking_number: str
    user_id: str
    start_time: datetime
    end_time: datetime
    status: BookingStatus

class AvailabilityResult(BaseModel):
    """Outcome of an availability check"""
    station_id: int
    is_available: bool
    message: str
    available_slots: int
    station_status: str
    conflicts: List[ConflictingBooking] = []

# Booking Request Models
class BookingCreateRequest(BaseModel):
    """Request to book a charging window"""
    station_id: int
    user_id: Optional[str] = None  # Defaults to the acting owner
    booking_date: Optional[date] = None
    start_time: datetime
    end_time: datetime
    vehicle_number: str = Field(..., min_length=2, max_length=20)
    vehicle_type: Optional[str] = Field(None, max_length=50)
    estimated_charging_minutes: Optional[int] = Field(None, ge=1, le=1440)
    notes: Optional[str] = Field(None, max_length=500)

    @validator('start_time', 'end_time')
    def normalize_times(cls, v):
        return to_naive_utc(v)

    @validator('vehicle_number')
    def validate_vehicle_number(cls, v):
        v = v.strip().upper()
        if len(v) < 2:
            raise ValueError('Vehicle number is required')
        return v

class BookingModificationRequest(BaseModel):
    """Request to modify a pending booking"""
    booking_date: Optional[date] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    vehicle_number: Optional[str] = Field(None, min_length=2, max_length=20)
    vehicle_type: Optional[str] = Field(None, max_length=50)
    estimated_charging_minutes: Optional[int] = Field(None, ge=1, le=1440)
    notes: Optional[str] = Field(None, max_length=500)

    @validator('start_time', 'end_time')
    def normalize_times(cls, v):
        return to_naive_utc(v)

    @property
    def changes_window(self) -> bool:
        return any(v is not None for v in (self.booking_date, self.start_time, self.end_time))

class BookingCancellationRequest(BaseModel):
    """Request to cancel a booking"""
    cancellation_reason: str = Field(..., min_length=5, max_length=500)

class BookingRejectionRequest(BaseModel):
    """Request to reject a pending booking"""
    rejection_reason: str = Field(..., min_length=5, max_length=500)

class BookingStartRequest(BaseModel):
    """Marks the vehicle as plugged in"""
    actual_start_time: Optional[datetime] = None

    @validator('actual_start_time')
    def normalize_times(cls, v):
        return to_naive_utc(v)

class BookingCompletionRequest(BaseModel):
    """Charging session totals recorded at completion"""
    actual_end_time: Optional[datetime] = None
    energy_consumed_kwh: Optional[Decimal] = Field(None, ge=0)
    total_cost: Optional[Decimal] = Field(None, ge=0)

    @validator('actual_end_time')
    def normalize_times(cls, v):
        return to_naive_utc(v)

# Booking Response Models
class BookingResponse(BaseModel):
    """Booking details"""
    id: str
    booking_number: str
    user_id: str
    station_id: int
    booking_date: date
    start_time: datetime
    end_time: datetime
    status: BookingStatus
    vehicle_number: str
    vehicle_type: Optional[str] = None
    estimated_charging_minutes: Optional[int] = None
    notes: Optional[str] = None
    qr_code: Optional[str] = None
    qr_code_generated_at: Optional[datetime] = None
    created_at: datetime
    created_by: Optional[str] = None
    modified_at: Optional[datetime] = None
    modified_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    started_at: Optional[datetime] = None
    started_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    no_show_at: Optional[datetime] = None
    no_show_by: Optional[str] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    estimated_cost: Optional[Decimal] = None
    total_cost: Optional[Decimal] = None
    energy_consumed_kwh: Optional[Decimal] = None

    class Config:
        from_attributes = True

class BookingSearchFilters(BaseModel):
    """Filters for searching bookings"""
    user_id: Optional[str] = None
    station_id: Optional[int] = None
    status: Optional[BookingStatus] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    vehicle_number: Optional[str] = None

class BookingSearchResult(BaseModel):
    """Paginated booking search result"""
    bookings: List[BookingResponse]
    total: int
    page: int
    per_page: int

class BookingStatistics(BaseModel):
    """Booking counts and revenue for the back office"""
    total_bookings: int
    status_breakdown: Dict[str, int]
    total_revenue: Decimal
    total_energy_kwh: Decimal
    average_duration_minutes: float
    date_from: Optional[date] = None
    date_to: Optional[date] = None

class NoShowSweepResult(BaseModel):
    """Outcome of a no-show sweep"""
    processed: int
    marked_no_show: List[str]
    skipped: int
    swept_at: datetime

# Notification Models
class BookingStatusChange(BaseModel):
    """Transition reported to the notifier after commit"""
    booking_id: str
    booking_number: str
    station_id: int
    user_id: str
    old_status: Optional[BookingStatus] = None
    new_status: BookingStatus
    actor_id: str
    message: Optional[str] = None
    occurred_at: datetime

# QR Models
class QRValidationRequest(BaseModel):
    """QR token scanned at the station"""
    qr_code_data: str = Field(..., min_length=1)
    station_id: Optional[int] = None
    validation_timestamp: Optional[datetime] = None

    @validator('validation_timestamp')
    def normalize_times(cls, v):
        return to_naive_utc(v)

class QRValidationResponse(BaseModel):
    """Result of validating a scanned QR token"""
    is_valid: bool
    validation_status: str
    validation_message: str
    booking_id: Optional[str] = None
    booking_number: Optional[str] = None
    booking_status: Optional[BookingStatus] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    validation_timestamp: datetime
    allow_charging: bool
