"""
Charging Station Booking Module

This module provides the booking core of the EV charging service. It includes:

- Availability checking of a time window on a station
- Booking lifecycle management (create, modify, approve, reject, cancel,
  start, complete, no-show)
- Station capacity accounting, serialized per station
- QR code issuance, rendering and validation for approved bookings
- Notification of committed status changes

Key Components:
- availability_service.py: Window validation and conflict detection
- booking_service.py: Lifecycle state machine and capacity accounting
- locking.py: Per-station lock registry
- qr_service.py: Signed QR tokens and PNG rendering
- notification_service.py: Fire-and-forget status change notifier
- exceptions.py: Typed booking failures with stable error codes
- router.py: FastAPI endpoints for bookings
- schemas.py: Pydantic models for booking data structures
"""

from .router import router
from .availability_service import AvailabilityChecker
from .booking_service import BookingService
from .qr_service import QRCodeService
from .notification_service import BookingNotifier, booking_notifier
from .schemas import (
    AvailabilityResult, BookingCreateRequest, BookingModificationRequest,
    BookingCancellationRequest, BookingRejectionRequest, BookingResponse,
    BookingStatus, BookingStatusChange, QRValidationRequest, QRValidationResponse
)

__all__ = [
    "router",
    "AvailabilityChecker",
    "BookingService",
    "QRCodeService",
    "BookingNotifier",
    "booking_notifier",
    "AvailabilityResult",
    "BookingCreateRequest",
    "BookingModificationRequest",
    "BookingCancellationRequest",
    "BookingRejectionRequest",
    "BookingResponse",
    "BookingStatus",
    "BookingStatusChange",
    "QRValidationRequest",
    "QRValidationResponse"
]
