from fastapi import APIRouter, Depends, HTTPException, status, Query, Response
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date

from src.database import get_db
from src.auth.schemas import Actor
from src.auth.dependencies import get_current_actor, require_privileged
from src.bookings.schemas import (
    AvailabilityCheckRequest, AvailabilityResult, BookingCancellationRequest,
    BookingCompletionRequest, BookingCreateRequest, BookingModificationRequest,
    BookingRejectionRequest, BookingResponse, BookingSearchFilters, BookingSearchResult,
    BookingStartRequest, BookingStatistics, BookingStatus, BookingStatusChange,
    NoShowSweepResult, QRValidationRequest, QRValidationResponse
)
from src.bookings.exceptions import BookingError, StorageError
from src.bookings.availability_service import AvailabilityChecker
from src.bookings.booking_service import BookingService
from src.bookings.notification_service import booking_notifier
from src.bookings.qr_service import QRCodeService

router = APIRouter()

def _http_error(error) -> HTTPException:
    """Translate a service failure into an HTTP error with a structured body"""
    return HTTPException(
        status_code=error.status_code,
        detail=jsonable_encoder(error.to_detail())
    )

# Availability Endpoints
@router.post("/check-availability", response_model=AvailabilityResult)
def check_availability(
    request: AvailabilityCheckRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Check whether a time window is free on a station"""
    try:
        return AvailabilityChecker(db).check_availability(
            station_id=request.station_id,
            booking_date=request.booking_date,
            start_time=request.start_time,
            end_time=request.end_time,
            exclude_booking_id=request.exclude_booking_id
        )
    except BookingError as e:
        raise _http_error(e)

# Booking Management Endpoints
@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    request: BookingCreateRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Create a pending booking"""
    try:
        return BookingService(db).create_booking(request, actor)
    except (BookingError, StorageError) as e:
        raise _http_error(e)

@router.get("/", response_model=BookingSearchResult)
def search_bookings(
    skip: int = Query(0, ge=0, description="Number of bookings to skip"),
    limit: int = Query(50, ge=1, le=100, description="Number of bookings to return"),
    user_id: Optional[str] = Query(None, description="Filter by owner"),
    station_id: Optional[int] = Query(None, description="Filter by station"),
    booking_status: Optional[BookingStatus] = Query(None, alias="status", description="Filter by status"),
    date_from: Optional[date] = Query(None, description="Earliest booking date"),
    date_to: Optional[date] = Query(None, description="Latest booking date"),
    vehicle_number: Optional[str] = Query(None, description="Search by vehicle number"),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Search bookings; EV owners only ever see their own"""
    if not actor.is_privileged:
        user_id = actor.id

    filters = BookingSearchFilters(
        user_id=user_id,
        station_id=station_id,
        status=booking_status,
        date_from=date_from,
        date_to=date_to,
        vehicle_number=vehicle_number
    )

    try:
        bookings, total = BookingService(db).search_bookings(filters, skip=skip, limit=limit)
    except StorageError as e:
        raise _http_error(e)
    page = (skip // limit) + 1

    return BookingSearchResult(
        bookings=[BookingResponse.from_orm(b) for b in bookings],
        total=total,
        page=page,
        per_page=limit
    )

@router.get("/statistics", response_model=BookingStatistics)
def get_booking_statistics(
    date_from: Optional[date] = Query(None, description="Earliest booking date"),
    date_to: Optional[date] = Query(None, description="Latest booking date"),
    actor: Actor = Depends(require_privileged),
    db: Session = Depends(get_db)
):
    """Booking counts and revenue"""
    try:
        return BookingService(db).get_booking_statistics(date_from=date_from, date_to=date_to)
    except StorageError as e:
        raise _http_error(e)

@router.get("/notifications", response_model=List[BookingStatusChange])
def get_recent_notifications(
    limit: int = Query(50, ge=1, le=500, description="Number of changes to return"),
    station_id: Optional[int] = Query(None, description="Filter by station"),
    actor: Actor = Depends(get_current_actor)
):
    """Most recent booking status changes"""
    user_id = None if actor.is_privileged else actor.id
    return booking_notifier.recent(limit=limit, station_id=station_id, user_id=user_id)

@router.post("/no-show-sweep", response_model=NoShowSweepResult)
def process_no_shows(
    actor: Actor = Depends(require_privileged),
    db: Session = Depends(get_db)
):
    """Mark overdue bookings as no-shows"""
    try:
        return BookingService(db).process_no_shows(actor)
    except (BookingError, StorageError) as e:
        raise _http_error(e)

@router.post("/validate-qr", response_model=QRValidationResponse)
def validate_qr_code(
    request: QRValidationRequest,
    actor: Actor = Depends(require_privileged),
    db: Session = Depends(get_db)
):
    """Validate a QR code scanned at a station"""
    return QRCodeService(db).validate_token(request)

@router.get("/number/{booking_number}", response_model=BookingResponse)
def get_booking_by_number(
    booking_number: str,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Get booking by its booking number"""
    try:
        booking = BookingService(db).get_booking_by_number(booking_number)
    except StorageError as e:
        raise _http_error(e)

    if not booking or not (actor.is_privileged or actor.owns(booking.user_id)):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Booking not found"
        )

    return booking

@router.get("/user/{user_id}", response_model=List[BookingResponse])
def get_user_bookings(
    user_id: str,
    limit: int = Query(50, ge=1, le=100, description="Number of bookings to return"),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Booking history of a user"""
    if not (actor.is_privileged or actor.owns(user_id)):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions"
        )

    try:
        return BookingService(db).get_user_bookings(user_id, limit=limit)
    except StorageError as e:
        raise _http_error(e)

@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Get booking details"""
    try:
        return BookingService(db).get_booking_for_actor(booking_id, actor)
    except (BookingError, StorageError) as e:
        raise _http_error(e)

@router.put("/{booking_id}", response_model=BookingResponse)
def modify_booking(
    booking_id: str,
    modification: BookingModificationRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Modify a pending booking"""
    try:
        return BookingService(db).modify_booking(booking_id, modification, actor)
    except (BookingError, StorageError) as e:
        raise _http_error(e)

# Lifecycle Endpoints
@router.post("/{booking_id}/approve", response_model=BookingResponse)
def approve_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Approve a pending booking and issue its QR code"""
    try:
        return BookingService(db).approve_booking(booking_id, actor)
    except (BookingError, StorageError) as e:
        raise _http_error(e)

@router.post("/{booking_id}/reject", response_model=BookingResponse)
def reject_booking(
    booking_id: str,
    rejection: BookingRejectionRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Reject a pending booking"""
    try:
        return BookingService(db).reject_booking(booking_id, rejection, actor)
    except (BookingError, StorageError) as e:
        raise _http_error(e)

@router.post("/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    cancellation: BookingCancellationRequest,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Cancel a booking"""
    try:
        return BookingService(db).cancel_booking(booking_id, cancellation, actor)
    except (BookingError, StorageError) as e:
        raise _http_error(e)

@router.post("/{booking_id}/start", response_model=BookingResponse)
def start_booking(
    booking_id: str,
    start: Optional[BookingStartRequest] = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Mark the charging session as started"""
    try:
        return BookingService(db).start_booking(booking_id, actor, start)
    except (BookingError, StorageError) as e:
        raise _http_error(e)

@router.post("/{booking_id}/complete", response_model=BookingResponse)
def complete_booking(
    booking_id: str,
    completion: Optional[BookingCompletionRequest] = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Complete a charging session"""
    try:
        return BookingService(db).complete_booking(booking_id, actor, completion)
    except (BookingError, StorageError) as e:
        raise _http_error(e)

@router.post("/{booking_id}/no-show", response_model=BookingResponse)
def mark_no_show(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Mark a booking as a no-show"""
    try:
        return BookingService(db).mark_no_show(booking_id, actor)
    except (BookingError, StorageError) as e:
        raise _http_error(e)

# QR Code Endpoints
@router.get("/{booking_id}/qrcode")
def get_booking_qr_code(
    booking_id: str,
    size: int = Query(300, ge=100, le=1000, description="QR code size in pixels"),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """Get the QR code image of an approved booking"""
    try:
        booking = BookingService(db).get_booking_for_actor(booking_id, actor)
    except (BookingError, StorageError) as e:
        raise _http_error(e)

    if not booking.qr_code:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active QR code for this booking"
        )

    png = QRCodeService(db).render_png(booking.qr_code, size=size)
    return Response(content=png, media_type="image/png")
