from typing import List, Optional
from datetime import datetime, date
from sqlalchemy.orm import Session
import logging

from src.models import Booking, ChargingStation
from src.stations.schemas import StationStatus
from src.stations.service import StationService
from src.timeutils import duration_minutes, intervals_overlap
from src.bookings.exceptions import InvalidWindowError, NotFoundError
from src.bookings.schemas import (
    AvailabilityResult, BookingStatus, ConflictingBooking, OCCUPYING_STATUSES
)

logger = logging.getLogger(__name__)

class AvailabilityChecker:
    """Decide whether a window on a station is free.

    Only reads; it never locks or writes, so it can be called as often as
    needed.  The lifecycle manager calls it again under the station lock
    before it commits anything.
    """

    def __init__(self, db: Session):
        self.db = db

    def check_availability(
        self,
        station_id: int,
        booking_date: Optional[date],
        start_time: datetime,
        end_time: datetime,
        exclude_booking_id: Optional[str] = None
    ) -> AvailabilityResult:
        """Check ``[start_time, end_time)`` on a station"""
        station = StationService.get_station_by_id(self.db, station_id)
        if not station:
            raise NotFoundError(f"Station {station_id} not found")

        return self.check_station(station, booking_date, start_time, end_time, exclude_booking_id)

    def check_station(
        self,
        station: ChargingStation,
        booking_date: Optional[date],
        start_time: datetime,
        end_time: datetime,
        exclude_booking_id: Optional[str] = None
    ) -> AvailabilityResult:
        """Same as ``check_availability`` for an already loaded station"""
        validate_window(station, booking_date, start_time, end_time)

        conflicts = self.find_conflicts(station.id, start_time, end_time, exclude_booking_id)

        free_slots = station.available_slots
        if exclude_booking_id:
            excluded = self.db.get(Booking, exclude_booking_id)
            # A booking being moved already holds one of the slots
            if (
                excluded is not None
                and excluded.station_id == station.id
                and BookingStatus(excluded.status) in OCCUPYING_STATUSES
            ):
                free_slots += 1

        if conflicts:
            message = f"Time slot conflicts with {len(conflicts)} existing booking(s)"
        elif station.status != StationStatus.ACTIVE.value:
            message = f"Station is not available. Current status: {station.status}"
        elif free_slots <= 0:
            message = "No available slots at this station"
        else:
            message = "Time slot is available"

        is_available = (
            not conflicts
            and free_slots > 0
            and station.status == StationStatus.ACTIVE.value
        )

        logger.debug(
            "Availability on station %s for %s - %s: %s", station.id, start_time, end_time, message
        )

        return AvailabilityResult(
            station_id=station.id,
            is_available=is_available,
            message=message,
            available_slots=station.available_slots,
            station_status=station.status,
            conflicts=conflicts
        )

    def find_conflicts(
        self,
        station_id: int,
        start_time: datetime,
        end_time: datetime,
        exclude_booking_id: Optional[str] = None
    ) -> List[ConflictingBooking]:
        """Occupying bookings on the station that overlap the window"""
        query = self.db.query(Booking).filter(
            Booking.station_id == station_id,
            Booking.status.in_([s.value for s in OCCUPYING_STATUSES]),
            Booking.start_time < end_time,
            Booking.end_time > start_time
        )

        if exclude_booking_id:
            query = query.filter(Booking.id != exclude_booking_id)

        conflicts = []
        for booking in query.order_by(Booking.start_time).all():
            # Touching windows never conflict
            if not intervals_overlap(booking.start_time, booking.end_time, start_time, end_time):
                continue
            conflicts.append(ConflictingBooking(
                booking_id=booking.id,
                booking_number=booking.booking_number,
                user_id=booking.user_id,
                start_time=booking.start_time,
                end_time=booking.end_time,
                status=BookingStatus(booking.status)
            ))

        return conflicts

def validate_window(
    station: ChargingStation,
    booking_date: Optional[date],
    start_time: datetime,
    end_time: datetime
) -> None:
    """Raise ``InvalidWindowError`` for a malformed or oversized window"""
    if start_time >= end_time:
        raise InvalidWindowError("End time must be after start time")

    max_minutes = station.max_booking_duration_minutes
    if duration_minutes(start_time, end_time) > max_minutes:
        raise InvalidWindowError(
            f"Booking duration cannot exceed {max_minutes} minutes for this station"
        )

    if booking_date is not None and booking_date != start_time.date():
        raise InvalidWindowError("Booking date must match the UTC date of the start time")
