from typing import Callable, Dict, List, Optional, Tuple
from datetime import datetime, date, timedelta
from contextlib import contextmanager
from sqlalchemy.orm import Session
from sqlalchemy.exc import OperationalError
from sqlalchemy import inspect, update, func
from decimal import Decimal
import logging
import secrets
import uuid

from src.config import settings
from src.models import Booking, ChargingStation
from src.auth.schemas import Actor
from src.stations.schemas import StationStatus
from src.stations.service import StationService
from src.timeutils import utcnow, duration_minutes, hours_until
from src.bookings.availability_service import AvailabilityChecker, validate_window
from src.bookings.exceptions import (
    AlreadyInTerminalStateError, BookingError, CapacityExhaustedError, CutoffExceededError,
    InvalidTransitionError, NotFoundError, OutOfBookingWindowError, SlotConflictError,
    StationUnavailableError, StorageError, UnauthorizedError
)
from src.bookings.locking import StationLockRegistry
from src.bookings.notification_service import BookingNotifier, booking_notifier
from src.bookings.qr_service import QRCodeService
from src.bookings.schemas import (
    BookingCancellationRequest, BookingCompletionRequest, BookingCreateRequest,
    BookingModificationRequest, BookingRejectionRequest, BookingSearchFilters,
    BookingStartRequest, BookingStatistics, BookingStatus, BookingStatusChange,
    NoShowSweepResult, SLOT_RELEASING_STATUSES, TERMINAL_STATUSES
)

logger = logging.getLogger(__name__)

# Shared by every BookingService in the process
station_locks = StationLockRegistry(timeout=settings.STATION_LOCK_TIMEOUT_SECONDS)

ALLOWED_TRANSITIONS: Dict[BookingStatus, frozenset] = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.APPROVED,
        BookingStatus.REJECTED,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    }),
    BookingStatus.APPROVED: frozenset({
        BookingStatus.IN_PROGRESS,
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    }),
    BookingStatus.IN_PROGRESS: frozenset({
        BookingStatus.COMPLETED,
    }),
}

class BookingService:
    """Lifecycle manager for charging station bookings.

    Every operation that touches station capacity or a booking's status runs
    under the station's lock and inside a single transaction: the guard and
    the write are committed together or rolled back together.  Status changes
    are compare-and-set on the status that was read, so a transition can only
    happen once even if two processes race on the same booking.  The notifier
    is told about a transition only after it has been committed.
    """

    def __init__(
        self,
        db: Session,
        notifier: Optional[BookingNotifier] = None,
        qr_service: Optional[QRCodeService] = None,
        locks: Optional[StationLockRegistry] = None
    ):
        self.db = db
        self.availability = AvailabilityChecker(db)
        self.notifier = notifier or booking_notifier
        self.qr_service = qr_service or QRCodeService(db)
        self.locks = locks or station_locks

    # ------------------------------------------------------------------
    # Creation and modification
    # ------------------------------------------------------------------

    def create_booking(
        self,
        request: BookingCreateRequest,
        actor: Actor,
        now: Optional[datetime] = None
    ) -> Booking:
        """Reserve a window on a station; the booking starts out pending"""
        now = now or utcnow()
        user_id = self._resolve_owner(request.user_id, actor)

        station = StationService.get_station_by_id(self.db, request.station_id)
        if not station:
            raise NotFoundError(f"Station {request.station_id} not found")

        validate_window(station, request.booking_date, request.start_time, request.end_time)
        self._check_booking_window(request.start_time, now)

        with self._unit_of_work(station.id):
            station = StationService.get_station_by_id(self.db, station.id, for_update=True)
            self._ensure_bookable(station, request.start_time, request.end_time)

            if not StationService.adjust_available_slots(self.db, station.id, -1):
                raise CapacityExhaustedError("No available slots at this station")

            booking = Booking(
                id=str(uuid.uuid4()),
                booking_number=self._generate_booking_number(now),
                user_id=user_id,
                station_id=station.id,
                booking_date=request.start_time.date(),
                start_time=request.start_time,
                end_time=request.end_time,
                status=BookingStatus.PENDING.value,
                vehicle_number=request.vehicle_number,
                vehicle_type=request.vehicle_type,
                estimated_charging_minutes=request.estimated_charging_minutes,
                notes=request.notes,
                estimated_cost=self.calculate_estimated_cost(
                    station, request.start_time, request.end_time
                ),
                created_at=now,
                created_by=actor.id
            )
            self.db.add(booking)

        self._refresh_committed(booking)
        logger.info(
            "Created booking %s (%s) on station %s for user %s",
            booking.booking_number, booking.id, booking.station_id, booking.user_id
        )

        self._notify(booking, None, BookingStatus.PENDING, actor, "Booking created", now)
        return booking

    def modify_booking(
        self,
        booking_id: str,
        modification: BookingModificationRequest,
        actor: Actor,
        now: Optional[datetime] = None
    ) -> Booking:
        """Move or edit a pending booking.

        The booking keeps the slot it already holds, so capacity is not
        touched; the new window is checked against every other booking.
        """
        now = now or utcnow()
        booking = self._get_for_actor(booking_id, actor)

        with self._unit_of_work(booking.station_id):
            booking = self._reload(booking_id)
            status = BookingStatus(booking.status)

            if status in TERMINAL_STATUSES:
                raise AlreadyInTerminalStateError(
                    f"Booking is already {status.value} and cannot be modified"
                )
            if status != BookingStatus.PENDING:
                raise InvalidTransitionError(
                    f"Only pending bookings can be modified. Current status: {status.value}"
                )

            self._check_cutoff(booking, actor, now, "modify")

            if modification.changes_window:
                start_time = modification.start_time or booking.start_time
                end_time = modification.end_time or booking.end_time

                station = StationService.get_station_by_id(
                    self.db, booking.station_id, for_update=True
                )
                validate_window(station, modification.booking_date, start_time, end_time)
                self._check_booking_window(start_time, now)

                conflicts = self.availability.find_conflicts(
                    station.id, start_time, end_time, exclude_booking_id=booking.id
                )
                if conflicts:
                    raise SlotConflictError(
                        f"Time slot conflicts with {len(conflicts)} existing booking(s)",
                        conflicts
                    )
                if station.status != StationStatus.ACTIVE.value:
                    raise StationUnavailableError(
                        f"Station is not available. Current status: {station.status}"
                    )

                booking.start_time = start_time
                booking.end_time = end_time
                booking.booking_date = start_time.date()
                booking.estimated_cost = self.calculate_estimated_cost(station, start_time, end_time)

            for field in ("vehicle_number", "vehicle_type", "estimated_charging_minutes", "notes"):
                value = getattr(modification, field)
                if value is not None:
                    setattr(booking, field, value.strip().upper() if field == "vehicle_number" else value)

            booking.modified_at = now
            booking.modified_by = actor.id

        self._refresh_committed(booking)
        logger.info("Modified booking %s by %s", booking.id, actor.id)

        self._notify(booking, status, status, actor, "Booking modified", now)
        return booking

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def approve_booking(self, booking_id: str, actor: Actor, now: Optional[datetime] = None) -> Booking:
        """Approve a pending booking and issue its QR code"""
        now = now or utcnow()

        def apply(booking: Booking) -> None:
            booking.approved_at = now
            booking.approved_by = actor.id
            booking.qr_code = self.qr_service.generate_token(booking, issued_at=now)
            booking.qr_code_generated_at = now

        return self._transition(
            booking_id, BookingStatus.APPROVED, actor, now, apply,
            privileged_only=True, message="Booking approved"
        )

    def reject_booking(
        self,
        booking_id: str,
        rejection: BookingRejectionRequest,
        actor: Actor,
        now: Optional[datetime] = None
    ) -> Booking:
        """Reject a pending booking, handing its slot back"""
        now = now or utcnow()

        def apply(booking: Booking) -> None:
            booking.rejected_at = now
            booking.rejected_by = actor.id
            booking.rejection_reason = rejection.rejection_reason

        return self._transition(
            booking_id, BookingStatus.REJECTED, actor, now, apply,
            privileged_only=True,
            message=f"Booking rejected: {rejection.rejection_reason}"
        )

    def cancel_booking(
        self,
        booking_id: str,
        cancellation: BookingCancellationRequest,
        actor: Actor,
        now: Optional[datetime] = None
    ) -> Booking:
        """Cancel a pending or approved booking.

        Owners may only cancel while more than the cutoff remains before the
        start; privileged actors may cancel at any time.
        """
        now = now or utcnow()

        def apply(booking: Booking) -> None:
            booking.cancelled_at = now
            booking.cancelled_by = actor.id
            booking.cancellation_reason = cancellation.cancellation_reason

        return self._transition(
            booking_id, BookingStatus.CANCELLED, actor, now, apply,
            cutoff_action="cancel",
            message=f"Booking cancelled: {cancellation.cancellation_reason}"
        )

    def start_booking(
        self,
        booking_id: str,
        actor: Actor,
        start: Optional[BookingStartRequest] = None,
        now: Optional[datetime] = None
    ) -> Booking:
        now = now or utcnow()
        actual_start = start.actual_start_time if start and start.actual_start_time else now

        def apply(booking: Booking) -> None:
            booking.started_at = now
            booking.started_by = actor.id
            booking.actual_start_time = actual_start

        return self._transition(
            booking_id, BookingStatus.IN_PROGRESS, actor, now, apply,
            privileged_only=True, message="Charging started"
        )

    def complete_booking(
        self,
        booking_id: str,
        actor: Actor,
        completion: Optional[BookingCompletionRequest] = None,
        now: Optional[datetime] = None
    ) -> Booking:
        """Close a charging session and record its totals.

        The slot stays decremented: it was used for the booked period.
        Without an explicit total the cost is energy times the station price,
        falling back to the estimate made at creation.
        """
        now = now or utcnow()
        completion = completion or BookingCompletionRequest()

        def apply(booking: Booking) -> None:
            booking.completed_at = now
            booking.completed_by = actor.id
            booking.actual_end_time = completion.actual_end_time or now
            if booking.actual_start_time is None:
                booking.actual_start_time = booking.start_time

            if completion.energy_consumed_kwh is not None:
                booking.energy_consumed_kwh = completion.energy_consumed_kwh

            if completion.total_cost is not None:
                booking.total_cost = completion.total_cost
            elif completion.energy_consumed_kwh is not None:
                price = Decimal(str(booking.station.price_per_kwh))
                booking.total_cost = (completion.energy_consumed_kwh * price).quantize(Decimal("0.01"))
            else:
                booking.total_cost = booking.estimated_cost

        return self._transition(
            booking_id, BookingStatus.COMPLETED, actor, now, apply,
            privileged_only=True, message="Booking completed"
        )

    def mark_no_show(self, booking_id: str, actor: Actor, now: Optional[datetime] = None) -> Booking:
        """Record that the vehicle never arrived, releasing the slot"""
        now = now or utcnow()

        def apply(booking: Booking) -> None:
            deadline = booking.start_time + timedelta(minutes=settings.NO_SHOW_GRACE_MINUTES)
            if now < deadline:
                raise InvalidTransitionError(
                    f"Booking cannot be marked as no-show before {deadline.isoformat()}"
                )
            booking.no_show_at = now
            booking.no_show_by = actor.id

        return self._transition(
            booking_id, BookingStatus.NO_SHOW, actor, now, apply,
            privileged_only=True, message="Vehicle did not arrive"
        )

    def process_no_shows(self, actor: Actor, now: Optional[datetime] = None) -> NoShowSweepResult:
        """Mark every overdue pending or approved booking as a no-show.

        Each booking goes through ``mark_no_show`` on its own, so one failure
        does not stop the sweep.
        """
        if not actor.is_privileged:
            raise UnauthorizedError("Only operators or the system can process no-shows")

        now = now or utcnow()
        cutoff = now - timedelta(minutes=settings.NO_SHOW_GRACE_MINUTES)

        candidate_ids = [
            booking_id for (booking_id,) in self.db.query(Booking.id).filter(
                Booking.status.in_([BookingStatus.PENDING.value, BookingStatus.APPROVED.value]),
                Booking.start_time <= cutoff
            ).order_by(Booking.start_time).all()
        ]

        marked = []
        skipped = 0
        for booking_id in candidate_ids:
            try:
                self.mark_no_show(booking_id, actor, now=now)
                marked.append(booking_id)
            except BookingError as e:
                # Another request moved it first
                logger.info("Skipped no-show for booking %s: %s", booking_id, e)
                skipped += 1

        logger.info("No-show sweep marked %d of %d bookings", len(marked), len(candidate_ids))

        return NoShowSweepResult(
            processed=len(candidate_ids),
            marked_no_show=marked,
            skipped=skipped,
            swept_at=now
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._storage_read():
            return self.db.query(Booking).filter(Booking.id == booking_id).first()

    def get_booking_by_number(self, booking_number: str) -> Optional[Booking]:
        with self._storage_read():
            return self.db.query(Booking).filter(
                Booking.booking_number == booking_number.strip().upper()
            ).first()

    def get_booking_for_actor(self, booking_id: str, actor: Actor) -> Booking:
        """Booking visible to ``actor``; owners only see their own"""
        with self._storage_read():
            return self._get_for_actor(booking_id, actor)

    def get_user_bookings(self, user_id: str, limit: int = 50) -> List[Booking]:
        """Booking history of a user, newest first"""
        with self._storage_read():
            return self.db.query(Booking).filter(
                Booking.user_id == user_id
            ).order_by(Booking.created_at.desc()).limit(limit).all()

    def search_bookings(
        self,
        filters: BookingSearchFilters,
        skip: int = 0,
        limit: int = 50
    ) -> Tuple[List[Booking], int]:
        """Search bookings with filters"""
        query = self.db.query(Booking)

        if filters.user_id:
            query = query.filter(Booking.user_id == filters.user_id)

        if filters.station_id is not None:
            query = query.filter(Booking.station_id == filters.station_id)

        if filters.status:
            query = query.filter(Booking.status == filters.status.value)

        if filters.date_from:
            query = query.filter(Booking.booking_date >= filters.date_from)

        if filters.date_to:
            query = query.filter(Booking.booking_date <= filters.date_to)

        if filters.vehicle_number:
            query = query.filter(
                Booking.vehicle_number.ilike(f"%{filters.vehicle_number.strip()}%")
            )

        with self._storage_read():
            total = query.count()
            bookings = query.order_by(Booking.start_time.desc()).offset(skip).limit(limit).all()

        return bookings, total

    def get_booking_statistics(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None
    ) -> BookingStatistics:
        """Counts per status, completed revenue and energy, average duration"""
        query = self.db.query(Booking)

        if date_from:
            query = query.filter(Booking.booking_date >= date_from)

        if date_to:
            query = query.filter(Booking.booking_date <= date_to)

        with self._storage_read():
            bookings = query.all()

        status_breakdown = {status.value: 0 for status in BookingStatus}
        for booking in bookings:
            status_breakdown[booking.status] = status_breakdown.get(booking.status, 0) + 1

        completed = [b for b in bookings if b.status == BookingStatus.COMPLETED.value]
        total_revenue = sum((Decimal(str(b.total_cost)) for b in completed if b.total_cost is not None), Decimal("0"))
        total_energy = sum(
            (Decimal(str(b.energy_consumed_kwh)) for b in completed if b.energy_consumed_kwh is not None),
            Decimal("0")
        )

        average_duration = (
            sum(duration_minutes(b.start_time, b.end_time) for b in bookings) / len(bookings)
            if bookings else 0.0
        )

        return BookingStatistics(
            total_bookings=len(bookings),
            status_breakdown=status_breakdown,
            total_revenue=total_revenue,
            total_energy_kwh=total_energy,
            average_duration_minutes=round(average_duration, 2),
            date_from=date_from,
            date_to=date_to
        )

    @staticmethod
    def calculate_estimated_cost(
        station: ChargingStation,
        start_time: datetime,
        end_time: datetime
    ) -> Decimal:
        """hours x power (kW) x efficiency x price per kWh"""
        hours = Decimal(str(duration_minutes(start_time, end_time))) / Decimal("60")
        energy = hours * Decimal(str(station.power_rating_kw)) * Decimal(str(settings.CHARGING_EFFICIENCY))
        return (energy * Decimal(str(station.price_per_kwh))).quantize(Decimal("0.01"))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self,
        booking_id: str,
        target: BookingStatus,
        actor: Actor,
        now: datetime,
        apply: Callable[[Booking], None],
        privileged_only: bool = False,
        cutoff_action: Optional[str] = None,
        message: Optional[str] = None
    ) -> Booking:
        booking = self._get_for_actor(booking_id, actor)

        if privileged_only and not actor.is_privileged:
            raise UnauthorizedError(
                f"Only station operators or back office staff can mark a booking {target.value}"
            )

        with self._unit_of_work(booking.station_id):
            booking = self._reload(booking_id)
            old_status = BookingStatus(booking.status)
            self._ensure_transition(old_status, target)

            if cutoff_action:
                self._check_cutoff(booking, actor, now, cutoff_action)

            apply(booking)

            self._compare_and_set_status(booking, old_status, target)

            if target in TERMINAL_STATUSES:
                booking.qr_code = None

            if target in SLOT_RELEASING_STATUSES:
                if not StationService.adjust_available_slots(self.db, booking.station_id, 1):
                    logger.error(
                        "Station %s already at full capacity while releasing booking %s",
                        booking.station_id, booking.id
                    )

            booking.modified_at = now
            booking.modified_by = actor.id

        self._refresh_committed(booking)
        logger.info(
            "Booking %s moved %s -> %s by %s",
            booking.id, old_status.value, target.value, actor.id
        )

        self._notify(booking, old_status, target, actor, message, now)
        return booking

    def _compare_and_set_status(
        self,
        booking: Booking,
        expected: BookingStatus,
        target: BookingStatus
    ) -> None:
        result = self.db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == expected.value)
            .values(status=target.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AlreadyInTerminalStateError(
                f"Booking {booking.id} was changed by another request"
            )
        booking.status = target.value

    @staticmethod
    def _ensure_transition(current: BookingStatus, target: BookingStatus) -> None:
        if current in TERMINAL_STATUSES:
            raise AlreadyInTerminalStateError(f"Booking is already {current.value}")

        if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
            raise InvalidTransitionError(
                f"Cannot move booking from {current.value} to {target.value}"
            )

    @staticmethod
    def _check_cutoff(booking: Booking, actor: Actor, now: datetime, action: str) -> None:
        if actor.is_privileged:
            return

        remaining = hours_until(booking.start_time, now)
        if remaining <= settings.MODIFICATION_CUTOFF_HOURS:
            raise CutoffExceededError(
                f"EV owners cannot {action} a booking within "
                f"{settings.MODIFICATION_CUTOFF_HOURS} hours of its start time"
            )

    @staticmethod
    def _check_booking_window(start_time: datetime, now: datetime) -> None:
        if start_time <= now:
            raise OutOfBookingWindowError("Booking must start in the future")

        latest = now + timedelta(days=settings.BOOKING_WINDOW_DAYS)
        if start_time > latest:
            raise OutOfBookingWindowError(
                f"Bookings can only be made up to {settings.BOOKING_WINDOW_DAYS} days in advance"
            )

    def _ensure_bookable(self, station: ChargingStation, start_time: datetime, end_time: datetime) -> None:
        conflicts = self.availability.find_conflicts(station.id, start_time, end_time)
        if conflicts:
            raise SlotConflictError(
                f"Time slot conflicts with {len(conflicts)} existing booking(s)", conflicts
            )

        if station.available_slots <= 0:
            raise CapacityExhaustedError("No available slots at this station")

        if station.status != StationStatus.ACTIVE.value:
            raise StationUnavailableError(
                f"Station is not available. Current status: {station.status}"
            )

    @staticmethod
    def _resolve_owner(requested_user_id: Optional[str], actor: Actor) -> str:
        if requested_user_id is None or requested_user_id == actor.id:
            return actor.id

        if not actor.is_privileged:
            raise UnauthorizedError("EV owners can only create bookings for themselves")

        return requested_user_id

    def _get_for_actor(self, booking_id: str, actor: Actor) -> Booking:
        booking = self.get_booking(booking_id)
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")

        if not actor.is_privileged and not actor.owns(booking.user_id):
            raise UnauthorizedError("You can only access your own bookings")

        return booking

    def _reload(self, booking_id: str) -> Booking:
        booking = self.db.query(Booking).filter(
            Booking.id == booking_id
        ).populate_existing().with_for_update().first()
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    @contextmanager
    def _unit_of_work(self, station_id: int):
        """Station lock plus one transaction; commits on success"""
        with self.locks.hold(station_id):
            try:
                yield
                self.db.commit()
            except OperationalError as e:
                self.db.rollback()
                logger.warning("Storage failure on station %s: %s", station_id, e)
                raise StorageError("Storage is temporarily unavailable, retry the request") from e
            except Exception:
                self.db.rollback()
                raise

    @contextmanager
    def _storage_read(self):
        """Reads outside a unit of work; storage failures become ``StorageError``"""
        try:
            yield
        except OperationalError as e:
            self.db.rollback()
            logger.warning("Storage failure while reading bookings: %s", e)
            raise StorageError("Storage is temporarily unavailable, retry the request") from e

    def _refresh_committed(self, booking: Booking) -> None:
        try:
            self.db.refresh(booking)
        except OperationalError as e:
            self.db.rollback()
            # Attributes are expired after commit, the identity key is not
            booking_id = inspect(booking).identity[0]
            logger.error("Booking %s was committed but could not be re-read: %s", booking_id, e)
            raise StorageError(
                f"Booking {booking_id} was saved but could not be re-read, fetch it again",
                retryable=False
            ) from e

    def _notify(
        self,
        booking: Booking,
        old_status: Optional[BookingStatus],
        new_status: BookingStatus,
        actor: Actor,
        message: Optional[str],
        now: datetime
    ) -> None:
        self.notifier.notify(BookingStatusChange(
            booking_id=booking.id,
            booking_number=booking.booking_number,
            station_id=booking.station_id,
            user_id=booking.user_id,
            old_status=old_status,
            new_status=new_status,
            actor_id=actor.id,
            message=message,
            occurred_at=now
        ))

    def _generate_booking_number(self, now: datetime) -> str:
        """BK-YYYYMMDD-XXXXXX, unique among existing bookings"""
        while True:
            number = f"BK-{now.strftime('%Y%m%d')}-{secrets.token_hex(3).upper()}"
            exists = self.db.query(func.count(Booking.id)).filter(
                Booking.booking_number == number
            ).scalar()
            if not exists:
                return number
