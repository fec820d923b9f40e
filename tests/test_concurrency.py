import threading
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from conftest import NOW, OPERATOR, OWNER
from src.bookings.booking_service import BookingService
from src.bookings.exceptions import BookingError, CapacityExhaustedError, SlotConflictError, StorageError
from src.bookings.locking import StationLockRegistry
from src.bookings.notification_service import BookingNotifier
from src.bookings.schemas import BookingCancellationRequest, BookingCreateRequest
from src.database import Base
from src.models import Booking, ChargingStation

THREADS = 8
SLOTS = 3


@pytest.fixture
def file_session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def _make_station(session_factory, total_slots):
    session = session_factory()
    try:
        station = ChargingStation(
            name="Busy Station",
            location="Colombo",
            connector_type="CCS",
            power_rating_kw=Decimal("50.00"),
            price_per_kwh=Decimal("10.00"),
            total_slots=total_slots,
            available_slots=total_slots,
            status="active",
            max_booking_duration_minutes=240,
        )
        session.add(station)
        session.commit()
        return station.id
    finally:
        session.close()


def _run_in_threads(count, target):
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(index):
        barrier.wait()
        results[index] = target(index)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    return results


def test_concurrent_creations_never_exceed_capacity(file_session_factory):
    station_id = _make_station(file_session_factory, SLOTS)
    locks = StationLockRegistry(timeout=30)
    notifier = BookingNotifier(history_size=100)

    def create(index):
        session = file_session_factory()
        try:
            # Disjoint windows, so only capacity can stop a request
            start = NOW + timedelta(days=1, hours=index)
            request = BookingCreateRequest(
                station_id=station_id,
                start_time=start,
                end_time=start + timedelta(minutes=30),
                vehicle_number=f"CAB-{index:04d}",
            )
            BookingService(session, notifier=notifier, locks=locks).create_booking(request, OWNER, now=NOW)
            return "created"
        except BookingError as e:
            return e.code
        finally:
            session.close()

    results = _run_in_threads(THREADS, create)

    assert results.count("created") == SLOTS
    assert results.count(CapacityExhaustedError.code) == THREADS - SLOTS

    session = file_session_factory()
    try:
        assert session.get(ChargingStation, station_id).available_slots == 0
        assert session.query(Booking).count() == SLOTS
    finally:
        session.close()


def test_concurrent_cancels_release_the_slot_once(file_session_factory):
    station_id = _make_station(file_session_factory, 1)
    locks = StationLockRegistry(timeout=30)
    notifier = BookingNotifier(history_size=100)

    session = file_session_factory()
    try:
        start = NOW + timedelta(days=1)
        booking = BookingService(session, notifier=notifier, locks=locks).create_booking(
            BookingCreateRequest(
                station_id=station_id,
                start_time=start,
                end_time=start + timedelta(hours=1),
                vehicle_number="CAB-0001",
            ),
            OWNER,
            now=NOW
        )
        booking_id = booking.id
    finally:
        session.close()

    def cancel(index):
        session = file_session_factory()
        try:
            BookingService(session, notifier=notifier, locks=locks).cancel_booking(
                booking_id, BookingCancellationRequest(cancellation_reason="Duplicate request"), OPERATOR, now=NOW
            )
            return "cancelled"
        except BookingError as e:
            return e.code
        finally:
            session.close()

    results = _run_in_threads(4, cancel)

    assert results.count("cancelled") == 1
    assert results.count("ALREADY_IN_TERMINAL_STATE") == 3

    session = file_session_factory()
    try:
        assert session.get(ChargingStation, station_id).available_slots == 1
    finally:
        session.close()


def test_busy_station_lock_surfaces_as_retryable_storage_error(db, notifier, make_station, booking_request):
    station = make_station()
    locks = StationLockRegistry(timeout=0.05)
    service = BookingService(db, notifier=notifier, locks=locks)
    start = NOW + timedelta(days=1)

    with locks.hold(station.id):
        with pytest.raises(StorageError) as exc_info:
            service.create_booking(booking_request(station.id, start, start + timedelta(hours=1)), OWNER, now=NOW)

    assert exc_info.value.retryable
    assert db.query(Booking).count() == 0
    db.expire_all()
    assert db.get(ChargingStation, station.id).available_slots == 1


def test_different_stations_do_not_share_a_lock():
    locks = StationLockRegistry(timeout=0.05)

    with locks.hold(1):
        with locks.hold(2):
            pass


def test_concurrent_overlapping_requests_admit_exactly_one(file_session_factory):
    # Spare capacity, so only the overlap rule can stop a request
    station_id = _make_station(file_session_factory, THREADS)
    locks = StationLockRegistry(timeout=30)
    notifier = BookingNotifier(history_size=100)
    start = NOW + timedelta(days=1)

    def create(index):
        session = file_session_factory()
        try:
            offset = timedelta(minutes=5 * index)
            request = BookingCreateRequest(
                station_id=station_id,
                start_time=start + offset,
                end_time=start + offset + timedelta(hours=1),
                vehicle_number=f"CAB-{index:04d}",
            )
            BookingService(session, notifier=notifier, locks=locks).create_booking(request, OWNER, now=NOW)
            return "created"
        except BookingError as e:
            return e.code
        finally:
            session.close()

    results = _run_in_threads(THREADS, create)

    assert results.count("created") == 1
    assert results.count(SlotConflictError.code) == THREADS - 1

    session = file_session_factory()
    try:
        assert session.get(ChargingStation, station_id).available_slots == THREADS - 1
        assert session.query(Booking).count() == 1
    finally:
        session.close()


def _storage_failure(*args, **kwargs):
    raise OperationalError("UPDATE bookings", {}, Exception("database is locked"))


def test_failed_commit_rolls_back_and_is_retryable(db, service, make_station, booking_request, monkeypatch):
    station = make_station()
    start = NOW + timedelta(days=1)

    monkeypatch.setattr(db, "commit", _storage_failure)
    with pytest.raises(StorageError) as exc_info:
        service.create_booking(booking_request(station.id, start, start + timedelta(hours=1)), OWNER, now=NOW)
    monkeypatch.undo()

    assert exc_info.value.retryable
    assert exc_info.value.to_detail()["code"] == "STORAGE_UNAVAILABLE"
    assert db.query(Booking).count() == 0
    db.expire_all()
    assert db.get(ChargingStation, station.id).available_slots == 1

    booking = service.create_booking(booking_request(station.id, start, start + timedelta(hours=1)), OWNER, now=NOW)
    assert booking.status == "pending"


def test_failed_read_back_after_commit_is_not_retryable(db, service, make_station, booking_request, monkeypatch):
    station = make_station()
    start = NOW + timedelta(days=1)
    booking = service.create_booking(booking_request(station.id, start, start + timedelta(hours=1)), OWNER, now=NOW)
    booking_id = booking.id

    monkeypatch.setattr(db, "refresh", _storage_failure)
    with pytest.raises(StorageError) as exc_info:
        service.cancel_booking(
            booking_id, BookingCancellationRequest(cancellation_reason="Duplicate request"), OPERATOR, now=NOW
        )
    monkeypatch.undo()

    assert not exc_info.value.retryable
    db.expire_all()
    assert db.get(Booking, booking_id).status == "cancelled"
    assert db.get(ChargingStation, station.id).available_slots == 1


def test_failed_read_surfaces_as_storage_error(db, service, monkeypatch):
    monkeypatch.setattr(db, "query", _storage_failure)

    with pytest.raises(StorageError) as exc_info:
        service.get_booking("some-booking")

    assert exc_info.value.retryable
