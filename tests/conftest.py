from datetime import datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.auth.schemas import Actor, ActorRole
from src.bookings.booking_service import BookingService
from src.bookings.locking import StationLockRegistry
from src.bookings.notification_service import BookingNotifier
from src.bookings.schemas import BookingCreateRequest
from src.database import Base, get_db
from src.main import app
from src.models import ChargingStation

# Fixed clock for service tests
NOW = datetime(2030, 1, 7, 8, 0)

OWNER = Actor(id="owner-1", role=ActorRole.EV_OWNER)
OTHER_OWNER = Actor(id="owner-2", role=ActorRole.EV_OWNER)
OPERATOR = Actor(id="operator-1", role=ActorRole.STATION_OPERATOR)
BACKOFFICE = Actor(id="backoffice-1", role=ActorRole.BACKOFFICE)
SYSTEM = Actor(id="system", role=ActorRole.SYSTEM)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def notifier():
    return BookingNotifier(history_size=100)


@pytest.fixture
def locks():
    return StationLockRegistry(timeout=5)


@pytest.fixture
def service(db, notifier, locks):
    return BookingService(db, notifier=notifier, locks=locks)


@pytest.fixture
def make_station(db):
    def _make(**overrides):
        total = overrides.pop("total_slots", 1)
        values = dict(
            name="Test Station",
            location="Colombo",
            connector_type="CCS",
            power_rating_kw=Decimal("50.00"),
            price_per_kwh=Decimal("10.00"),
            total_slots=total,
            available_slots=overrides.pop("available_slots", total),
            status="active",
            max_booking_duration_minutes=240,
        )
        values.update(overrides)
        station = ChargingStation(**values)
        db.add(station)
        db.commit()
        db.refresh(station)
        return station

    return _make


@pytest.fixture
def booking_request():
    def _make(station_id, start_time, end_time, **overrides):
        values = dict(
            station_id=station_id,
            start_time=start_time,
            end_time=end_time,
            vehicle_number="CAB-1234",
        )
        values.update(overrides)
        return BookingCreateRequest(**values)

    return _make


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def actor_headers(actor):
    return {"X-Actor-Id": actor.id, "X-Actor-Role": actor.role.value}
