from datetime import datetime, timedelta

import jwt
import pytest

from conftest import NOW, OPERATOR, OWNER
from src.config import settings
from src.bookings.qr_service import QRCodeService
from src.bookings.schemas import (
    BookingCancellationRequest, BookingStatus, QRValidationRequest
)

START = datetime(2030, 1, 8, 10, 0)
END = datetime(2030, 1, 8, 11, 0)


@pytest.fixture
def approved_booking(service, make_station, booking_request):
    station = make_station()
    booking = service.create_booking(booking_request(station.id, START, END), OWNER, now=NOW)
    return service.approve_booking(booking.id, OPERATOR, now=NOW)


def scan(db, token, at, station_id=None):
    return QRCodeService(db).validate_token(
        QRValidationRequest(qr_code_data=token, validation_timestamp=at, station_id=station_id)
    )


def test_token_decodes_to_booking(db, approved_booking):
    payload, status = QRCodeService(db).decode_token(approved_booking.qr_code)

    assert status == "ok"
    assert payload["bid"] == approved_booking.id
    assert payload["num"] == approved_booking.booking_number
    assert payload["sid"] == approved_booking.station_id


def test_valid_scan_during_booking(db, approved_booking):
    result = scan(db, approved_booking.qr_code, START + timedelta(minutes=5), approved_booking.station_id)

    assert result.is_valid
    assert result.allow_charging
    assert result.validation_status == "valid"
    assert result.booking_status == BookingStatus.APPROVED
    assert result.valid_from == START - timedelta(minutes=15)
    assert result.valid_until == END + timedelta(minutes=15)


@pytest.mark.parametrize("at, expected", [
    (START - timedelta(minutes=16), "too_early"),
    (START - timedelta(minutes=15), "valid"),
    (END + timedelta(minutes=15), "valid"),
    (END + timedelta(minutes=16), "expired"),
])
def test_scan_window_edges(db, approved_booking, at, expected):
    assert scan(db, approved_booking.qr_code, at).validation_status == expected


def test_scan_at_wrong_station(db, approved_booking):
    result = scan(db, approved_booking.qr_code, START, station_id=approved_booking.station_id + 1)

    assert not result.is_valid
    assert result.validation_status == "wrong_station"


def test_tampered_token_is_rejected(db, approved_booking):
    encoded, signature = approved_booking.qr_code.rsplit(".", 1)
    forged = f"{encoded}.{'0' * len(signature)}"

    result = scan(db, forged, START)

    assert not result.is_valid
    assert result.validation_status == "tampered"
    assert result.booking_id is None


def test_token_signed_with_another_key_is_rejected(db, approved_booking):
    foreign = QRCodeService(db, secret_key="someone-else").generate_token(approved_booking)

    assert scan(db, foreign, START).validation_status == "tampered"


def test_garbage_is_rejected(db):
    assert scan(db, "not-a-qr-token", START).validation_status == "invalid"


@pytest.mark.parametrize("token", ["abc.éé", "a.b.é", "ünïcode"])
def test_non_ascii_scan_is_rejected(db, token):
    result = scan(db, token, START)

    assert not result.is_valid
    assert result.validation_status in ("invalid", "tampered")
    assert result.booking_id is None


def test_valid_token_with_non_ascii_suffix_is_not_honoured(db, approved_booking):
    result = scan(db, approved_booking.qr_code + "é", START)

    assert not result.is_valid
    assert result.validation_status in ("invalid", "tampered", "revoked")


def test_token_is_an_hs256_jwt(db, approved_booking):
    header = jwt.get_unverified_header(approved_booking.qr_code)
    claims = jwt.decode(approved_booking.qr_code, settings.SECRET_KEY, algorithms=["HS256"])

    assert header["alg"] == "HS256"
    assert claims["bid"] == approved_booking.id
    assert claims["start"] == START.isoformat()


def test_cancelled_booking_invalidates_its_code(db, service, approved_booking):
    token = approved_booking.qr_code
    service.cancel_booking(
        approved_booking.id, BookingCancellationRequest(cancellation_reason="Car broke down"), OPERATOR, now=NOW
    )

    result = scan(db, token, START)

    assert not result.is_valid
    assert result.validation_status == "inactive"
    assert result.booking_status == BookingStatus.CANCELLED


def test_code_stays_valid_while_charging(db, service, approved_booking):
    token = approved_booking.qr_code
    service.start_booking(approved_booking.id, OPERATOR, now=START)

    result = scan(db, token, START + timedelta(minutes=30))

    assert result.is_valid
    assert result.booking_status == BookingStatus.IN_PROGRESS


def test_superseded_token_is_rejected(db, approved_booking):
    stale = QRCodeService(db).generate_token(approved_booking, issued_at=NOW - timedelta(hours=1))

    assert scan(db, stale, START).validation_status == "revoked"


def test_render_png(db, approved_booking):
    png = QRCodeService(db).render_png(approved_booking.qr_code, size=200)

    assert png.startswith(b"\x89PNG\r\n\x1a\n")
