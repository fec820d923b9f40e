from typing import Optional, Tuple
from datetime import datetime, timedelta
from sqlalchemy.orm import Session
from io import BytesIO
import hmac
import logging

import jwt
import qrcode
from qrcode import constants
from PIL import Image

from src.config import settings
from src.models import Booking
from src.timeutils import utcnow
from src.bookings.schemas import (
    BookingStatus, QR_VALID_STATUSES, QRValidationRequest, QRValidationResponse
)

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"

class QRCodeService:
    """Issue, render and validate the QR token of an approved booking.

    The token is an HS256 JWT keyed with the application secret whose claims
    name the booking and its window.  A token is only honoured while it is
    still the one stored on the booking, so clearing ``Booking.qr_code``
    revokes it.
    """

    def __init__(self, db: Optional[Session] = None, secret_key: Optional[str] = None):
        self.db = db
        self._secret = secret_key or settings.SECRET_KEY

    def generate_token(self, booking: Booking, issued_at: Optional[datetime] = None) -> str:
        """Build a signed token bound to ``booking``"""
        issued_at = issued_at or utcnow()

        token_data = {
            "bid": booking.id,
            "num": booking.booking_number,
            "uid": booking.user_id,
            "sid": booking.station_id,
            "start": booking.start_time.isoformat(),
            "end": booking.end_time.isoformat(),
            "veh": booking.vehicle_number,
            "issued": issued_at.isoformat()
        }

        return jwt.encode(token_data, self._secret, algorithm=TOKEN_ALGORITHM)

    def decode_token(self, token: str) -> Tuple[Optional[dict], str]:
        """Return ``(payload, status)``; payload is ``None`` unless status is ``ok``"""
        try:
            payload = jwt.decode(token.strip(), self._secret, algorithms=[TOKEN_ALGORITHM])
        except jwt.InvalidSignatureError:
            return None, "tampered"
        except jwt.PyJWTError:
            return None, "invalid"

        if not isinstance(payload.get("bid"), str):
            return None, "invalid"

        return payload, "ok"

    def render_png(self, token: str, size: int = 300, border: int = 4) -> bytes:
        """Render ``token`` as a PNG QR code"""
        qr = qrcode.QRCode(
            version=None,
            error_correction=constants.ERROR_CORRECT_Q,
            box_size=10,
            border=border,
        )

        qr.add_data(token)
        qr.make(fit=True)

        qr_image = qr.make_image(fill_color="black", back_color="white")
        qr_image = qr_image.resize((size, size), Image.LANCZOS)

        buffer = BytesIO()
        qr_image.save(buffer, format="PNG")
        return buffer.getvalue()

    def validate_token(self, request: QRValidationRequest) -> QRValidationResponse:
        """Check a scanned token against the booking it names"""
        now = request.validation_timestamp or utcnow()

        payload, decode_status = self.decode_token(request.qr_code_data)
        if payload is None:
            message = "QR code has been tampered with" if decode_status == "tampered" else "Invalid QR code format"
            logger.warning("Rejected QR scan: %s", decode_status)
            return self._reject(decode_status, message, now)

        booking = self.db.query(Booking).filter(Booking.id == payload["bid"]).first()
        if not booking:
            return self._reject("not_found", "Booking not found", now)

        status = BookingStatus(booking.status)
        valid_from = booking.start_time - timedelta(minutes=settings.QR_EARLY_ENTRY_MINUTES)
        valid_until = booking.end_time + timedelta(minutes=settings.QR_LATE_EXIT_MINUTES)

        def reject(validation_status: str, message: str) -> QRValidationResponse:
            return self._reject(
                validation_status, message, now,
                booking=booking, valid_from=valid_from, valid_until=valid_until
            )

        if status not in QR_VALID_STATUSES:
            return reject("inactive", f"Booking is not approved. Current status: {status.value}")

        scanned = request.qr_code_data.strip().encode("utf-8", "surrogatepass")
        if not booking.qr_code or not hmac.compare_digest(booking.qr_code.encode(), scanned):
            return reject("revoked", "QR code is no longer valid for this booking")

        if request.station_id is not None and request.station_id != booking.station_id:
            return reject("wrong_station", "QR code is not valid for this station")

        if now < valid_from:
            return reject("too_early", "Booking time has not started yet")

        if now > valid_until:
            return reject("expired", "Booking time has expired")

        return QRValidationResponse(
            is_valid=True,
            validation_status="valid",
            validation_message="QR code is valid",
            booking_id=booking.id,
            booking_number=booking.booking_number,
            booking_status=status,
            valid_from=valid_from,
            valid_until=valid_until,
            validation_timestamp=now,
            allow_charging=True
        )

    @staticmethod
    def _reject(
        validation_status: str,
        message: str,
        now: datetime,
        booking: Optional[Booking] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None
    ) -> QRValidationResponse:
        return QRValidationResponse(
            is_valid=False,
            validation_status=validation_status,
            validation_message=message,
            booking_id=booking.id if booking else None,
            booking_number=booking.booking_number if booking else None,
            booking_status=BookingStatus(booking.status) if booking else None,
            valid_from=valid_from,
            valid_until=valid_until,
            validation_timestamp=now,
            allow_charging=False
        )
