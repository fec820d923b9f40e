from typing import List, Optional

# Business-rule rejections derive from BookingError, a ValueError like the rest
# of the service layer. StorageError stays outside that tree.

class BookingError(ValueError):
    code = "BOOKING_ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}

class InvalidWindowError(BookingError):
    code = "INVALID_WINDOW"
    status_code = 422

class OutOfBookingWindowError(BookingError):
    code = "OUT_OF_BOOKING_WINDOW"
    status_code = 422

class SlotConflictError(BookingError):
    code = "SLOT_CONFLICT"
    status_code = 409

    def __init__(self, message: str, conflicts: Optional[List] = None):
        super().__init__(message)
        self.conflicts = conflicts or []

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["conflicts"] = [
            c.dict() if hasattr(c, "dict") else c for c in self.conflicts
        ]
        return detail

class CapacityExhaustedError(BookingError):
    code = "CAPACITY_EXHAUSTED"
    status_code = 409

class StationUnavailableError(BookingError):
    code = "STATION_UNAVAILABLE"
    status_code = 409

class CutoffExceededError(BookingError):
    code = "CUTOFF_EXCEEDED"
    status_code = 403

class UnauthorizedError(BookingError):
    code = "UNAUTHORIZED"
    status_code = 403

class AlreadyInTerminalStateError(BookingError):
    code = "ALREADY_IN_TERMINAL_STATE"
    status_code = 409

class InvalidTransitionError(BookingError):
    code = "INVALID_TRANSITION"
    status_code = 409

class NotFoundError(BookingError):
    code = "NOT_FOUND"
    status_code = 404

class StorageError(Exception):
    """Storage failure.

    ``retryable`` is true when nothing was committed and the request can be
    sent again as is.
    """

    code = "STORAGE_UNAVAILABLE"
    status_code = 503

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable

    def to_detail(self) -> dict:
        return {"code": self.code, "message": str(self), "retryable": self.retryable}
