"""Domain errors raised by the scheduling core and their HTTP rendering."""
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class BookingError(Exception):
    """Base class for user-visible scheduling failures."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail: str = "Booking request failed"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid booking request"


class PermissionDeniedError(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Insufficient permissions"


class NotFoundError(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"


class ConflictError(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Room already booked for that slot"


class InvalidStateError(BookingError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Operation not allowed in the current state"


def booking_error_handler(_: Request, exc: BookingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def add_error_handlers(app: FastAPI) -> None:
    """Render domain errors as JSON responses with their own status codes."""

    app.add_exception_handler(BookingError, booking_error_handler)  # type: ignore[arg-type]
