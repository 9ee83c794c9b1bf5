"""Booking time ranges and the booking status state machine."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

from .errors import InvalidStateError, ValidationError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


ACTIVE_STATUSES = frozenset({BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value})

_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED, BookingStatus.EXPIRED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELLED, BookingStatus.EXPIRED}),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.EXPIRED: frozenset(),
}


def to_naive_utc(value: datetime) -> datetime:
    """Stored timestamps are naive UTC; aware inputs are converted first."""

    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def is_active(status: str | BookingStatus) -> bool:
    return BookingStatus(status).value in ACTIVE_STATUSES


def ensure_transition(current: str | BookingStatus, target: BookingStatus) -> None:
    current_status = BookingStatus(current)
    if target not in _TRANSITIONS[current_status]:
        raise InvalidStateError(f"Cannot move a {current_status.value} booking to {target.value}")


@dataclass(frozen=True)
class TimeInterval:
    """Half-open ``[start, end)`` range; touching intervals do not overlap."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", to_naive_utc(self.start))
        object.__setattr__(self, "end", to_naive_utc(self.end))

    def validate(self) -> "TimeInterval":
        if self.start >= self.end:
            raise ValidationError("End time must be after start time")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "TimeInterval") -> bool:
        return self.start < other.end and other.start < self.end

    def starts_in_future(self, now: datetime) -> bool:
        return self.start > now

    def has_started(self, now: datetime) -> bool:
        return self.start <= now

    def has_ended(self, now: datetime) -> bool:
        return self.end <= now

    @classmethod
    def for_day(cls, day_start: datetime) -> "TimeInterval":
        start = day_start.replace(hour=0, minute=0, second=0, microsecond=0)
        return cls(start, start + timedelta(days=1))
