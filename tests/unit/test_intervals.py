"""Unit tests for time intervals and the booking status machine."""
from datetime import datetime, timedelta, timezone

import pytest

from roombook.errors import InvalidStateError, ValidationError
from roombook.intervals import BookingStatus, TimeInterval, ensure_transition, is_active, to_naive_utc

TEN = datetime(2030, 5, 6, 10, 0)


def at(hour: int, minute: int = 0) -> datetime:
    return TEN.replace(hour=hour, minute=minute)


class TestTimeInterval:
    def test_validate_rejects_empty_and_reversed(self):
        with pytest.raises(ValidationError):
            TimeInterval(TEN, TEN).validate()
        with pytest.raises(ValidationError):
            TimeInterval(at(11), at(10)).validate()

    def test_validate_returns_interval(self):
        interval = TimeInterval(at(10), at(11))
        assert interval.validate() is interval
        assert interval.duration == timedelta(hours=1)

    def test_overlap_is_half_open(self):
        booked = TimeInterval(at(10), at(11))

        assert booked.overlaps(TimeInterval(at(10, 30), at(11, 30)))
        assert booked.overlaps(TimeInterval(at(9), at(12)))
        assert not booked.overlaps(TimeInterval(at(11), at(12)))
        assert not booked.overlaps(TimeInterval(at(9), at(10)))

    def test_overlap_is_symmetric(self):
        first = TimeInterval(at(10), at(11))
        second = TimeInterval(at(10, 59), at(13))
        assert first.overlaps(second) and second.overlaps(first)

    def test_time_relations(self):
        interval = TimeInterval(at(10), at(11))

        assert interval.starts_in_future(at(9))
        assert not interval.starts_in_future(at(10))
        assert interval.has_started(at(10))
        assert not interval.has_ended(at(10, 59))
        assert interval.has_ended(at(11))

    def test_for_day(self):
        day = TimeInterval.for_day(at(15, 45))
        assert day.start == datetime(2030, 5, 6)
        assert day.end == datetime(2030, 5, 7)

    def test_intervals_are_immutable(self):
        interval = TimeInterval(at(10), at(11))
        with pytest.raises(AttributeError):
            interval.start = at(9)  # type: ignore[misc]


class TestBookingStatus:
    def test_active_statuses(self):
        assert is_active("confirmed")
        assert is_active(BookingStatus.PENDING)
        assert not is_active("cancelled")
        assert not is_active(BookingStatus.EXPIRED)

    def test_allowed_transitions(self):
        ensure_transition("pending", BookingStatus.CONFIRMED)
        ensure_transition("confirmed", BookingStatus.CANCELLED)
        ensure_transition("confirmed", BookingStatus.EXPIRED)

    @pytest.mark.parametrize("current", ["cancelled", "expired"])
    def test_terminal_statuses_do_not_move(self, current):
        with pytest.raises(InvalidStateError):
            ensure_transition(current, BookingStatus.CANCELLED)

    def test_confirmed_cannot_go_back_to_pending(self):
        with pytest.raises(InvalidStateError):
            ensure_transition(BookingStatus.CONFIRMED, BookingStatus.PENDING)


def test_to_naive_utc_passthrough():
    naive = datetime(2030, 1, 1, 9)
    assert to_naive_utc(naive) is naive


def test_aware_bounds_are_stored_as_naive_utc():
    plus_two = timezone(timedelta(hours=2))
    interval = TimeInterval(datetime(2030, 5, 6, 12, tzinfo=plus_two), datetime(2030, 5, 6, 13, tzinfo=plus_two))

    assert interval.start == TEN
    assert interval.end == at(11)
    assert interval.start.tzinfo is None
    assert interval.overlaps(TimeInterval(at(10, 30), at(12)))
