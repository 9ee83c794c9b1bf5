"""Unit tests for the non-compliant booking sweeper."""
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from roombook.compliance import ComplianceSweeper, SweepReport, orphaned_room, orphaned_user, suspended_user
from roombook.config import Settings
from roombook.models import Booking, Room, User

NOW = datetime(2030, 5, 6, 8, 0)


def at(hour: int, days: int = 0) -> datetime:
    return NOW.replace(hour=hour) + timedelta(days=days)


@pytest.fixture()
def alice(db_session) -> User:
    user = User(name="Alice", username="alice", email="alice@example.com", hashed_password="x")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture()
def room(db_session) -> Room:
    room = Room(room_code="R-1", display_name="Room 1", capacity=4, location="Floor 1")
    db_session.add(room)
    db_session.commit()
    return room


@pytest.fixture()
def sweeper(db_session):
    return ComplianceSweeper(db_session, settings=Settings(), clock=lambda: NOW)


def add_booking(db_session, user_id, room_id, hour: int, days: int = 0, status: str = "confirmed") -> Booking:
    booking = Booking(
        user_id=user_id,
        room_id=room_id,
        start_time=at(hour, days),
        end_time=at(hour + 1, days),
        status=status,
        confirm_code="ABC123",
    )
    db_session.add(booking)
    db_session.commit()
    return booking


class TestPredicates:
    def test_orphaned_room(self):
        assert orphaned_room(Booking(room_id=None)) == "orphaned_room"
        assert orphaned_room(Booking(room_id=1, room=Room(is_active=False))) == "orphaned_room"
        assert orphaned_room(Booking(room_id=1, room=Room(is_active=True))) is None

    def test_orphaned_user(self):
        assert orphaned_user(Booking(user_id=None)) == "orphaned_user"
        assert orphaned_user(Booking(user_id=1, user=User())) is None

    def test_suspended_user(self):
        assert suspended_user(Booking(user=User(booking_suspended=True, is_locked=False))) == "suspended_user"
        assert suspended_user(Booking(user=User(booking_suspended=False, is_locked=True))) == "suspended_user"
        assert suspended_user(Booking(user=User(booking_suspended=False, is_locked=False))) is None


def test_report_truthiness():
    report = SweepReport()
    assert not report
    report.record(7, "orphaned_room")
    assert report and report.booking_ids == [7]
    assert report.by_reason == {"orphaned_room": 1}


def test_clean_database_sweeps_nothing_twice(sweeper, db_session, alice, room):
    add_booking(db_session, alice.id, room.id, 10)

    assert sweeper.sweep_non_compliant().cancelled == 0
    assert sweeper.sweep_non_compliant().cancelled == 0


def test_sweep_cancels_each_violation_once(sweeper, db_session, alice, room):
    kept = add_booking(db_session, alice.id, room.id, 10)
    no_user = add_booking(db_session, None, room.id, 12)
    no_room = add_booking(db_session, alice.id, None, 14)

    report = sweeper.sweep_non_compliant()

    assert report.cancelled == 2
    assert report.by_reason == {"orphaned_user": 1, "orphaned_room": 1}
    assert sorted(report.booking_ids) == sorted([no_user.id, no_room.id])
    db_session.refresh(kept)
    db_session.refresh(no_user)
    assert kept.status == "confirmed"
    assert no_user.status == "cancelled"
    assert no_user.cancel_reason == "Non-compliant booking: orphaned_user"

    assert sweeper.sweep_non_compliant().cancelled == 0


def test_suspended_user_bookings(sweeper, db_session, alice, room):
    add_booking(db_session, alice.id, room.id, 10)
    alice.booking_suspended = True
    db_session.commit()

    report = sweeper.sweep_non_compliant()

    assert report.by_reason == {"suspended_user": 1}


def test_finished_and_inactive_bookings_are_skipped(sweeper, db_session, room):
    add_booking(db_session, None, room.id, 5)
    add_booking(db_session, None, room.id, 12, status="cancelled")

    assert sweeper.sweep_non_compliant().cancelled == 0


def test_over_threshold_keeps_earliest_created(sweeper, db_session, alice, room):
    created = [add_booking(db_session, alice.id, room.id, hour) for hour in (9, 11, 13, 15, 17)]
    add_booking(db_session, alice.id, room.id, 9, days=1)

    report = sweeper.sweep_non_compliant()

    assert report.by_reason == {"over_threshold": 2}
    assert sorted(report.booking_ids) == sorted([created[3].id, created[4].id])


def test_custom_predicates(db_session, alice, room):
    booking = add_booking(db_session, alice.id, room.id, 10)
    sweeper = ComplianceSweeper(
        db_session,
        settings=Settings(),
        predicates=[lambda candidate: "blocked_room" if candidate.room_id == room.id else None],
        clock=lambda: NOW,
    )

    report = sweeper.sweep_non_compliant()

    assert report.booking_ids == [booking.id]
    assert report.by_reason == {"blocked_room": 1}


def test_failed_cancellation_does_not_stop_the_sweep(sweeper, db_session, alice, room):
    first, second, third = (add_booking(db_session, alice.id, room.id, hour) for hour in (9, 11, 13))
    alice.booking_suspended = True
    db_session.commit()

    real_commit = db_session.commit
    calls = []

    def commit_failing_once():
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("UPDATE bookings", {}, Exception("database is locked"))
        real_commit()

    with patch.object(db_session, "commit", side_effect=commit_failing_once):
        report = sweeper.sweep_non_compliant()

    assert report.failed == 1
    assert report.cancelled == 2
    assert report.by_reason == {"suspended_user": 2}
    assert report.booking_ids == [second.id, third.id]

    db_session.refresh(first)
    assert first.status == "confirmed"

    retry = sweeper.sweep_non_compliant()
    assert (retry.cancelled, retry.failed) == (1, 0)
    assert retry.booking_ids == [first.id]
