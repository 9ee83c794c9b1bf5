"""Interval-overlap queries against active bookings of a room."""
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Query, Session

from .intervals import ACTIVE_STATUSES
from .models import Booking


def _overlap_query(
    db: Session,
    room_id: int,
    start: datetime,
    end: datetime,
    excluding_booking_id: Optional[int] = None,
) -> Query:
    query = db.query(Booking).filter(
        Booking.room_id == room_id,
        Booking.status.in_(ACTIVE_STATUSES),
        Booking.start_time < end,
        Booking.end_time > start,
    )
    if excluding_booking_id is not None:
        query = query.filter(Booking.id != excluding_booking_id)
    return query


def has_conflict(
    db: Session,
    room_id: int,
    start: datetime,
    end: datetime,
    excluding_booking_id: Optional[int] = None,
) -> bool:
    """Return True when an active booking of ``room_id`` overlaps ``[start, end)``."""

    query = _overlap_query(db, room_id, start, end, excluding_booking_id)
    return bool(db.query(query.exists()).scalar())


def find_conflicts(
    db: Session,
    room_id: int,
    start: datetime,
    end: datetime,
    excluding_booking_id: Optional[int] = None,
) -> List[Booking]:
    return (
        _overlap_query(db, room_id, start, end, excluding_booking_id)
        .order_by(Booking.start_time)
        .all()
    )


def find_active_bookings(db: Session, room_id: int, range_start: datetime, range_end: datetime) -> List[Booking]:
    """Active bookings of a room intersecting ``[range_start, range_end)``, earliest first."""

    return find_conflicts(db, room_id, range_start, range_end)
