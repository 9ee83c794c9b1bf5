"""Booking lifecycle: create, reschedule, cancel and expire reservations.

Every operation receives the acting :class:`~roombook.models.User` explicitly
and runs as a single transaction. Booking and rescheduling lock the target
room row before checking for overlaps, so two requests for the same room
cannot both observe a free slot and commit overlapping bookings.
"""
from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import is_admin
from .config import Settings, get_settings
from .conflicts import find_conflicts
from .errors import (
    BookingError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .intervals import ACTIVE_STATUSES, BookingStatus, TimeInterval, ensure_transition, is_active
from .models import Booking, Room, User
from .notifications import BookingNotifier, NullNotifier

logger = logging.getLogger(__name__)

CONFIRM_CODE_ALPHABET = string.ascii_uppercase + string.digits
CONFIRM_CODE_LENGTH = 6


def generate_confirm_code() -> str:
    return "".join(secrets.choice(CONFIRM_CODE_ALPHABET) for _ in range(CONFIRM_CODE_LENGTH))


def get_room(db: Session, room_id: int, *, active_only: bool = False) -> Room:
    query = db.query(Room).filter(Room.id == room_id)
    if active_only:
        query = query.filter(Room.is_active.is_(True))
    room = query.first()
    if not room:
        raise NotFoundError("Room not found or inactive" if active_only else "Room not found")
    return room


class BookingManager:
    def __init__(
        self,
        db: Session,
        notifier: Optional[BookingNotifier] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.db = db
        self.notifier = notifier or NullNotifier()
        self.settings = settings or get_settings()
        self.clock = clock

    def book(self, actor: User, room_id: int, interval: TimeInterval, title: str = "") -> Booking:
        self._validate_new_interval(interval)
        if actor.booking_suspended:
            raise PermissionDeniedError("Booking permission is suspended")

        try:
            room = self._lock_room(room_id)
            self._ensure_free(room.id, interval)
            self._ensure_under_threshold(actor.id, room.id, interval)
            booking = Booking(
                user_id=actor.id,
                room_id=room.id,
                title=title,
                start_time=interval.start,
                end_time=interval.end,
                status=BookingStatus.CONFIRMED.value,
                confirm_code=generate_confirm_code(),
            )
            self.db.add(booking)
            self.db.commit()
        except (BookingError, SQLAlchemyError):
            self.db.rollback()
            raise
        self.db.refresh(booking)
        logger.info("User %s booked room %s from %s to %s (booking %s)", actor.id, room.id, interval.start, interval.end, booking.id)
        self._notify(actor, room, booking)
        return booking

    def reschedule(
        self,
        actor: User,
        booking_id: int,
        room_id: Optional[int] = None,
        interval: Optional[TimeInterval] = None,
        title: Optional[str] = None,
    ) -> Booking:
        booking = self.get_booking(actor, booking_id)
        now = self.clock()
        if not is_active(booking.status):
            raise InvalidStateError(f"Booking is already {booking.status}")
        if TimeInterval(booking.start_time, booking.end_time).has_started(now):
            raise InvalidStateError("Cannot modify an already started booking")

        target_room_id = room_id if room_id is not None else booking.room_id
        if target_room_id is None:
            raise NotFoundError("Room not found")
        target = interval or TimeInterval(booking.start_time, booking.end_time)
        self._validate_new_interval(target)
        if actor.booking_suspended and not is_admin(actor):
            raise PermissionDeniedError("Booking permission is suspended")

        try:
            room = self._lock_room(target_room_id)
            self._ensure_free(room.id, target, excluding_booking_id=booking.id)
            if booking.user_id is not None:
                self._ensure_under_threshold(booking.user_id, room.id, target, excluding_booking_id=booking.id)
            booking.room_id = room.id
            booking.start_time = target.start
            booking.end_time = target.end
            if title is not None:
                booking.title = title
            self.db.commit()
        except (BookingError, SQLAlchemyError):
            self.db.rollback()
            raise
        self.db.refresh(booking)
        logger.info("Booking %s moved to room %s, %s-%s", booking.id, room.id, target.start, target.end)
        return booking

    def cancel(self, actor: User, booking_id: int) -> Booking:
        booking = self.get_booking(actor, booking_id)
        return self._cancel(booking, reason=None)

    def admin_cancel(self, actor: User, booking_id: int, reason: Optional[str] = None) -> Booking:
        if not is_admin(actor):
            raise PermissionDeniedError("Only admins can perform this operation")
        booking = self.db.query(Booking).filter(Booking.id == booking_id).first()
        if not booking:
            raise NotFoundError("Booking not found")
        return self._cancel(booking, reason=reason or "Cancelled by administrator")

    def expire_finished(self, now: Optional[datetime] = None) -> int:
        """Move active bookings that have already ended to ``expired``."""

        now = now or self.clock()
        finished = (
            self.db.query(Booking)
            .filter(Booking.status.in_(ACTIVE_STATUSES), Booking.end_time <= now)
            .all()
        )
        for booking in finished:
            ensure_transition(booking.status, BookingStatus.EXPIRED)
            booking.status = BookingStatus.EXPIRED.value
        self.db.commit()
        if finished:
            logger.info("Expired %d finished bookings", len(finished))
        return len(finished)

    def get_booking(self, actor: User, booking_id: int) -> Booking:
        """Load a booking the actor may act on; other users' bookings look absent."""

        booking = self.db.query(Booking).filter(Booking.id == booking_id).first()
        if not booking or (booking.user_id != actor.id and not is_admin(actor)):
            raise NotFoundError("Booking not found")
        return booking

    def _cancel(self, booking: Booking, reason: Optional[str]) -> Booking:
        if not is_active(booking.status):
            raise InvalidStateError(f"Booking is already {booking.status}")
        if TimeInterval(booking.start_time, booking.end_time).has_started(self.clock()):
            raise InvalidStateError("Cannot cancel an already started booking")
        ensure_transition(booking.status, BookingStatus.CANCELLED)
        booking.status = BookingStatus.CANCELLED.value
        booking.cancel_reason = reason
        self.db.commit()
        self.db.refresh(booking)
        logger.info("Booking %s cancelled (%s)", booking.id, reason or "by owner")
        return booking

    def _validate_new_interval(self, interval: TimeInterval) -> None:
        interval.validate()
        if not interval.starts_in_future(self.clock()):
            raise ValidationError("Bookings must start in the future")
        if interval.duration > timedelta(hours=self.settings.max_booking_hours):
            raise ValidationError(f"Bookings cannot exceed {self.settings.max_booking_hours} hours")

    def _lock_room(self, room_id: int) -> Room:
        room = (
            self.db.query(Room)
            .filter(Room.id == room_id, Room.is_active.is_(True))
            .with_for_update()
            .first()
        )
        if not room:
            raise NotFoundError("Room not found or inactive")
        return room

    def _ensure_free(self, room_id: int, interval: TimeInterval, excluding_booking_id: Optional[int] = None) -> None:
        conflicts = find_conflicts(self.db, room_id, interval.start, interval.end, excluding_booking_id)
        if conflicts:
            logger.info(
                "Rejected %s-%s for room %s, overlaps bookings %s",
                interval.start,
                interval.end,
                room_id,
                [booking.id for booking in conflicts],
            )
            raise ConflictError("The booking time conflicts with existing bookings")

    def _ensure_under_threshold(
        self,
        user_id: int,
        room_id: int,
        interval: TimeInterval,
        excluding_booking_id: Optional[int] = None,
    ) -> None:
        day = TimeInterval.for_day(interval.start)
        query = self.db.query(func.count(Booking.id)).filter(
            Booking.user_id == user_id,
            Booking.room_id == room_id,
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.start_time >= day.start,
            Booking.start_time < day.end,
        )
        if excluding_booking_id is not None:
            query = query.filter(Booking.id != excluding_booking_id)
        if query.scalar() >= self.settings.booking_threshold:
            raise PermissionDeniedError(
                f"At most {self.settings.booking_threshold} bookings per room per day are allowed"
            )

    def _notify(self, user: User, room: Room, booking: Booking) -> None:
        try:
            self.notifier.send_booking_confirmation(user, room, booking)
        except Exception:  # booking stays committed
            logger.exception("Failed to send confirmation for booking %s", booking.id)
