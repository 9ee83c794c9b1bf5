"""Batch cancellation of bookings that break booking policy."""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from .config import Settings, get_settings
from .errors import BookingError
from .intervals import ACTIVE_STATUSES, BookingStatus, ensure_transition
from .models import Booking

logger = logging.getLogger(__name__)

Predicate = Callable[[Booking], Optional[str]]


def orphaned_room(booking: Booking) -> Optional[str]:
    if booking.room_id is None or booking.room is None:
        return "orphaned_room"
    if not booking.room.is_active:
        return "orphaned_room"
    return None


def orphaned_user(booking: Booking) -> Optional[str]:
    if booking.user_id is None or booking.user is None:
        return "orphaned_user"
    return None


def suspended_user(booking: Booking) -> Optional[str]:
    user = booking.user
    if user is not None and (user.booking_suspended or user.is_locked):
        return "suspended_user"
    return None


DEFAULT_PREDICATES: Tuple[Predicate, ...] = (orphaned_room, orphaned_user, suspended_user)


@dataclass
class SweepReport:
    cancelled: int = 0
    failed: int = 0
    by_reason: Dict[str, int] = field(default_factory=dict)
    booking_ids: List[int] = field(default_factory=list)

    def record(self, booking_id: int, reason: str) -> None:
        self.cancelled += 1
        self.booking_ids.append(booking_id)
        self.by_reason[reason] = self.by_reason.get(reason, 0) + 1

    def __bool__(self) -> bool:
        return self.cancelled > 0


class ComplianceSweeper:
    """Cancels active, unfinished bookings matching any policy predicate.

    Per-booking predicates run first; the remaining bookings are then grouped
    by (user, room, day) and everything past ``booking_threshold`` in creation
    order is cancelled as ``over_threshold``. A failure on one booking is
    logged and does not stop the batch.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        predicates: Optional[Sequence[Predicate]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.predicates = tuple(predicates) if predicates is not None else DEFAULT_PREDICATES
        self.clock = clock

    def sweep_non_compliant(self) -> SweepReport:
        report = SweepReport()
        for booking, reason in self.find_violations():
            try:
                ensure_transition(booking.status, BookingStatus.CANCELLED)
                booking.status = BookingStatus.CANCELLED.value
                booking.cancel_reason = f"Non-compliant booking: {reason}"
                self.db.commit()
            except (BookingError, SQLAlchemyError):
                self.db.rollback()
                report.failed += 1
                logger.exception("Could not cancel non-compliant booking %s", booking.id)
                continue
            report.record(booking.id, reason)

        if report:
            logger.info("Compliance sweep cancelled %d bookings: %s", report.cancelled, report.by_reason)
        else:
            logger.info("Compliance sweep found nothing to cancel")
        return report

    def find_violations(self) -> List[Tuple[Booking, str]]:
        candidates = (
            self.db.query(Booking)
            .options(joinedload(Booking.room), joinedload(Booking.user))
            .filter(Booking.status.in_(ACTIVE_STATUSES), Booking.end_time > self.clock())
            .order_by(Booking.created_at, Booking.id)
            .all()
        )
        violations: List[Tuple[Booking, str]] = []
        compliant: List[Booking] = []
        for booking in candidates:
            reason = self._first_violation(booking)
            if reason:
                violations.append((booking, reason))
            else:
                compliant.append(booking)
        violations.extend((booking, "over_threshold") for booking in self._over_threshold(compliant))
        return violations

    def _first_violation(self, booking: Booking) -> Optional[str]:
        for predicate in self.predicates:
            reason = predicate(booking)
            if reason:
                return reason
        return None

    def _over_threshold(self, bookings: Iterable[Booking]) -> List[Booking]:
        groups: Dict[Tuple[Optional[int], Optional[int], object], List[Booking]] = defaultdict(list)
        for booking in bookings:
            groups[(booking.user_id, booking.room_id, booking.start_time.date())].append(booking)
        excess: List[Booking] = []
        for group in groups.values():
            excess.extend(group[self.settings.booking_threshold:])
        return excess
