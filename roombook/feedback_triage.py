"""Escalation of feedback that has waited too long for an administrator."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from .models import Feedback, FeedbackStatus

logger = logging.getLogger(__name__)


def escalate_long_pending(db: Session, max_age_hours: int, now: Optional[datetime] = None) -> List[int]:
    """Move pending feedback older than ``max_age_hours`` to ``in_review`` and return the ids."""

    now = now or datetime.utcnow()
    cutoff = now - timedelta(hours=max_age_hours)
    stale = (
        db.query(Feedback)
        .filter(Feedback.status == FeedbackStatus.PENDING, Feedback.created_at <= cutoff)
        .order_by(Feedback.created_at.asc(), Feedback.id.asc())
        .all()
    )
    for feedback in stale:
        feedback.status = FeedbackStatus.IN_REVIEW
        feedback.updated_at = now
    db.commit()
    if stale:
        logger.warning("Escalated %d feedback items pending since before %s", len(stale), cutoff)
    return [feedback.id for feedback in stale]
