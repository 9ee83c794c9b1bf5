from contextlib import asynccontextmanager
from datetime import datetime, timedelta
import html
from typing import Iterable, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func
from sqlalchemy.orm import Session

from roombook.config import get_settings
from roombook.database import Base, engine, get_db
from roombook.dependencies import get_current_active_user, require_admin
from roombook.errors import add_error_handlers
from roombook.feedback_triage import escalate_long_pending
from roombook.intervals import TimeInterval
from roombook.logging_middleware import add_audit_middleware, configure_logging
from roombook.models import Feedback, FeedbackStatus, FeedbackType, User
from roombook.rate_limit import apply_rate_limiter, limiter
from roombook.schemas import FeedbackCreate, FeedbackRead, FeedbackReject, FeedbackReply

settings = get_settings()

OPEN_STATUSES = (FeedbackStatus.PENDING, FeedbackStatus.IN_REVIEW)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Feedback Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "feedback")
    configure_logging()
    return fastapi_app


app = create_app()


def _sanitize(text: str) -> str:
    stripped = text.strip()
    return html.escape(stripped)


def _get_feedback_or_404(db: Session, feedback_id: int) -> Feedback:
    feedback = db.query(Feedback).filter(Feedback.id == feedback_id).first()
    if not feedback:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Feedback does not exist")
    return feedback


def _transition(
    db: Session,
    feedback: Feedback,
    allowed: Iterable[FeedbackStatus],
    target: FeedbackStatus,
    message: str,
    **changes: object,
) -> Feedback:
    if feedback.status not in set(allowed):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)
    for key, value in changes.items():
        setattr(feedback, key, value)
    feedback.status = target
    feedback.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(feedback)
    return feedback


def _parse_statuses(raw: Optional[str]) -> List[FeedbackStatus]:
    if not raw:
        return []
    try:
        return [FeedbackStatus(value.strip()) for value in raw.split(",") if value.strip()]
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown feedback status: {exc}") from exc


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "feedback"}


@app.post("/feedback", response_model=FeedbackRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def submit_feedback(
    request: Request,
    feedback_in: FeedbackCreate,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Feedback:
    now = datetime.utcnow()
    last_submitted = (
        db.query(func.max(Feedback.created_at)).filter(Feedback.user_id == current_user.id).scalar()
    )
    if last_submitted and now - last_submitted < timedelta(seconds=settings.feedback_min_interval_seconds):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Submit too frequently, please try again later",
        )
    today = TimeInterval.for_day(now)
    submitted_today = (
        db.query(func.count(Feedback.id))
        .filter(Feedback.user_id == current_user.id, Feedback.created_at >= today.start, Feedback.created_at < today.end)
        .scalar()
    )
    if submitted_today >= settings.feedback_daily_limit:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Over daily submission limit")

    feedback = Feedback(
        user_id=current_user.id,
        type=feedback_in.type,
        title=_sanitize(feedback_in.title),
        content=_sanitize(feedback_in.content),
        created_at=now,
    )
    db.add(feedback)
    db.commit()
    db.refresh(feedback)
    return feedback


@app.get("/feedback/me", response_model=List[FeedbackRead])
@limiter.limit("30/minute")
def my_feedback(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[Feedback]:
    return (
        db.query(Feedback)
        .filter(Feedback.user_id == current_user.id)
        .order_by(Feedback.created_at.desc(), Feedback.id.desc())
        .all()
    )


@app.get("/feedback/{feedback_id}", response_model=FeedbackRead)
@limiter.limit("30/minute")
def my_feedback_detail(
    request: Request,
    feedback_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Feedback:
    feedback = db.query(Feedback).filter(Feedback.id == feedback_id, Feedback.user_id == current_user.id).first()
    if not feedback:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Feedback not found")
    return feedback


@app.post("/feedback/{feedback_id}/cancel", response_model=FeedbackRead)
@limiter.limit("20/minute")
def cancel_feedback(
    request: Request,
    feedback_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> Feedback:
    feedback = db.query(Feedback).filter(Feedback.id == feedback_id, Feedback.user_id == current_user.id).first()
    if not feedback or feedback.status != FeedbackStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cancel feedback failed, feedback may not exist or has been processed",
        )
    return _transition(db, feedback, (FeedbackStatus.PENDING,), FeedbackStatus.CANCELLED, "Feedback has been processed")


@app.get("/admin/feedback", response_model=List[FeedbackRead])
@limiter.limit("30/minute")
def all_feedback(
    request: Request,
    statuses: Optional[str] = Query(default=None, description="Comma separated statuses"),
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[Feedback]:
    query = db.query(Feedback)
    wanted = _parse_statuses(statuses)
    if wanted:
        query = query.filter(Feedback.status.in_(wanted))
    return query.order_by(Feedback.created_at.desc(), Feedback.id.desc()).all()


@app.get("/admin/feedback/untreated", response_model=List[FeedbackRead])
@limiter.limit("30/minute")
def untreated_feedback(request: Request, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> List[Feedback]:
    return (
        db.query(Feedback)
        .filter(Feedback.status == FeedbackStatus.PENDING)
        .order_by(Feedback.created_at.asc(), Feedback.id.asc())
        .all()
    )


@app.get("/admin/feedback/statistics")
@limiter.limit("30/minute")
def feedback_statistics(request: Request, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> dict[str, int]:
    counts = dict(db.query(Feedback.status, func.count(Feedback.id)).group_by(Feedback.status).all())
    stats = {feedback_status.value: counts.get(feedback_status, 0) for feedback_status in FeedbackStatus}
    stats["total"] = sum(counts.values())
    return stats


@app.post("/admin/feedback/escalate-pending")
@limiter.limit("5/minute")
def escalate_pending(
    request: Request,
    older_than_hours: Optional[int] = Query(default=None, ge=1),
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> dict[str, object]:
    feedback_ids = escalate_long_pending(db, older_than_hours or settings.feedback_escalation_hours)
    return {"escalated": len(feedback_ids), "feedback_ids": feedback_ids}


@app.get("/admin/feedback/type/{feedback_type}", response_model=List[FeedbackRead])
@limiter.limit("30/minute")
def feedback_by_type(
    request: Request,
    feedback_type: FeedbackType,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[Feedback]:
    return db.query(Feedback).filter(Feedback.type == feedback_type).order_by(Feedback.created_at.desc()).all()


@app.get("/admin/feedback/responder/{responder_id}", response_model=List[FeedbackRead])
@limiter.limit("30/minute")
def feedback_by_responder(
    request: Request,
    responder_id: int,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[Feedback]:
    return db.query(Feedback).filter(Feedback.responder_id == responder_id).order_by(Feedback.updated_at.desc()).all()


@app.get("/admin/feedback/{feedback_id}", response_model=FeedbackRead)
@limiter.limit("60/minute")
def feedback_detail(request: Request, feedback_id: int, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> Feedback:
    return _get_feedback_or_404(db, feedback_id)


@app.get("/admin/feedback/{feedback_id}/view", response_model=FeedbackRead)
@limiter.limit("60/minute")
def view_feedback(request: Request, feedback_id: int, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> Feedback:
    feedback = _get_feedback_or_404(db, feedback_id)
    if feedback.status == FeedbackStatus.PENDING:
        return _transition(db, feedback, (FeedbackStatus.PENDING,), FeedbackStatus.IN_REVIEW, "Feedback already processed")
    return feedback


@app.post("/admin/feedback/{feedback_id}/mark-in-review", response_model=FeedbackRead)
@limiter.limit("30/minute")
def mark_in_review(request: Request, feedback_id: int, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> Feedback:
    feedback = _get_feedback_or_404(db, feedback_id)
    return _transition(
        db,
        feedback,
        (FeedbackStatus.PENDING,),
        FeedbackStatus.IN_REVIEW,
        "Only pending feedback can be marked as in review",
    )


@app.post("/admin/feedback/{feedback_id}/mark-pending", response_model=FeedbackRead)
@limiter.limit("30/minute")
def mark_pending(request: Request, feedback_id: int, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> Feedback:
    feedback = _get_feedback_or_404(db, feedback_id)
    return _transition(
        db,
        feedback,
        (FeedbackStatus.IN_REVIEW,),
        FeedbackStatus.PENDING,
        "Only feedback in review can be moved back to pending",
    )


@app.post("/admin/feedback/{feedback_id}/reply", response_model=FeedbackRead)
@limiter.limit("30/minute")
def reply_feedback(
    request: Request,
    feedback_id: int,
    payload: FeedbackReply,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Feedback:
    feedback = _get_feedback_or_404(db, feedback_id)
    return _transition(
        db,
        feedback,
        OPEN_STATUSES,
        FeedbackStatus.RESOLVED,
        "Feedback is already closed",
        response=_sanitize(payload.response),
        responder_id=current_user.id,
    )


@app.post("/admin/feedback/{feedback_id}/reject", response_model=FeedbackRead)
@limiter.limit("30/minute")
def reject_feedback(
    request: Request,
    feedback_id: int,
    payload: FeedbackReject,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Feedback:
    feedback = _get_feedback_or_404(db, feedback_id)
    return _transition(
        db,
        feedback,
        OPEN_STATUSES,
        FeedbackStatus.REJECTED,
        "Feedback is already closed",
        response=_sanitize(payload.reason),
        responder_id=current_user.id,
    )
