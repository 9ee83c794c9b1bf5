from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import List, Optional

from fastapi import Body, Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func
from sqlalchemy.orm import Session

from roombook.cache import invalidate_room, room_cache
from roombook.compliance import ComplianceSweeper
from roombook.config import get_settings
from roombook.conflicts import has_conflict
from roombook.database import Base, engine, get_db
from roombook.dependencies import get_current_active_user, require_admin, require_staff
from roombook.errors import add_error_handlers
from roombook.intervals import ACTIVE_STATUSES, BookingStatus, TimeInterval
from roombook.lifecycle import BookingManager, get_room
from roombook.logging_middleware import add_audit_middleware, configure_logging
from roombook.models import Booking, Room, User
from roombook.notifications import BookingNotifier, get_notifier
from roombook.rate_limit import apply_rate_limiter, limiter
from roombook.schemas import (
    AdminCancelRequest,
    BookingCreate,
    BookingRead,
    BookingUpdate,
    FrequentBooker,
    SweepResult,
)

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Bookings Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "bookings")
    configure_logging()
    return fastapi_app


app = create_app()


def get_booking_manager(
    db: Session = Depends(get_db),
    notifier: BookingNotifier = Depends(get_notifier),
) -> BookingManager:
    return BookingManager(db, notifier=notifier, settings=settings)


def get_sweeper(db: Session = Depends(get_db)) -> ComplianceSweeper:
    return ComplianceSweeper(db, settings=settings)


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "bookings"}


@app.post("/bookings", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_booking(
    request: Request,
    booking_in: BookingCreate,
    current_user: User = Depends(get_current_active_user),
    manager: BookingManager = Depends(get_booking_manager),
) -> Booking:
    booking = manager.book(
        current_user,
        booking_in.room_id,
        TimeInterval(booking_in.start_time, booking_in.end_time),
        title=booking_in.title,
    )
    invalidate_room(booking_in.room_id)
    return booking


@app.get("/bookings/me", response_model=List[BookingRead])
@limiter.limit("30/minute")
def list_my_bookings(
    request: Request,
    room_id: Optional[int] = None,
    reverse: bool = False,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[Booking]:
    query = db.query(Booking).filter(Booking.user_id == current_user.id)
    if room_id is not None:
        query = query.filter(Booking.room_id == room_id)
    order = Booking.start_time.desc() if reverse else Booking.start_time.asc()
    return query.order_by(order).all()


@app.get("/bookings/availability")
@limiter.limit("40/minute")
def check_availability(
    request: Request,
    room_id: int,
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    db: Session = Depends(get_db),
) -> dict[str, int | bool]:
    interval = TimeInterval(start_time, end_time).validate()
    room = get_room(db, room_id, active_only=True)
    available = not has_conflict(db, room.id, interval.start, interval.end)
    return {"room_id": room.id, "available": available}


@app.get("/bookings/{booking_id}", response_model=BookingRead)
@limiter.limit("60/minute")
def read_booking(
    request: Request,
    booking_id: int,
    current_user: User = Depends(get_current_active_user),
    manager: BookingManager = Depends(get_booking_manager),
) -> Booking:
    return manager.get_booking(current_user, booking_id)


@app.put("/bookings/{booking_id}", response_model=BookingRead)
@limiter.limit("20/minute")
def update_booking(
    request: Request,
    booking_id: int,
    booking_update: BookingUpdate,
    current_user: User = Depends(get_current_active_user),
    manager: BookingManager = Depends(get_booking_manager),
) -> Booking:
    booking = manager.get_booking(current_user, booking_id)
    previous_room_id = booking.room_id
    data = booking_update.model_dump(exclude_unset=True)
    interval = None
    if "start_time" in data or "end_time" in data:
        interval = TimeInterval(
            data.get("start_time") or booking.start_time,
            data.get("end_time") or booking.end_time,
        )
    updated = manager.reschedule(
        current_user,
        booking_id,
        room_id=data.get("room_id"),
        interval=interval,
        title=data.get("title"),
    )
    for room_id in {previous_room_id, updated.room_id}:
        if room_id is not None:
            invalidate_room(room_id)
    return updated


@app.delete("/bookings/{booking_id}", response_model=BookingRead)
@limiter.limit("20/minute")
def cancel_booking(
    request: Request,
    booking_id: int,
    current_user: User = Depends(get_current_active_user),
    manager: BookingManager = Depends(get_booking_manager),
) -> Booking:
    booking = manager.cancel(current_user, booking_id)
    if booking.room_id is not None:
        invalidate_room(booking.room_id)
    return booking


@app.get("/admin/bookings", response_model=List[BookingRead])
@limiter.limit("30/minute")
def list_bookings(
    request: Request,
    room_id: Optional[int] = None,
    user_id: Optional[int] = None,
    on: Optional[date] = Query(default=None, alias="date"),
    booking_status: Optional[BookingStatus] = Query(default=None, alias="status"),
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[Booking]:
    query = db.query(Booking)
    if room_id is not None:
        query = query.filter(Booking.room_id == room_id)
    if user_id is not None:
        query = query.filter(Booking.user_id == user_id)
    if on is not None:
        day = TimeInterval.for_day(datetime.combine(on, datetime.min.time()))
        query = query.filter(Booking.start_time >= day.start, Booking.start_time < day.end)
    if booking_status is not None:
        query = query.filter(Booking.status == booking_status.value)
    return query.order_by(Booking.start_time.desc()).all()


@app.post("/admin/bookings/sweep", response_model=SweepResult)
@limiter.limit("5/minute")
def cancel_non_compliant_bookings(
    request: Request,
    _: User = Depends(require_admin),
    sweeper: ComplianceSweeper = Depends(get_sweeper),
) -> SweepResult:
    report = sweeper.sweep_non_compliant()
    if report:
        room_cache.clear()
    detail = (
        "Non-compliant bookings have been successfully cancelled."
        if report
        else "No non-compliant bookings need to be cancelled."
    )
    return SweepResult(
        cancelled=report.cancelled,
        failed=report.failed,
        by_reason=report.by_reason,
        booking_ids=report.booking_ids,
        detail=detail,
    )


@app.post("/admin/bookings/expire")
@limiter.limit("5/minute")
def expire_finished_bookings(
    request: Request,
    _: User = Depends(require_admin),
    manager: BookingManager = Depends(get_booking_manager),
) -> dict[str, int]:
    expired = manager.expire_finished()
    if expired:
        room_cache.clear()
    return {"expired": expired}


@app.post("/admin/bookings/{booking_id}/cancel", response_model=BookingRead)
@limiter.limit("20/minute")
def admin_cancel_booking(
    request: Request,
    booking_id: int,
    payload: Optional[AdminCancelRequest] = Body(default=None),
    current_user: User = Depends(require_admin),
    manager: BookingManager = Depends(get_booking_manager),
) -> Booking:
    booking = manager.admin_cancel(current_user, booking_id, reason=payload.reason if payload else None)
    if booking.room_id is not None:
        invalidate_room(booking.room_id)
    return booking


@app.get("/analytics/rooms/popularity")
@limiter.limit("30/minute")
def room_popularity(
    request: Request,
    limit: int = Query(5, ge=1, le=25),
    _: User = Depends(require_staff),
    db: Session = Depends(get_db),
) -> list[dict[str, int | str]]:
    rows = (
        db.query(Room.id, Room.room_code, func.count(Booking.id).label("booking_count"))
        .outerjoin(Booking, (Booking.room_id == Room.id) & Booking.status.in_(ACTIVE_STATUSES))
        .group_by(Room.id, Room.room_code)
        .order_by(func.count(Booking.id).desc(), Room.id)
        .limit(limit)
        .all()
    )
    return [
        {
            "room_id": room_id,
            "room_code": room_code,
            "booking_count": booking_count,
        }
        for room_id, room_code, booking_count in rows
    ]


@app.get("/analytics/users/frequent", response_model=List[FrequentBooker])
@limiter.limit("30/minute")
def frequent_booking_users(
    request: Request,
    on: Optional[date] = None,
    ascending: bool = False,
    limit: int = Query(10, ge=1, le=100),
    _: User = Depends(require_staff),
    db: Session = Depends(get_db),
) -> List[FrequentBooker]:
    day = TimeInterval.for_day(datetime.combine(on or datetime.utcnow().date(), datetime.min.time()))
    booking_count = func.count(Booking.id)
    rows = (
        db.query(User.id, User.username, User.name, User.booking_suspended, booking_count.label("booking_count"))
        .join(Booking, Booking.user_id == User.id)
        .filter(
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.start_time >= day.start,
            Booking.start_time < day.end,
        )
        .group_by(User.id, User.username, User.name, User.booking_suspended)
        .order_by(booking_count.asc() if ascending else booking_count.desc(), User.id)
        .limit(limit)
        .all()
    )
    return [
        FrequentBooker(
            user_id=user_id,
            username=username,
            name=name,
            booking_count=count,
            booking_suspended=suspended,
        )
        for user_id, username, name, suspended, count in rows
    ]
