from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from typing import List, Optional

from circuitbreaker import circuit
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from roombook.cache import ROOM_LIST_PREFIX, invalidate_room, room_cache, room_status_key
from roombook.config import get_settings
from roombook.conflicts import find_active_bookings
from roombook.database import Base, engine, get_db
from roombook.dependencies import require_staff
from roombook.errors import add_error_handlers
from roombook.intervals import ACTIVE_STATUSES, TimeInterval
from roombook.lifecycle import get_room
from roombook.logging_middleware import add_audit_middleware, configure_logging
from roombook.models import Booking, Room, User
from roombook.rate_limit import apply_rate_limiter, limiter
from roombook.schemas import BookingRead, RoomCreate, RoomRead, RoomSchedule, RoomUpdate, TimeSlot

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Rooms Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "rooms")
    configure_logging()
    return fastapi_app


app = create_app()


def _normalize_facilities(facilities: Optional[List[str]]) -> List[str]:
    seen: List[str] = []
    for facility in facilities or []:
        cleaned = facility.strip()
        if cleaned and cleaned.lower() not in {item.lower() for item in seen}:
            seen.append(cleaned)
    return seen


def _has_facilities(room: Room, required: List[str]) -> bool:
    available = {facility.lower() for facility in room.facilities or []}
    return {facility.lower() for facility in required}.issubset(available)


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "rooms"}


@app.post("/rooms", response_model=RoomRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def add_room(
    request: Request,
    room_in: RoomCreate,
    _: User = Depends(require_staff),
    db: Session = Depends(get_db),
) -> Room:
    if db.query(Room).filter(Room.room_code == room_in.room_code).first():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Room code already exists")
    data = room_in.model_dump()
    data["facilities"] = _normalize_facilities(room_in.facilities)
    room = Room(**data)
    db.add(room)
    db.commit()
    db.refresh(room)
    invalidate_room(room.id)
    return room


@app.get("/rooms", response_model=List[RoomRead])
@circuit(failure_threshold=5, recovery_timeout=60)
def list_rooms(
    request: Request,
    room_code: Optional[str] = None,
    min_capacity: Optional[int] = Query(default=None, ge=1),
    max_capacity: Optional[int] = Query(default=None, ge=1),
    location: Optional[str] = None,
    facilities: Optional[List[str]] = Query(default=None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
) -> List[RoomRead]:
    required = _normalize_facilities(facilities)
    cache_key = (
        f"{ROOM_LIST_PREFIX}{room_code}:{min_capacity}:{max_capacity}:{location}:"
        f"{','.join(sorted(required))}:{skip}:{limit}"
    )
    cached = room_cache.get(cache_key)
    if cached is not None:
        return cached  # type: ignore[return-value]

    query = db.query(Room).filter(Room.is_active.is_(True))
    if room_code:
        query = query.filter(Room.room_code.ilike(f"%{room_code}%"))
    if min_capacity:
        query = query.filter(Room.capacity >= min_capacity)
    if max_capacity:
        query = query.filter(Room.capacity <= max_capacity)
    if location:
        query = query.filter(Room.location.ilike(f"%{location}%"))
    rooms = query.order_by(Room.room_code).all()
    if required:
        rooms = [room for room in rooms if _has_facilities(room, required)]
    result = [RoomRead.model_validate(room) for room in rooms[skip : skip + limit]]
    room_cache.set(cache_key, result)
    return result


@app.get("/admin/rooms", response_model=List[RoomRead])
@limiter.limit("30/minute")
def list_all_rooms(request: Request, _: User = Depends(require_staff), db: Session = Depends(get_db)) -> List[Room]:
    return db.query(Room).order_by(Room.room_code).all()


@app.get("/rooms/facilities", response_model=List[str])
@limiter.limit("60/minute")
def list_facilities(request: Request, db: Session = Depends(get_db)) -> List[str]:
    names: dict[str, str] = {}
    for (facilities,) in db.query(Room.facilities).filter(Room.is_active.is_(True)).all():
        for facility in facilities or []:
            names.setdefault(facility.lower(), facility)
    return sorted(names.values(), key=str.lower)


@app.get("/rooms/{room_id}", response_model=RoomRead)
@limiter.limit("60/minute")
def read_room(request: Request, room_id: int, db: Session = Depends(get_db)) -> Room:
    return get_room(db, room_id)


@app.get("/rooms/{room_id}/facilities", response_model=List[str])
@limiter.limit("60/minute")
def room_facilities(request: Request, room_id: int, db: Session = Depends(get_db)) -> List[str]:
    return list(get_room(db, room_id).facilities or [])


@app.get("/rooms/{room_id}/schedule", response_model=RoomSchedule)
@limiter.limit("30/minute")
def room_schedule(
    request: Request,
    room_id: int,
    on: date = Query(..., alias="date"),
    db: Session = Depends(get_db),
) -> RoomSchedule:
    if on < datetime.utcnow().date():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot view the schedule of a past date")
    room = get_room(db, room_id)
    day = TimeInterval.for_day(datetime.combine(on, datetime.min.time()))
    bookings = find_active_bookings(db, room.id, day.start, day.end)

    slots: List[TimeSlot] = []
    for hour in range(settings.schedule_open_hour, settings.schedule_close_hour):
        slot = TimeInterval(day.start + timedelta(hours=hour), day.start + timedelta(hours=hour + 1))
        taken = next(
            (booking for booking in bookings if slot.overlaps(TimeInterval(booking.start_time, booking.end_time))),
            None,
        )
        slots.append(
            TimeSlot(
                start_time=slot.start,
                end_time=slot.end,
                available=taken is None,
                booking_id=taken.id if taken else None,
            )
        )

    return RoomSchedule(
        room_id=room.id,
        room_code=room.room_code,
        display_name=room.display_name,
        day=on,
        bookings=[BookingRead.model_validate(booking) for booking in bookings],
        time_slots=slots,
    )


@app.put("/rooms/{room_id}", response_model=RoomRead)
@limiter.limit("15/minute")
def update_room(
    request: Request,
    room_id: int,
    room_update: RoomUpdate,
    _: User = Depends(require_staff),
    db: Session = Depends(get_db),
) -> Room:
    room = get_room(db, room_id)
    update_data = room_update.model_dump(exclude_unset=True)
    if "facilities" in update_data:
        update_data["facilities"] = _normalize_facilities(update_data["facilities"])
    for key, value in update_data.items():
        setattr(room, key, value)
    db.commit()
    db.refresh(room)
    invalidate_room(room.id)
    return room


@app.delete("/rooms/{room_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("15/minute")
def delete_room(
    request: Request,
    room_id: int,
    _: User = Depends(require_staff),
    db: Session = Depends(get_db),
) -> None:
    room = get_room(db, room_id)
    upcoming = (
        db.query(Booking)
        .filter(
            Booking.room_id == room.id,
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.end_time > datetime.utcnow(),
        )
        .count()
    )
    if upcoming:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Room has {upcoming} upcoming bookings; cancel them or deactivate the room",
        )
    db.delete(room)
    db.commit()
    invalidate_room(room_id)


@app.get("/rooms/{room_id}/status")
@limiter.limit("30/minute")
def room_status(
    request: Request,
    room_id: int,
    db: Session = Depends(get_db),
    force_refresh: bool = False,
) -> dict[str, str]:
    room = get_room(db, room_id)
    cache_key = room_status_key(room_id)
    if not force_refresh:
        cached = room_cache.get(cache_key)
        if cached:
            return cached  # type: ignore[return-value]
    now = datetime.utcnow()
    active_booking = (
        db.query(Booking)
        .filter(
            Booking.room_id == room_id,
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.start_time <= now,
            Booking.end_time > now,
        )
        .first()
    )
    if not room.is_active:
        status_label = "inactive"
    else:
        status_label = "booked" if active_booking else "available"
    payload = {
        "room_id": str(room_id),
        "status": status_label,
        "checked_at": now.isoformat(),
    }
    room_cache.set(cache_key, payload)
    return payload
