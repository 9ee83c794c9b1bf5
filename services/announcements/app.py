from contextlib import asynccontextmanager
from datetime import datetime
from typing import List

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func, select
from sqlalchemy.orm import Query, Session

from roombook.config import get_settings
from roombook.database import Base, engine, get_db
from roombook.dependencies import get_current_active_user, require_admin
from roombook.errors import add_error_handlers
from roombook.logging_middleware import add_audit_middleware, configure_logging
from roombook.models import Announcement, AnnouncementRead as ReadReceipt, User
from roombook.rate_limit import apply_rate_limiter, limiter
from roombook.schemas import AnnouncementCreate, AnnouncementRead, UserAnnouncement

settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Announcements Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "announcements")
    configure_logging()
    return fastapi_app


app = create_app()


def _get_announcement_or_404(db: Session, announcement_id: int) -> Announcement:
    announcement = db.query(Announcement).filter(Announcement.id == announcement_id).first()
    if not announcement:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Announcement does not exist")
    return announcement


def _read_ids(db: Session, user_id: int) -> set[int]:
    rows = db.query(ReadReceipt.announcement_id).filter(ReadReceipt.user_id == user_id).all()
    return {announcement_id for (announcement_id,) in rows}


def _unread_query(db: Session, user_id: int) -> Query:
    already_read = select(ReadReceipt.announcement_id).where(ReadReceipt.user_id == user_id)
    return db.query(Announcement).filter(Announcement.id.not_in(already_read))


def _with_read_flag(announcement: Announcement, read_ids: set[int]) -> UserAnnouncement:
    return UserAnnouncement.model_validate(announcement).model_copy(update={"is_read": announcement.id in read_ids})


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "announcements"}


@app.post("/announcements", response_model=AnnouncementRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def publish_announcement(
    request: Request,
    payload: AnnouncementCreate,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Announcement:
    announcement = Announcement(
        title=payload.title.strip(),
        content=payload.content.strip(),
        publisher_id=current_user.id,
    )
    db.add(announcement)
    db.commit()
    db.refresh(announcement)
    return announcement


@app.put("/announcements/{announcement_id}", response_model=AnnouncementRead)
@limiter.limit("10/minute")
def update_announcement(
    request: Request,
    announcement_id: int,
    payload: AnnouncementCreate,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> Announcement:
    announcement = _get_announcement_or_404(db, announcement_id)
    announcement.title = payload.title.strip()
    announcement.content = payload.content.strip()
    announcement.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(announcement)
    return announcement


@app.delete("/announcements/{announcement_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("10/minute")
def delete_announcement(
    request: Request,
    announcement_id: int,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> None:
    announcement = _get_announcement_or_404(db, announcement_id)
    db.delete(announcement)
    db.commit()


@app.get("/admin/announcements", response_model=List[AnnouncementRead])
@limiter.limit("30/minute")
def all_announcements(request: Request, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> List[Announcement]:
    return db.query(Announcement).order_by(Announcement.created_at.desc(), Announcement.id.desc()).all()


@app.get("/admin/announcements/statistics")
@limiter.limit("30/minute")
def announcement_statistics(
    request: Request,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> list[dict[str, int | str]]:
    read_count = func.count(ReadReceipt.id)
    rows = (
        db.query(Announcement.id, Announcement.title, read_count.label("read_count"))
        .outerjoin(ReadReceipt, ReadReceipt.announcement_id == Announcement.id)
        .group_by(Announcement.id, Announcement.title)
        .order_by(Announcement.id)
        .all()
    )
    total_users = db.query(func.count(User.id)).scalar() or 0
    return [
        {
            "announcement_id": announcement_id,
            "title": title,
            "read_count": reads,
            "unread_count": max(total_users - reads, 0),
        }
        for announcement_id, title, reads in rows
    ]


@app.get("/announcements", response_model=List[UserAnnouncement])
@limiter.limit("60/minute")
def list_announcements(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[UserAnnouncement]:
    read_ids = _read_ids(db, current_user.id)
    announcements = db.query(Announcement).order_by(Announcement.created_at.desc(), Announcement.id.desc()).all()
    return [_with_read_flag(announcement, read_ids) for announcement in announcements]


@app.get("/announcements/unread", response_model=List[UserAnnouncement])
@limiter.limit("60/minute")
def unread_announcements(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[UserAnnouncement]:
    announcements = (
        _unread_query(db, current_user.id).order_by(Announcement.created_at.desc(), Announcement.id.desc()).all()
    )
    return [_with_read_flag(announcement, set()) for announcement in announcements]


@app.get("/announcements/unread/count")
@limiter.limit("60/minute")
def unread_count(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> dict[str, int]:
    return {"unread": _unread_query(db, current_user.id).count()}


@app.post("/announcements/{announcement_id}/read", response_model=UserAnnouncement)
@limiter.limit("60/minute")
def mark_read(
    request: Request,
    announcement_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> UserAnnouncement:
    announcement = _get_announcement_or_404(db, announcement_id)
    receipt = (
        db.query(ReadReceipt)
        .filter(ReadReceipt.announcement_id == announcement.id, ReadReceipt.user_id == current_user.id)
        .first()
    )
    if receipt is None:
        db.add(ReadReceipt(announcement_id=announcement.id, user_id=current_user.id))
        db.commit()
    return _with_read_flag(announcement, {announcement.id})
