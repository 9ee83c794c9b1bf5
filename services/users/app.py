from contextlib import asynccontextmanager
from datetime import datetime
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session, joinedload

from roombook import auth
from roombook.config import get_settings
from roombook.database import Base, engine, get_db
from roombook.dependencies import get_current_active_user, require_admin
from roombook.errors import add_error_handlers
from roombook.logging_middleware import add_audit_middleware, configure_logging
from roombook.models import Booking, RoleEnum, User
from roombook.notifications import ACCOUNT_ACTIVATION, PASSWORD_RESET, AccountNotifier, get_notifier
from roombook.rate_limit import apply_rate_limiter, limiter
from roombook.schemas import (
    AccountActivation,
    BookingDetail,
    BookingPermissionUpdate,
    EmailRequest,
    PasswordChange,
    PasswordResetConfirm,
    Token,
    UserCreate,
    UserRead,
)

logger = logging.getLogger("roombook.users")
settings = get_settings()


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.run_db_migrations:
        Base.metadata.create_all(bind=engine)
    yield


def create_app() -> FastAPI:
    fastapi_app = FastAPI(title="Users Service", version="0.3.0", lifespan=lifespan)
    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    apply_rate_limiter(fastapi_app)
    add_error_handlers(fastapi_app)
    add_audit_middleware(fastapi_app, "users")
    configure_logging()
    return fastapi_app


app = create_app()


def _get_user_or_404(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User does not exist, ID: {user_id}")
    return user


def _ensure_self_or_admin(current_user: User, user_id: int) -> None:
    if not auth.is_admin(current_user) and current_user.id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied")


def _ensure_password_policy(password: str) -> None:
    problems = auth.password_problems(password)
    if problems:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must contain " + ", ".join(problems),
        )


def _send_account_token(notifier: AccountNotifier, user: User, purpose: str, token: str, expires_at: datetime) -> None:
    try:
        notifier.send_account_token(user, purpose, token, expires_at)
    except Exception:  # the token stays valid; the user can ask for a new mail
        logger.exception("Failed to send %s mail to user %s", purpose, user.id)


def _start_activation(user: User) -> tuple[str, datetime]:
    token, expires_at = auth.issue_account_token(settings.activation_token_expire_minutes)
    user.activation_token = token
    user.activation_expires = expires_at
    return token, expires_at


@app.get("/health", tags=["health"])
def health() -> dict[str, str]:
    return {"status": "ok", "service": "users"}


@app.post("/users/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("5/minute")
def register_user(
    request: Request,
    user_in: UserCreate,
    db: Session = Depends(get_db),
    notifier: AccountNotifier = Depends(get_notifier),
) -> User:
    if db.query(User).filter((User.username == user_in.username) | (User.email == user_in.email)).first():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username or email already exists")
    _ensure_password_policy(user_in.password)

    target_role = user_in.role
    admins_exist = db.query(User).filter(User.role == RoleEnum.ADMIN).first() is not None
    if target_role != RoleEnum.REGULAR and admins_exist:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only admins can assign elevated roles")

    user = User(
        name=user_in.name,
        username=user_in.username,
        email=user_in.email,
        role=target_role,
        hashed_password=auth.get_password_hash(user_in.password),
        is_activated=not settings.require_activation,
    )
    activation = _start_activation(user) if settings.require_activation else None
    db.add(user)
    db.commit()
    db.refresh(user)
    if activation:
        _send_account_token(notifier, user, ACCOUNT_ACTIVATION, *activation)
    return user


@app.post("/users/login", response_model=Token)
@limiter.limit("10/minute")
def login(request: Request, form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> Token:
    user = auth.authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect username or password")
    if not user.is_activated:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is not activated")

    access_token = auth.create_access_token({"sub": user.username, "role": user.role.value})
    return Token(access_token=access_token)


@app.post("/users/activate", response_model=UserRead)
@limiter.limit("10/minute")
def activate_account(request: Request, payload: AccountActivation, db: Session = Depends(get_db)) -> User:
    user = db.query(User).filter(User.activation_token == payload.token).first()
    if not user or not auth.token_is_valid(user.activation_expires):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Activation token is invalid or expired")
    user.is_activated = True
    user.activation_token = None
    user.activation_expires = None
    db.commit()
    db.refresh(user)
    return user


@app.post("/users/activation/resend", status_code=status.HTTP_202_ACCEPTED)
@limiter.limit("3/minute")
def resend_activation(
    request: Request,
    payload: EmailRequest,
    db: Session = Depends(get_db),
    notifier: AccountNotifier = Depends(get_notifier),
) -> dict[str, str]:
    user = db.query(User).filter(User.email == payload.email).first()
    if user and not user.is_activated:
        activation = _start_activation(user)
        db.commit()
        _send_account_token(notifier, user, ACCOUNT_ACTIVATION, *activation)
    return {"detail": "If the account is waiting for activation, a new activation mail has been sent"}


@app.post("/users/password-reset/request", status_code=status.HTTP_202_ACCEPTED)
@limiter.limit("3/minute")
def request_password_reset(
    request: Request,
    payload: EmailRequest,
    db: Session = Depends(get_db),
    notifier: AccountNotifier = Depends(get_notifier),
) -> dict[str, str]:
    user = db.query(User).filter(User.email == payload.email).first()
    if user:
        token, expires_at = auth.issue_account_token(settings.reset_token_expire_minutes)
        user.reset_token = token
        user.reset_expires = expires_at
        db.commit()
        _send_account_token(notifier, user, PASSWORD_RESET, token, expires_at)
    return {"detail": "If the email is registered, a password reset mail has been sent"}


@app.post("/users/password-reset/confirm", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("5/minute")
def confirm_password_reset(request: Request, payload: PasswordResetConfirm, db: Session = Depends(get_db)) -> None:
    user = db.query(User).filter(User.reset_token == payload.token).first()
    if not user or not auth.token_is_valid(user.reset_expires):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Reset token is invalid or expired")
    if auth.verify_password(payload.new_password, user.hashed_password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="New password must differ from the current one")
    _ensure_password_policy(payload.new_password)
    user.hashed_password = auth.get_password_hash(payload.new_password)
    user.reset_token = None
    user.reset_expires = None
    user.failed_attempts = 0
    db.commit()


@app.get("/users/me", response_model=UserRead)
def read_me(current_user: User = Depends(get_current_active_user)) -> User:
    return current_user


@app.put("/users/me/password", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("5/minute")
def change_password(
    request: Request,
    payload: PasswordChange,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> None:
    if not auth.verify_password(payload.current_password, current_user.hashed_password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect")
    if auth.verify_password(payload.new_password, current_user.hashed_password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="New password must differ from the current one")
    _ensure_password_policy(payload.new_password)
    current_user.hashed_password = auth.get_password_hash(payload.new_password)
    db.commit()


@app.get("/users", response_model=List[UserRead])
@limiter.limit("20/minute")
def list_users(
    request: Request,
    role: Optional[RoleEnum] = None,
    locked: Optional[bool] = None,
    suspended: Optional[bool] = None,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[User]:
    query = db.query(User)
    if role is not None:
        query = query.filter(User.role == role)
    if locked is not None:
        query = query.filter(User.is_locked.is_(locked))
    if suspended is not None:
        query = query.filter(User.booking_suspended.is_(suspended))
    return query.order_by(User.id).all()


@app.get("/users/search", response_model=List[UserRead])
@limiter.limit("20/minute")
def search_users(
    request: Request,
    user_id: Optional[int] = None,
    username: Optional[str] = None,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> List[User]:
    query = db.query(User)
    if user_id is not None:
        query = query.filter(User.id == user_id)
    if username:
        query = query.filter(User.username.ilike(f"%{username}%"))
    return query.order_by(User.id).all()


@app.get("/users/{user_id}", response_model=UserRead)
@limiter.limit("30/minute")
def get_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> User:
    _ensure_self_or_admin(current_user, user_id)
    return _get_user_or_404(db, user_id)


@app.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("5/minute")
def delete_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> None:
    user = _get_user_or_404(db, user_id)
    if user.id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Admins cannot delete their own account")
    # bookings survive with user_id NULL; the compliance sweep cancels them
    db.delete(user)
    db.commit()


@app.post("/users/{user_id}/lock", response_model=UserRead)
@limiter.limit("10/minute")
def lock_user(
    request: Request,
    user_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> User:
    user = _get_user_or_404(db, user_id)
    if user.id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Admins cannot lock their own account")
    user.is_locked = True
    db.commit()
    db.refresh(user)
    return user


@app.post("/users/{user_id}/unlock", response_model=UserRead)
@limiter.limit("10/minute")
def unlock_user(
    request: Request,
    user_id: int,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> User:
    user = _get_user_or_404(db, user_id)
    user.is_locked = False
    user.failed_attempts = 0
    db.commit()
    db.refresh(user)
    return user


@app.put("/users/{user_id}/booking-permission", response_model=UserRead)
@limiter.limit("10/minute")
def update_booking_permission(
    request: Request,
    user_id: int,
    payload: BookingPermissionUpdate,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> User:
    user = _get_user_or_404(db, user_id)
    user.booking_suspended = payload.suspended
    db.commit()
    db.refresh(user)
    return user


@app.get("/users/{user_id}/bookings", response_model=List[BookingDetail])
@limiter.limit("30/minute")
def user_booking_details(
    request: Request,
    user_id: int,
    current_user: User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
) -> List[BookingDetail]:
    _ensure_self_or_admin(current_user, user_id)
    user = _get_user_or_404(db, user_id)
    bookings = (
        db.query(Booking)
        .options(joinedload(Booking.room))
        .filter(Booking.user_id == user.id)
        .order_by(Booking.start_time.desc())
        .all()
    )
    return [
        BookingDetail.model_validate(booking).model_copy(
            update={
                "room_code": booking.room.room_code if booking.room else None,
                "room_name": booking.room.display_name if booking.room else None,
                "username": user.username,
            }
        )
        for booking in bookings
    ]
