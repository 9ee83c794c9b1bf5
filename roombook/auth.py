"""Password hashing, JWT handling, and helper utilities."""
import re
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from fastapi import HTTPException, status
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .config import get_settings
from .models import RoleEnum, User

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
settings = get_settings()

_PASSWORD_RULES = (
    (re.compile(r"[A-Z]"), "an upper-case letter"),
    (re.compile(r"[a-z]"), "a lower-case letter"),
    (re.compile(r"\d"), "a digit"),
)

STAFF_ROLES = frozenset({RoleEnum.ADMIN, RoleEnum.FACILITY_MANAGER})


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def password_problems(password: str) -> list[str]:
    """Return the missing character classes; an empty list means the password is acceptable."""

    return [label for pattern, label in _PASSWORD_RULES if not pattern.search(password)]


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:  # pragma: no cover - jose already tested
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc


def is_admin(user: User) -> bool:
    return user.role == RoleEnum.ADMIN


def is_staff(user: User) -> bool:
    return user.role in STAFF_ROLES


def authenticate_user(db: Session, username: str, password: str) -> Optional[User]:
    """Check credentials and keep the failed-attempt counter; locks the account at the limit."""

    user: Optional[User] = db.query(User).filter(User.username == username).first()
    if not user:
        return None
    if user.is_locked:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is locked")
    if not verify_password(password, user.hashed_password):
        user.failed_attempts = (user.failed_attempts or 0) + 1
        if user.failed_attempts >= settings.max_failed_logins:
            user.is_locked = True
        db.commit()
        return None
    if user.failed_attempts:
        user.failed_attempts = 0
        db.commit()
    return user


def issue_account_token(lifetime_minutes: int, now: Optional[datetime] = None) -> Tuple[str, datetime]:
    """Single-use token for activation or password reset, with its expiry time."""

    now = now or datetime.utcnow()
    return secrets.token_urlsafe(32), now + timedelta(minutes=lifetime_minutes)


def token_is_valid(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    return expires_at is not None and expires_at > (now or datetime.utcnow())
