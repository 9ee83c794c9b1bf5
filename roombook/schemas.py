"""Pydantic schemas shared across the microservices."""
from __future__ import annotations

from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .intervals import BookingStatus, to_naive_utc
from .models import FeedbackStatus, FeedbackType, RoleEnum


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserBase(BaseModel):
    name: str = Field(..., max_length=100)
    username: str = Field(..., max_length=50)
    email: EmailStr
    role: RoleEnum = RoleEnum.REGULAR


class UserCreate(UserBase):
    password: str = Field(..., min_length=8)


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)


class AccountActivation(BaseModel):
    token: str = Field(..., min_length=1, max_length=64)


class EmailRequest(BaseModel):
    email: EmailStr


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=64)
    new_password: str = Field(..., min_length=8)


class BookingPermissionUpdate(BaseModel):
    suspended: bool


class UserRead(UserBase):
    id: int
    booking_suspended: bool
    is_locked: bool
    is_activated: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class RoomBase(BaseModel):
    room_code: str = Field(..., max_length=30)
    display_name: str = Field(..., max_length=100)
    capacity: int = Field(..., gt=0)
    location: str
    description: str = ""
    facilities: List[str] = Field(default_factory=list)
    is_active: bool = True


class RoomCreate(RoomBase):
    pass


class RoomUpdate(BaseModel):
    display_name: Optional[str] = Field(None, max_length=100)
    capacity: Optional[int] = Field(None, gt=0)
    location: Optional[str] = None
    description: Optional[str] = None
    facilities: Optional[List[str]] = None
    is_active: Optional[bool] = None


class RoomRead(RoomBase):
    id: int

    model_config = {"from_attributes": True}


class BookingBase(BaseModel):
    room_id: int
    start_time: datetime
    end_time: datetime
    title: str = Field("", max_length=200)

    @field_validator("start_time", "end_time")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class BookingCreate(BookingBase):
    pass


class BookingUpdate(BaseModel):
    room_id: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    title: Optional[str] = Field(None, max_length=200)

    @field_validator("start_time", "end_time")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value) if value is not None else None


class BookingRead(BaseModel):
    id: int
    room_id: Optional[int]
    user_id: Optional[int]
    title: str
    start_time: datetime
    end_time: datetime
    status: BookingStatus
    confirm_code: str
    cancel_reason: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingDetail(BookingRead):
    room_code: Optional[str] = None
    room_name: Optional[str] = None
    username: Optional[str] = None


class AdminCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class SweepResult(BaseModel):
    cancelled: int
    failed: int
    by_reason: Dict[str, int]
    booking_ids: List[int]
    detail: str


class TimeSlot(BaseModel):
    start_time: datetime
    end_time: datetime
    available: bool
    booking_id: Optional[int] = None


class RoomSchedule(BaseModel):
    room_id: int
    room_code: str
    display_name: str
    day: date
    bookings: List[BookingRead]
    time_slots: List[TimeSlot]


class FrequentBooker(BaseModel):
    user_id: int
    username: str
    name: str
    booking_count: int
    booking_suspended: bool


class FeedbackCreate(BaseModel):
    type: FeedbackType = FeedbackType.OTHER
    title: str = Field(..., min_length=3, max_length=200)
    content: str = Field(..., min_length=3, max_length=2000)


class FeedbackReply(BaseModel):
    response: str = Field(..., min_length=1, max_length=2000)


class FeedbackReject(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class FeedbackRead(BaseModel):
    id: int
    user_id: Optional[int]
    type: FeedbackType
    title: str
    content: str
    status: FeedbackStatus
    response: Optional[str] = None
    responder_id: Optional[int] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AnnouncementCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=5000)


class AnnouncementRead(BaseModel):
    id: int
    title: str
    content: str
    publisher_id: Optional[int]
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class UserAnnouncement(AnnouncementRead):
    is_read: bool = False
