from __future__ import annotations

from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


AttendanceMethod = Literal["QR_ROTATING", "QR_STATIC", "MANUAL"]
AttendeeCategory = Literal["MEMBER", "VISITOR"]


# Members
class MemberCreate(BaseModel):
    full_name: str = Field(min_length=1, max_length=255)
    phone: Optional[str] = None
    email: Optional[str] = None
    status: Optional[str] = Field(default="active")


class MemberOut(BaseModel):
    id: str
    full_name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    status: str

    model_config = dict(from_attributes=True)


class MembersListResponse(BaseModel):
    items: List[MemberOut]
    total: int


# Service templates and occurrences
class TemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    default_duration_minutes: Optional[int] = Field(default=None, ge=1)
    campus: Optional[str] = None


class TemplateOut(BaseModel):
    id: str
    name: str
    default_duration_minutes: Optional[int]
    campus: Optional[str]

    model_config = dict(from_attributes=True)


class TemplatesListResponse(BaseModel):
    items: List[TemplateOut]
    total: int


class OccurrenceCreate(BaseModel):
    template_id: str
    service_date: date
    start_time: datetime
    end_time: datetime


class OccurrenceOut(BaseModel):
    id: str
    template_id: str
    template_name: Optional[str] = None
    service_date: date
    start_time: datetime
    end_time: datetime


class OccurrencesListResponse(BaseModel):
    items: List[OccurrenceOut]
    total: int


# Tokens
class TokenOut(BaseModel):
    token: str
    kind: Literal["rotating", "static"]
    occurrence_id: str
    issued_at: datetime
    expires_at: datetime
    expires_in_seconds: int
    refresh_after_seconds: int
    url: str  # what the display encodes into the QR code


# Check-in
class PublicCheckIn(BaseModel):
    token: str = Field(default="", max_length=256)
    name: str = Field(default="", max_length=255)
    phone: Optional[str] = Field(default=None, max_length=64)
    category: AttendeeCategory = "MEMBER"
    notes: Optional[str] = Field(default=None, max_length=2000)


class PublicCheckInResponse(BaseModel):
    ok: bool = True
    success: bool = True
    occurrence_id: str
    already_checked_in: bool
    message: str


class ManualCheckIn(BaseModel):
    member_id: str
    occurrence_id: str
    method: AttendanceMethod = "MANUAL"


class MemberQRCheckIn(BaseModel):
    token: str = Field(default="", max_length=256)
    member_id: str


class MemberQRCheckInResponse(BaseModel):
    ok: bool = True
    already_checked_in: bool
    record: "AttendanceOut"


class LinkToMember(BaseModel):
    id: str
    member_id: str


class AttendanceOut(BaseModel):
    id: str
    occurrence_id: str
    member_id: Optional[str]
    member_name: Optional[str] = None
    guest_name: Optional[str]
    guest_phone: Optional[str]
    category: Optional[str]
    notes: Optional[str]
    method: str
    checked_in_at: datetime


class AttendanceListResponse(BaseModel):
    items: List[AttendanceOut]
    total: int


class LiveRollOut(BaseModel):
    occurrence_id: str
    count: int
    poll_interval_seconds: int


class StreakOut(BaseModel):
    member_id: str
    streak: int


MemberQRCheckInResponse.model_rebuild()
