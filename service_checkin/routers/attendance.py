from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..config import get_settings
from ..deps import get_db, get_issuer, get_recorder, get_verifier, require_token
from ..issuer import TokenIssuer
from ..models import AttendanceRecord
from ..recorder import AttendanceRecorder
from ..schemas import (
    AttendanceListResponse,
    AttendanceOut,
    LinkToMember,
    LiveRollOut,
    ManualCheckIn,
    MemberQRCheckIn,
    MemberQRCheckInResponse,
    StreakOut,
    TokenOut,
)
from ..verifier import CheckInVerifier


router = APIRouter(prefix="/api", tags=["attendance"], dependencies=[Depends(require_token)])


@router.get("/attendance.rotating_token", response_model=TokenOut)
def rotating_token(
    occurrence_id: str = Query(...),
    db: Session = Depends(get_db),
    issuer: TokenIssuer = Depends(get_issuer),
):
    """Current live code for a display; poll every ``refresh_after_seconds``."""
    return issuer.get_rotating_token(db, occurrence_id)


@router.get("/attendance.static_token", response_model=TokenOut)
def static_token(
    occurrence_id: str = Query(...),
    db: Session = Depends(get_db),
    issuer: TokenIssuer = Depends(get_issuer),
):
    """Day-long code for printed signage. Stable until it expires."""
    return issuer.get_static_token(db, occurrence_id)


@router.post("/attendance.manual_check_in", response_model=AttendanceOut)
def manual_check_in(
    payload: ManualCheckIn,
    db: Session = Depends(get_db),
    recorder: AttendanceRecorder = Depends(get_recorder),
):
    record = recorder.record_manual(db, payload.member_id, payload.occurrence_id, payload.method)
    return attendance_out(record)


@router.post("/attendance.qr_check_in", response_model=MemberQRCheckInResponse)
def member_qr_check_in(
    payload: MemberQRCheckIn,
    db: Session = Depends(get_db),
    verifier: CheckInVerifier = Depends(get_verifier),
):
    result = verifier.verify_member(db, payload.token, payload.member_id)
    return MemberQRCheckInResponse(already_checked_in=result.duplicate, record=attendance_out(result.record))


@router.get("/attendance.list", response_model=AttendanceListResponse)
def attendance_list(
    occurrence_id: str = Query(...),
    db: Session = Depends(get_db),
    recorder: AttendanceRecorder = Depends(get_recorder),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=100, ge=1, le=500),
):
    total = recorder.list_for_occurrence(db, occurrence_id)
    items = total[(page - 1) * page_size : page * page_size]
    return {"items": [attendance_out(r) for r in items], "total": len(total)}


@router.get("/attendance.roll", response_model=LiveRollOut)
def attendance_roll(
    occurrence_id: str = Query(...),
    db: Session = Depends(get_db),
    recorder: AttendanceRecorder = Depends(get_recorder),
):
    return recorder.roll.snapshot(db, occurrence_id, get_settings().roll_poll_interval_seconds)


@router.get("/attendance.by_member", response_model=AttendanceListResponse)
def attendance_by_member(
    member_id: str = Query(...),
    db: Session = Depends(get_db),
    recorder: AttendanceRecorder = Depends(get_recorder),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
):
    total = recorder.list_for_member(db, member_id)
    items = total[(page - 1) * page_size : page * page_size]
    return {"items": [attendance_out(r) for r in items], "total": len(total)}


@router.get("/attendance.streak", response_model=StreakOut)
def attendance_streak(
    member_id: str = Query(...),
    db: Session = Depends(get_db),
    recorder: AttendanceRecorder = Depends(get_recorder),
):
    return StreakOut(member_id=member_id, streak=recorder.streak(db, member_id))


@router.post("/attendance.link", response_model=AttendanceOut)
def attendance_link(
    payload: LinkToMember,
    db: Session = Depends(get_db),
    recorder: AttendanceRecorder = Depends(get_recorder),
):
    record = recorder.link_to_member(db, payload.id, payload.member_id)
    return attendance_out(record)


def attendance_out(r: AttendanceRecord) -> AttendanceOut:
    return AttendanceOut(
        id=r.id,
        occurrence_id=r.occurrence_id,
        member_id=r.member_id,
        member_name=r.member.full_name if r.member else None,
        guest_name=r.guest_name,
        guest_phone=r.guest_phone,
        category=r.category,
        notes=r.notes,
        method=r.method,
        checked_in_at=r.checked_in_at,
    )
