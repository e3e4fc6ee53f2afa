from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..deps import get_db, require_token
from ..models import Member
from ..schemas import MemberCreate, MemberOut, MembersListResponse


router = APIRouter(prefix="/api", tags=["members"], dependencies=[Depends(require_token)])


@router.post("/members.create", response_model=MemberOut)
def members_create(payload: MemberCreate, db: Session = Depends(get_db)):
    member = Member(
        id=str(uuid.uuid4()),
        full_name=payload.full_name.strip(),
        phone=payload.phone,
        email=payload.email,
        status=payload.status or "active",
    )
    db.add(member)
    db.commit()
    db.refresh(member)
    return member


@router.get("/members.list", response_model=MembersListResponse)
def members_list(
    db: Session = Depends(get_db),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    status: Optional[str] = None,
    q: Optional[str] = None,
):
    stmt = select(Member)
    if status:
        stmt = stmt.where(Member.status == status)
    if q:
        stmt = stmt.where(Member.full_name.ilike(f"%{q}%"))

    total = db.execute(stmt.order_by(Member.full_name.asc())).scalars().all()
    items = total[(page - 1) * page_size : page * page_size]
    return {"items": items, "total": len(total)}
