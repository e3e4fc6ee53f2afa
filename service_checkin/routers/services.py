from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..deps import get_db, require_token
from ..models import ServiceOccurrence, ServiceTemplate
from ..schemas import (
    OccurrenceCreate,
    OccurrenceOut,
    OccurrencesListResponse,
    TemplateCreate,
    TemplateOut,
    TemplatesListResponse,
)


router = APIRouter(prefix="/api", tags=["services"], dependencies=[Depends(require_token)])


@router.post("/templates.create", response_model=TemplateOut)
def templates_create(payload: TemplateCreate, db: Session = Depends(get_db)):
    t = ServiceTemplate(
        id=str(uuid.uuid4()),
        name=payload.name,
        default_duration_minutes=payload.default_duration_minutes,
        campus=payload.campus,
    )
    db.add(t)
    db.commit()
    db.refresh(t)
    return t


@router.get("/templates.list", response_model=TemplatesListResponse)
def templates_list(db: Session = Depends(get_db)):
    rows = db.execute(select(ServiceTemplate).order_by(ServiceTemplate.name.asc())).scalars().all()
    return {"items": rows, "total": len(rows)}


@router.post("/occurrences.create", response_model=OccurrenceOut)
def occurrences_create(payload: OccurrenceCreate, db: Session = Depends(get_db)):
    if not db.get(ServiceTemplate, payload.template_id):
        raise HTTPException(status_code=400, detail="Invalid template_id")
    if payload.end_time <= payload.start_time:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")

    occurrence = ServiceOccurrence(
        id=str(uuid.uuid4()),
        template_id=payload.template_id,
        service_date=payload.service_date,
        start_time=_naive_utc(payload.start_time),
        end_time=_naive_utc(payload.end_time),
    )
    db.add(occurrence)
    db.commit()
    db.refresh(occurrence)
    return _occurrence_out(occurrence)


@router.get("/occurrences.list", response_model=OccurrencesListResponse)
def occurrences_list(
    db: Session = Depends(get_db),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    template_id: Optional[str] = None,
):
    stmt = select(ServiceOccurrence)
    if template_id:
        stmt = stmt.where(ServiceOccurrence.template_id == template_id)

    total = db.execute(stmt.order_by(ServiceOccurrence.start_time.desc())).scalars().unique().all()
    items = total[(page - 1) * page_size : page * page_size]
    return {"items": [_occurrence_out(o) for o in items], "total": len(total)}


@router.get("/occurrences.get", response_model=OccurrenceOut)
def occurrences_get(id: str = Query(...), db: Session = Depends(get_db)):
    occurrence: Optional[ServiceOccurrence] = db.get(ServiceOccurrence, id)
    if not occurrence:
        raise HTTPException(status_code=404, detail="Occurrence not found")
    return _occurrence_out(occurrence)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _occurrence_out(o: ServiceOccurrence) -> OccurrenceOut:
    return OccurrenceOut(
        id=o.id,
        template_id=o.template_id,
        template_name=o.template.name if o.template else None,
        service_date=o.service_date,
        start_time=o.start_time,
        end_time=o.end_time,
    )
