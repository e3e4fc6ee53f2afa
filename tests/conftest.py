from __future__ import annotations

import sys
import uuid
from datetime import timedelta
from pathlib import Path

import pytest

# Ensure project root on path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from service_checkin.database import Base, SessionLocal, engine
from service_checkin.models import ServiceOccurrence, ServiceTemplate
from service_checkin.utils import utcnow


class FakeClock:
    """Settable stand-in for ``utcnow`` handed to token stores and the live roll."""

    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_occurrence(db):
    """Factory creating a template plus one occurrence; returns the occurrence id."""

    def _make(start_offset_minutes: int = -10, duration_minutes: int = 120, name: str = "Sunday Service") -> str:
        template = ServiceTemplate(id=str(uuid.uuid4()), name=name, default_duration_minutes=duration_minutes)
        db.add(template)
        start = utcnow() + timedelta(minutes=start_offset_minutes)
        occurrence = ServiceOccurrence(
            id=str(uuid.uuid4()),
            template_id=template.id,
            service_date=start.date(),
            start_time=start,
            end_time=start + timedelta(minutes=duration_minutes),
        )
        db.add(occurrence)
        db.commit()
        return occurrence.id

    return _make
