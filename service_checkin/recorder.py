from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import Conflict, InvalidIdentity, MemberNotFound, OccurrenceNotFound, PersistenceFailure, RecordNotFound
from .models import (
    ATTENDANCE_METHODS,
    ATTENDEE_CATEGORIES,
    CATEGORY_MEMBER,
    METHOD_MANUAL,
    AttendanceRecord,
    Member,
    ServiceOccurrence,
    SystemLog,
)
from .utils import member_dedup_key, normalize_name, public_dedup_key, utcnow


logger = logging.getLogger(__name__)


class LiveRoll:
    """Per-process headcount cache for the live roll display.

    Counts load from the database on first read and are bumped after each committed insert,
    so a read issued after a write returns sees that write. A loaded count is trusted for
    ``ttl_seconds`` only; after that it is recounted, which picks up rows written by other
    instances within one roll poll interval.
    """

    def __init__(self, ttl_seconds: int = 30, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or utcnow
        self._counts: Dict[str, Tuple[int, datetime]] = {}
        self._writes: Dict[str, int] = {}
        self._lock = threading.Lock()

    def count(self, db: Session, occurrence_id: str) -> int:
        now = self._clock()
        with self._lock:
            cached = self._counts.get(occurrence_id)
            writes_before = self._writes.get(occurrence_id, 0)
        if cached is not None and now - cached[1] < self.ttl:
            return cached[0]
        total = db.execute(
            select(func.count()).select_from(AttendanceRecord).where(AttendanceRecord.occurrence_id == occurrence_id)
        ).scalar_one()
        with self._lock:
            # Only cache if no insert committed while we were counting
            if self._writes.get(occurrence_id, 0) == writes_before:
                self._counts[occurrence_id] = (total, now)
            else:
                self._counts.pop(occurrence_id, None)
        return total

    def snapshot(self, db: Session, occurrence_id: str, poll_interval_seconds: int) -> dict:
        return {
            "occurrence_id": occurrence_id,
            "count": self.count(db, occurrence_id),
            "poll_interval_seconds": poll_interval_seconds,
        }

    def bump(self, occurrence_id: str) -> None:
        with self._lock:
            self._writes[occurrence_id] = self._writes.get(occurrence_id, 0) + 1
            cached = self._counts.get(occurrence_id)
            if cached is not None:
                self._counts[occurrence_id] = (cached[0] + 1, cached[1])

    def invalidate(self, occurrence_id: Optional[str] = None) -> None:
        with self._lock:
            if occurrence_id is None:
                self._counts.clear()
            else:
                self._counts.pop(occurrence_id, None)


class CommitDeadline:
    """Cut-off shared by a request that waits on a check-in and the worker that runs it.

    The worker calls ``claim()`` just before committing; the waiter calls ``expire()`` when
    it stops waiting. Whichever comes first wins. After a successful claim the waiter must
    wait for the outcome, and after an expiry the worker rolls back, so the caller's answer
    always matches what was stored.
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._at = clock() + seconds
        self._lock = threading.Lock()
        self._state: Optional[str] = None

    def claim(self) -> bool:
        with self._lock:
            if self._state == "expired" or self._clock() >= self._at:
                self._state = "expired"
                return False
            self._state = "claimed"
            return True

    def expire(self) -> bool:
        """False when the worker already claimed the commit."""
        with self._lock:
            if self._state == "claimed":
                return False
            self._state = "expired"
            return True


class AttendanceRecorder:
    """Sole writer of attendance rows.

    Every insert goes straight to the database and relies on the
    (occurrence_id, dedup_key) unique constraint; there is no read-then-write check, so two
    simultaneous scans of the same identity cannot both land.
    """

    def __init__(self, roll: Optional[LiveRoll] = None) -> None:
        self.roll = roll or LiveRoll()

    # Writes

    def record_manual(
        self, db: Session, member_id: str, occurrence_id: str, method: str = METHOD_MANUAL
    ) -> AttendanceRecord:
        record, created = self.record_member(db, member_id, occurrence_id, method)
        if not created:
            raise Conflict()
        return record

    def record_member(
        self, db: Session, member_id: str, occurrence_id: str, method: str
    ) -> Tuple[AttendanceRecord, bool]:
        if method not in ATTENDANCE_METHODS:
            raise ValueError(f"Unsupported method: {method}")
        self._require_occurrence(db, occurrence_id)
        if db.get(Member, member_id) is None:
            raise MemberNotFound()
        record = AttendanceRecord(
            id=str(uuid.uuid4()),
            occurrence_id=occurrence_id,
            member_id=member_id,
            method=method,
            dedup_key=member_dedup_key(member_id),
        )
        return self._insert(db, record, actor="staff" if method == METHOD_MANUAL else "member")

    def record_public(
        self,
        db: Session,
        occurrence_id: str,
        name: str,
        phone: Optional[str],
        category: Optional[str],
        notes: Optional[str],
        method: str,
        deadline: Optional[CommitDeadline] = None,
    ) -> Tuple[AttendanceRecord, bool]:
        if method not in ATTENDANCE_METHODS:
            raise ValueError(f"Unsupported method: {method}")
        if not normalize_name(name):
            raise InvalidIdentity()
        if category is not None and category not in ATTENDEE_CATEGORIES:
            raise InvalidIdentity("Unknown attendee category")
        self._require_occurrence(db, occurrence_id)
        phone = (phone or "").strip() or None
        record = AttendanceRecord(
            id=str(uuid.uuid4()),
            occurrence_id=occurrence_id,
            guest_name=" ".join(name.split()),
            guest_phone=phone,
            category=category or CATEGORY_MEMBER,
            notes=(notes or "").strip() or None,
            method=method,
            dedup_key=public_dedup_key(name, phone),
        )
        return self._insert(db, record, actor="public", deadline=deadline)

    def link_to_member(self, db: Session, record_id: str, member_id: str) -> AttendanceRecord:
        record: Optional[AttendanceRecord] = db.get(AttendanceRecord, record_id)
        if record is None:
            raise RecordNotFound()
        if db.get(Member, member_id) is None:
            raise MemberNotFound()
        if record.member_id == member_id:
            return record
        record.member_id = member_id
        record.dedup_key = member_dedup_key(member_id)
        db.add(record)
        db.add(
            SystemLog(
                actor="staff", action="attendance.link", entity="attendance", entity_id=record.id, status="ok",
                message=f"member={member_id}",
            )
        )
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise Conflict("Member already has an attendance record for this service")
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("linking attendance %s failed: %s", record_id, exc)
            raise PersistenceFailure() from exc
        db.refresh(record)
        return record

    # Reads

    def list_for_occurrence(self, db: Session, occurrence_id: str) -> List[AttendanceRecord]:
        return list(
            db.execute(
                select(AttendanceRecord)
                .where(AttendanceRecord.occurrence_id == occurrence_id)
                .order_by(AttendanceRecord.checked_in_at.asc(), AttendanceRecord.id.asc())
            )
            .scalars()
            .unique()
            .all()
        )

    def list_for_member(self, db: Session, member_id: str) -> List[AttendanceRecord]:
        return list(
            db.execute(
                select(AttendanceRecord)
                .where(AttendanceRecord.member_id == member_id)
                .order_by(AttendanceRecord.checked_in_at.desc())
            )
            .scalars()
            .unique()
            .all()
        )

    def streak(self, db: Session, member_id: str) -> int:
        """Consecutive most recent started occurrences the member attended."""
        attended = set(
            db.execute(
                select(AttendanceRecord.occurrence_id).where(AttendanceRecord.member_id == member_id)
            ).scalars()
        )
        if not attended:
            return 0
        started = db.execute(
            select(ServiceOccurrence.id)
            .where(ServiceOccurrence.start_time <= utcnow())
            .order_by(ServiceOccurrence.start_time.desc())
        ).scalars()
        count = 0
        for occurrence_id in started:
            if occurrence_id not in attended:
                break
            count += 1
        return count

    # Internals

    def _require_occurrence(self, db: Session, occurrence_id: str) -> ServiceOccurrence:
        occurrence = db.get(ServiceOccurrence, occurrence_id)
        if occurrence is None:
            raise OccurrenceNotFound()
        return occurrence

    def _insert(
        self, db: Session, record: AttendanceRecord, actor: str, deadline: Optional[CommitDeadline] = None
    ) -> Tuple[AttendanceRecord, bool]:
        db.add(record)
        db.add(
            SystemLog(
                actor=actor, action="attendance.check_in", entity="occurrence", entity_id=record.occurrence_id,
                status="ok", message=record.method,
            )
        )
        try:
            db.flush()
            if deadline is not None and not deadline.claim():
                db.rollback()
                logger.error("attendance insert for %s abandoned after the caller timed out", record.occurrence_id)
                raise PersistenceFailure()
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = db.execute(
                select(AttendanceRecord).where(
                    AttendanceRecord.occurrence_id == record.occurrence_id,
                    AttendanceRecord.dedup_key == record.dedup_key,
                )
            ).scalar_one_or_none()
            if existing is None:
                # Constraint tripped on something other than the identity key
                logger.error("attendance insert for %s violated an unexpected constraint", record.occurrence_id)
                raise PersistenceFailure()
            return existing, False
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("attendance insert for %s failed: %s", record.occurrence_id, exc)
            raise PersistenceFailure() from exc
        db.refresh(record)
        self.roll.bump(record.occurrence_id)
        return record, True
