from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from .config import Settings
from .errors import (
    CheckInClosed,
    CheckInError,
    ExpiredToken,
    InvalidIdentity,
    InvalidToken,
    OccurrenceNotFound,
    PersistenceFailure,
)
from .models import (
    CATEGORY_MEMBER,
    METHOD_QR_ROTATING,
    METHOD_QR_STATIC,
    AttendanceRecord,
    ServiceOccurrence,
)
from .recorder import AttendanceRecorder, CommitDeadline
from .token_store import KIND_STATIC, TokenEntry, TokenStore, TokenStoreUnavailable
from .utils import normalize_name


logger = logging.getLogger(__name__)

# secrets.token_urlsafe output, with slack for older or future token lengths
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


class VerificationState(str, enum.Enum):
    RECEIVED = "RECEIVED"
    TOKEN_VALIDATED = "TOKEN_VALIDATED"
    IDENTITY_RESOLVED = "IDENTITY_RESOLVED"
    RECORDED = "RECORDED"
    DUPLICATE = "DUPLICATE"
    REJECTED = "REJECTED"


@dataclass
class PublicIdentity:
    name: str
    phone: Optional[str] = None
    category: str = CATEGORY_MEMBER
    notes: Optional[str] = None


@dataclass
class CheckInResult:
    occurrence_id: str
    record: AttendanceRecord
    duplicate: bool
    method: str
    state: VerificationState


class CheckInVerifier:
    """Turns a presented token plus an identity claim into a check-in decision.

    The verifier only reads the token store; attendance writes go through the recorder.
    A repeat scan by the same identity is a success with ``duplicate`` set, not an error.
    """

    def __init__(self, store: TokenStore, recorder: AttendanceRecorder, settings: Settings) -> None:
        self.store = store
        self.recorder = recorder
        self.settings = settings

    def verify(
        self,
        db: Session,
        token: Optional[str],
        claim: PublicIdentity,
        deadline: Optional[CommitDeadline] = None,
    ) -> CheckInResult:
        """Public check-in.

        With a ``deadline``, the attendance row is committed only while the caller still waits.
        """
        state = VerificationState.RECEIVED
        occurrence_id = None
        try:
            entry = self._validate_token(token)
            occurrence_id = entry.occurrence_id
            state = self._advance(state, VerificationState.TOKEN_VALIDATED, occurrence_id)
            self._require_accepting(db, entry.occurrence_id)
            if not normalize_name(claim.name):
                raise InvalidIdentity()
            state = self._advance(state, VerificationState.IDENTITY_RESOLVED, entry.occurrence_id)
            method = self._method_for(entry)
            record, created = self.recorder.record_public(
                db,
                occurrence_id=entry.occurrence_id,
                name=claim.name,
                phone=claim.phone,
                category=claim.category,
                notes=claim.notes,
                method=method,
                deadline=deadline,
            )
        except CheckInError as exc:
            self._advance(state, VerificationState.REJECTED, occurrence_id, reason=exc.code)
            raise
        return self._finish(state, entry, record, created, method)

    def verify_member(self, db: Session, token: Optional[str], member_id: str) -> CheckInResult:
        """Check-in for a signed-in member scanning the live code in the app."""
        state = VerificationState.RECEIVED
        occurrence_id = None
        try:
            entry = self._validate_token(token)
            occurrence_id = entry.occurrence_id
            state = self._advance(state, VerificationState.TOKEN_VALIDATED, occurrence_id)
            self._require_accepting(db, entry.occurrence_id)
            state = self._advance(state, VerificationState.IDENTITY_RESOLVED, entry.occurrence_id)
            method = self._method_for(entry)
            record, created = self.recorder.record_member(db, member_id, entry.occurrence_id, method)
        except CheckInError as exc:
            self._advance(state, VerificationState.REJECTED, occurrence_id, reason=exc.code)
            raise
        return self._finish(state, entry, record, created, method)

    def _validate_token(self, token: Optional[str]) -> TokenEntry:
        token = (token or "").strip()
        if not token or not TOKEN_PATTERN.match(token):
            raise InvalidToken()
        try:
            entry = self.store.validate(token)
        except TokenStoreUnavailable as exc:
            logger.error("token store unavailable during check-in: %s", exc)
            raise PersistenceFailure() from exc
        if entry is None:
            raise ExpiredToken()
        return entry

    def _require_accepting(self, db: Session, occurrence_id: str) -> ServiceOccurrence:
        occurrence = db.get(ServiceOccurrence, occurrence_id)
        if occurrence is None:
            # A live token for a missing occurrence means the store and database disagree
            logger.error("token resolved to unknown occurrence=%s", occurrence_id)
            raise OccurrenceNotFound()
        close_after = self.settings.checkin_close_after_end_minutes
        if close_after is not None and self.store.now() > occurrence.end_time + timedelta(minutes=close_after):
            raise CheckInClosed()
        return occurrence

    @staticmethod
    def _method_for(entry: TokenEntry) -> str:
        return METHOD_QR_STATIC if entry.kind == KIND_STATIC else METHOD_QR_ROTATING

    def _finish(
        self,
        state: VerificationState,
        entry: TokenEntry,
        record: AttendanceRecord,
        created: bool,
        method: str,
    ) -> CheckInResult:
        final = VerificationState.RECORDED if created else VerificationState.DUPLICATE
        self._advance(state, final, entry.occurrence_id)
        logger.info(
            "check-in %s occurrence=%s kind=%s record=%s",
            final.value.lower(), entry.occurrence_id, entry.kind, record.id,
        )
        return CheckInResult(
            occurrence_id=entry.occurrence_id, record=record, duplicate=not created, method=method, state=final
        )

    @staticmethod
    def _advance(
        current: VerificationState,
        nxt: VerificationState,
        occurrence_id: Optional[str],
        reason: Optional[str] = None,
    ) -> VerificationState:
        if nxt is VerificationState.REJECTED:
            logger.warning("check-in rejected at %s occurrence=%s reason=%s", current.value, occurrence_id, reason)
        else:
            logger.debug("check-in %s -> %s occurrence=%s", current.value, nxt.value, occurrence_id)
        return nxt
