from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from .config import Settings
from .errors import OccurrenceNotFound, PersistenceFailure
from .models import ServiceOccurrence
from .token_store import KIND_ROTATING, KIND_STATIC, TokenEntry, TokenKind, TokenStore, TokenStoreUnavailable


logger = logging.getLogger(__name__)

TOKEN_BYTES = 24


class IssuedToken(BaseModel):
    token: str
    kind: TokenKind
    occurrence_id: str
    issued_at: datetime
    expires_at: datetime
    expires_in_seconds: int
    refresh_after_seconds: int
    url: str


def mint_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


class TokenIssuer:
    """Hands out the token a display should currently show for an occurrence.

    Every display of an occurrence shares one rotating token. It is reused until only the
    grace window is left, and callers are told to refresh when that window opens, so a new
    token never supersedes one that a display is still due to show. Static tokens are
    reused until they expire; polling never rotates them.
    """

    def __init__(self, store: TokenStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.grace = timedelta(seconds=settings.rotation_grace_seconds)
        self.rotating_ttl = timedelta(seconds=settings.rotating_token_ttl_seconds)
        self.static_ttl = timedelta(seconds=settings.static_token_ttl_seconds)

    def get_rotating_token(self, db: Session, occurrence_id: str) -> IssuedToken:
        self._require_open_occurrence(db, occurrence_id)
        entry = self._get_or_mint(occurrence_id, KIND_ROTATING, ttl=self.rotating_ttl, keep_above=self.grace)
        # Refresh no later than the moment a newer token may be minted
        remaining = entry.remaining_seconds(self.store.now())
        return self._issued(entry, refresh_after=int(remaining - self.grace.total_seconds()))

    def get_static_token(self, db: Session, occurrence_id: str) -> IssuedToken:
        self._require_open_occurrence(db, occurrence_id)
        entry = self._get_or_mint(occurrence_id, KIND_STATIC, ttl=self.static_ttl, keep_above=None)
        return self._issued(entry, refresh_after=int(entry.remaining_seconds(self.store.now())))

    def _require_open_occurrence(self, db: Session, occurrence_id: str) -> ServiceOccurrence:
        occurrence: Optional[ServiceOccurrence] = db.get(ServiceOccurrence, occurrence_id)
        if occurrence is None:
            raise OccurrenceNotFound()
        if occurrence.end_time < self.store.now():
            raise OccurrenceNotFound("This service has already ended")
        return occurrence

    def _get_or_mint(
        self, occurrence_id: str, kind: TokenKind, ttl: timedelta, keep_above: Optional[timedelta]
    ) -> TokenEntry:
        try:
            with self.store.lock(occurrence_id, kind):
                current = self.store.get(occurrence_id, kind)
                now = self.store.now()
                if current is not None and (keep_above is None or current.expires_at - now > keep_above):
                    return current
                entry = self.store.put(occurrence_id, kind, mint_token(), now + ttl)
        except TokenStoreUnavailable as exc:
            logger.error("token store unavailable while issuing %s token for %s: %s", kind, occurrence_id, exc)
            raise PersistenceFailure() from exc
        logger.info("issued %s token for occurrence=%s expires_at=%s", kind, occurrence_id, entry.expires_at.isoformat())
        return entry

    def _issued(self, entry: TokenEntry, refresh_after: int) -> IssuedToken:
        now = self.store.now()
        base = self.settings.public_base_url.rstrip("/")
        return IssuedToken(
            token=entry.token,
            kind=entry.kind,
            occurrence_id=entry.occurrence_id,
            issued_at=entry.issued_at,
            expires_at=entry.expires_at,
            expires_in_seconds=int(entry.remaining_seconds(now)),
            refresh_after_seconds=max(1, refresh_after),
            url=f"{base}/public/check-in/{entry.occurrence_id}?token={entry.token}",
        )
