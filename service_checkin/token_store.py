"""
Authoritative holder of check-in token state, keyed by occurrence and token kind.

Each (occurrence, kind) pair has one current token. When a new token is put, the one it
replaces stays valid only for the grace window, never past its own expiry. Anything older
is dropped from the reverse index right away. Expiry only ever shrinks, so a superseded
or expired token cannot validate again.

Two backends share that contract:

- MemoryTokenStore: process-local dicts. Good for a single API instance and for tests.
- RedisTokenStore: keys with TTLs in a shared Redis, so any instance can validate any token.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, Literal, Optional, Tuple

import redis
from pydantic import BaseModel, ConfigDict

from .utils import utcnow


logger = logging.getLogger(__name__)

TokenKind = Literal["rotating", "static"]
KIND_ROTATING: TokenKind = "rotating"
KIND_STATIC: TokenKind = "static"

Clock = Callable[[], datetime]


class TokenStoreUnavailable(Exception):
    """The backing store could not be reached or did not answer in time."""


class TokenEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    occurrence_id: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at

    def remaining_seconds(self, now: datetime) -> float:
        return max(0.0, (self.expires_at - now).total_seconds())


class TokenStore:
    """Interface shared by the backends.

    Writers must hold ``lock(occurrence_id, kind)`` around a get-then-put sequence; the
    issuer is the only writer.
    """

    def __init__(self, grace_seconds: int, clock: Optional[Clock] = None) -> None:
        self.grace = timedelta(seconds=grace_seconds)
        self._clock = clock or utcnow
        self._high_water: Optional[datetime] = None
        self._clock_lock = threading.Lock()

    def now(self) -> datetime:
        # Never let time run backwards inside the store, or an expired token could revive
        t = self._clock()
        with self._clock_lock:
            if self._high_water is not None and t < self._high_water:
                return self._high_water
            self._high_water = t
            return t

    def put(
        self, occurrence_id: str, kind: TokenKind, token: str, expires_at: datetime
    ) -> TokenEntry:  # pragma: no cover - interface
        raise NotImplementedError

    def get(self, occurrence_id: str, kind: TokenKind) -> Optional[TokenEntry]:  # pragma: no cover
        raise NotImplementedError

    def validate(self, token: str) -> Optional[TokenEntry]:  # pragma: no cover
        raise NotImplementedError

    def lock(self, occurrence_id: str, kind: TokenKind):  # pragma: no cover
        raise NotImplementedError

    def purge_expired(self) -> int:  # pragma: no cover
        raise NotImplementedError


class MemoryTokenStore(TokenStore):
    def __init__(self, grace_seconds: int, clock: Optional[Clock] = None) -> None:
        super().__init__(grace_seconds, clock)
        self._by_token: Dict[str, TokenEntry] = {}
        self._current: Dict[Tuple[str, str], TokenEntry] = {}
        self._previous: Dict[Tuple[str, str], TokenEntry] = {}
        self._index_lock = threading.RLock()
        self._issue_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._last_sweep: Optional[datetime] = None

    @contextmanager
    def lock(self, occurrence_id: str, kind: TokenKind) -> Iterator[None]:
        key = (occurrence_id, kind)
        with self._index_lock:
            guard = self._issue_locks.setdefault(key, threading.Lock())
        with guard:
            yield

    def put(self, occurrence_id: str, kind: TokenKind, token: str, expires_at: datetime) -> TokenEntry:
        now = self.now()
        if expires_at <= now:
            raise ValueError("expires_at must be in the future")
        key = (occurrence_id, kind)
        entry = TokenEntry(token=token, occurrence_id=occurrence_id, kind=kind, issued_at=now, expires_at=expires_at)
        with self._index_lock:
            stale = self._previous.pop(key, None)
            if stale is not None:
                self._by_token.pop(stale.token, None)
            current = self._current.get(key)
            if current is not None:
                if current.is_live(now):
                    capped = current.model_copy(update={"expires_at": min(current.expires_at, now + self.grace)})
                    self._previous[key] = capped
                    self._by_token[current.token] = capped
                else:
                    self._by_token.pop(current.token, None)
            self._current[key] = entry
            self._by_token[token] = entry
            if self._last_sweep is None or now - self._last_sweep >= self.grace:
                self._sweep(now)
        return entry

    def get(self, occurrence_id: str, kind: TokenKind) -> Optional[TokenEntry]:
        now = self.now()
        key = (occurrence_id, kind)
        with self._index_lock:
            entry = self._current.get(key)
            if entry is None:
                return None
            if not entry.is_live(now):
                self._evict(entry)
                return None
            return entry

    def validate(self, token: str) -> Optional[TokenEntry]:
        if not token:
            return None
        now = self.now()
        with self._index_lock:
            entry = self._by_token.get(token)
            if entry is None:
                return None
            if not entry.is_live(now):
                self._evict(entry)
                return None
            return entry

    def purge_expired(self) -> int:
        with self._index_lock:
            return self._sweep(self.now())

    def __len__(self) -> int:
        with self._index_lock:
            return len(self._by_token)

    def _evict(self, entry: TokenEntry) -> None:
        key = (entry.occurrence_id, entry.kind)
        self._by_token.pop(entry.token, None)
        for slot in (self._current, self._previous):
            held = slot.get(key)
            if held is not None and held.token == entry.token:
                del slot[key]

    def _sweep(self, now: datetime) -> int:
        expired = [e for e in self._by_token.values() if not e.is_live(now)]
        for e in expired:
            self._evict(e)
        self._last_sweep = now
        if expired:
            logger.debug("evicted %d expired tokens", len(expired))
        return len(expired)


class RedisTokenStore(TokenStore):
    """Token state in Redis.

    Keys (under ``prefix``):
      token:<token>               -> TokenEntry JSON, TTL = remaining validity
      current:<occurrence>:<kind> -> token
      previous:<occurrence>:<kind> -> token still inside its grace window
      lock:<occurrence>:<kind>    -> issuance lock
    """

    def __init__(
        self,
        client: redis.Redis,
        grace_seconds: int,
        clock: Optional[Clock] = None,
        prefix: str = "checkin",
        lock_timeout: float = 5.0,
    ) -> None:
        super().__init__(grace_seconds, clock)
        self._r = client
        self.prefix = prefix
        self.lock_timeout = lock_timeout

    def _token_key(self, token: str) -> str:
        return f"{self.prefix}:token:{token}"

    def _slot_key(self, slot: str, occurrence_id: str, kind: str) -> str:
        return f"{self.prefix}:{slot}:{occurrence_id}:{kind}"

    @staticmethod
    def _ttl_ms(expires_at: datetime, now: datetime) -> int:
        return max(1, int((expires_at - now).total_seconds() * 1000))

    def _load(self, token: Optional[str]) -> Optional[TokenEntry]:
        if not token:
            return None
        raw = self._r.get(self._token_key(token))
        if raw is None:
            return None
        return TokenEntry.model_validate_json(raw)

    @contextmanager
    def lock(self, occurrence_id: str, kind: TokenKind) -> Iterator[None]:
        guard = self._r.lock(
            self._slot_key("lock", occurrence_id, kind),
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_timeout,
        )
        try:
            acquired = guard.acquire()
        except redis.RedisError as exc:
            raise TokenStoreUnavailable(str(exc)) from exc
        if not acquired:
            raise TokenStoreUnavailable("timed out waiting for issuance lock")
        try:
            yield
        finally:
            try:
                guard.release()
            except redis.exceptions.LockError:
                # Lock expired while held; the next writer already owns it
                logger.warning("issuance lock for %s/%s expired before release", occurrence_id, kind)

    def put(self, occurrence_id: str, kind: TokenKind, token: str, expires_at: datetime) -> TokenEntry:
        now = self.now()
        if expires_at <= now:
            raise ValueError("expires_at must be in the future")
        entry = TokenEntry(token=token, occurrence_id=occurrence_id, kind=kind, issued_at=now, expires_at=expires_at)
        current_key = self._slot_key("current", occurrence_id, kind)
        previous_key = self._slot_key("previous", occurrence_id, kind)
        try:
            current = self._load(self._r.get(current_key))
            stale_token = self._r.get(previous_key)

            pipe = self._r.pipeline(transaction=True)
            if stale_token:
                pipe.delete(self._token_key(stale_token))
            if current is not None and current.is_live(now):
                capped = current.model_copy(update={"expires_at": min(current.expires_at, now + self.grace)})
                ttl = self._ttl_ms(capped.expires_at, now)
                pipe.set(self._token_key(current.token), capped.model_dump_json(), px=ttl)
                pipe.set(previous_key, current.token, px=ttl)
            else:
                pipe.delete(previous_key)
            ttl = self._ttl_ms(expires_at, now)
            pipe.set(self._token_key(token), entry.model_dump_json(), px=ttl)
            pipe.set(current_key, token, px=ttl)
            pipe.execute()
        except redis.RedisError as exc:
            raise TokenStoreUnavailable(str(exc)) from exc
        return entry

    def get(self, occurrence_id: str, kind: TokenKind) -> Optional[TokenEntry]:
        try:
            entry = self._load(self._r.get(self._slot_key("current", occurrence_id, kind)))
        except redis.RedisError as exc:
            raise TokenStoreUnavailable(str(exc)) from exc
        if entry is None:
            return None
        if not entry.is_live(self.now()):
            self._drop(entry.token)
            return None
        return entry

    def validate(self, token: str) -> Optional[TokenEntry]:
        if not token:
            return None
        try:
            entry = self._load(token)
        except redis.RedisError as exc:
            raise TokenStoreUnavailable(str(exc)) from exc
        if entry is None:
            return None
        # Redis TTLs are coarse relative to our clock; the stored expiry is authoritative
        if not entry.is_live(self.now()):
            self._drop(entry.token)
            return None
        return entry

    def purge_expired(self) -> int:
        """Redis expires keys on its own; nothing to sweep."""
        return 0

    def _drop(self, token: str) -> None:
        try:
            self._r.delete(self._token_key(token))
        except redis.RedisError:
            logger.warning("failed to delete expired token key", exc_info=True)


def build_token_store(settings, clock: Optional[Clock] = None) -> TokenStore:
    if settings.token_store_backend == "redis":
        from .redis_conn import get_redis

        return RedisTokenStore(
            get_redis(),
            grace_seconds=settings.rotation_grace_seconds,
            clock=clock,
            lock_timeout=settings.checkin_timeout_seconds,
        )
    return MemoryTokenStore(grace_seconds=settings.rotation_grace_seconds, clock=clock)
