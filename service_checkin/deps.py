from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .database import SessionLocal, get_db_session
from .issuer import TokenIssuer
from .rate_limit import rate_limit_check
from .recorder import AttendanceRecorder, LiveRoll
from .token_store import TokenStore, build_token_store
from .verifier import CheckInVerifier


def get_db() -> Session:
    yield from get_db_session()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def require_token(request: Request, authorization: Optional[str] = Header(default=None)) -> str:
    settings = get_settings()
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if token != settings.api_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    # Rate limit per token + IP (if enabled)
    rate_limit_check(request, token)
    return token


@lru_cache(maxsize=1)
def get_token_store() -> TokenStore:
    return build_token_store(get_settings())


@lru_cache(maxsize=1)
def get_recorder() -> AttendanceRecorder:
    return AttendanceRecorder(LiveRoll(ttl_seconds=get_settings().roll_poll_interval_seconds))


def get_issuer(store: TokenStore = Depends(get_token_store)) -> TokenIssuer:
    return TokenIssuer(store, get_settings())


def get_verifier(
    store: TokenStore = Depends(get_token_store),
    recorder: AttendanceRecorder = Depends(get_recorder),
) -> CheckInVerifier:
    return CheckInVerifier(store, recorder, get_settings())
