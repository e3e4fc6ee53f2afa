from __future__ import annotations

"""
Unauthenticated check-in for people scanning a displayed or printed code.

No Authorization header is read here. The token in the body is the only credential, and
every attempt counts against the caller's per-IP window, valid or not.

A 503 after the timeout means nothing was stored: the worker commits only if it claims the
deadline before the request gives up waiting.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import sessionmaker

from ..config import get_settings
from ..deps import get_session_factory, get_verifier
from ..errors import CheckInError, PersistenceFailure
from ..rate_limit import public_rate_limit_check
from ..recorder import CommitDeadline
from ..schemas import PublicCheckIn, PublicCheckInResponse
from ..verifier import CheckInResult, CheckInVerifier, PublicIdentity


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/public", tags=["public"])


def _log_abandoned(work: asyncio.Future) -> None:
    if work.cancelled():
        return
    exc = work.exception()
    if exc is not None and not isinstance(exc, CheckInError):
        logger.error("abandoned check-in failed", exc_info=exc)


@router.post("/check-in", response_model=PublicCheckInResponse)
async def public_check_in(
    payload: PublicCheckIn,
    request: Request,
    verifier: CheckInVerifier = Depends(get_verifier),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    public_rate_limit_check(request, "check_in")
    claim = PublicIdentity(name=payload.name, phone=payload.phone, category=payload.category, notes=payload.notes)

    timeout = get_settings().checkin_timeout_seconds
    deadline = CommitDeadline(timeout)

    def _run() -> CheckInResult:
        with session_factory() as db:
            return verifier.verify(db, payload.token, claim, deadline=deadline)

    loop = asyncio.get_running_loop()
    work = loop.run_in_executor(None, _run)
    try:
        result = await asyncio.wait_for(asyncio.shield(work), timeout=timeout)
    except asyncio.TimeoutError:
        if deadline.expire():
            logger.error("public check-in timed out after %.1fs", timeout)
            work.add_done_callback(_log_abandoned)
            raise PersistenceFailure()
        # Commit already under way, bounded by the database busy timeout
        result = await work

    if result.duplicate:
        message = "You're already checked in for this service"
    else:
        message = "You're checked in. Thank you for joining us today"
    return PublicCheckInResponse(
        occurrence_id=result.occurrence_id,
        already_checked_in=result.duplicate,
        message=message,
    )
