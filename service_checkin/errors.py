from __future__ import annotations

from typing import Optional


class CheckInError(Exception):
    """Base for failures surfaced to HTTP callers.

    ``message`` is safe to show to an unauthenticated client; internal detail belongs in logs.
    """

    code = "CHECKIN_ERROR"
    status_code = 400
    retryable = False
    default_message = "Check-in failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidToken(CheckInError):
    code = "INVALID_TOKEN"
    status_code = 400
    default_message = "Invalid QR code"


class ExpiredToken(CheckInError):
    code = "EXPIRED_TOKEN"
    status_code = 410
    default_message = "This QR code has expired, please scan the live code again"


class OccurrenceNotFound(CheckInError):
    code = "OCCURRENCE_NOT_FOUND"
    status_code = 404
    default_message = "Service not found"


class CheckInClosed(CheckInError):
    code = "CHECKIN_CLOSED"
    status_code = 403
    default_message = "Check-in for this service has closed"


class InvalidIdentity(CheckInError):
    code = "INVALID_IDENTITY"
    status_code = 422
    default_message = "Please provide your name"


class MemberNotFound(CheckInError):
    code = "MEMBER_NOT_FOUND"
    status_code = 404
    default_message = "Member not found"


class RecordNotFound(CheckInError):
    code = "RECORD_NOT_FOUND"
    status_code = 404
    default_message = "Attendance record not found"


class Conflict(CheckInError):
    code = "ALREADY_CHECKED_IN"
    status_code = 409
    default_message = "Member already checked in"


class PersistenceFailure(CheckInError):
    code = "PERSISTENCE_FAILURE"
    status_code = 503
    retryable = True
    default_message = "Check-in is temporarily unavailable, please try again"
