from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the ORM columns store times."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if phone is None:
        return None
    normalized = "".join(phone.split()).lower()
    return normalized or None


def normalize_name(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    normalized = " ".join(name.split()).lower()
    return normalized or None


def public_dedup_key(name: Optional[str], phone: Optional[str]) -> str:
    """Best-effort identity for self-reported check-ins.

    Phone wins when present; otherwise the name is used. Two people sharing a phone, or
    one person typing it differently, are not reconciled.
    """
    p = normalize_phone(phone)
    if p:
        return f"phone:{p}"
    n = normalize_name(name)
    if not n:
        raise ValueError("name or phone required")
    return f"name:{n}"


def member_dedup_key(member_id: str) -> str:
    return f"member:{member_id}"
