from __future__ import annotations

from fastapi import APIRouter

from ..config import get_settings


router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> dict:
    settings = get_settings()
    return {"status": "ok", "service": "service-checkin", "token_store": settings.token_store_backend}
