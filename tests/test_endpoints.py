from __future__ import annotations

import os
from datetime import timedelta
from typing import Dict
import sys
from pathlib import Path

# Ensure project root is on sys.path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from fastapi.testclient import TestClient

from service_checkin.main import app
from service_checkin.config import get_settings
from service_checkin.rate_limit import _window_counts as _rate_counts
from service_checkin.database import Base, engine
from service_checkin.utils import utcnow


API_TOKEN = os.getenv("APP_API_TOKEN", "dev-token")


@pytest.fixture(scope="module")
def client() -> TestClient:
    # Ensure schema exists when tests run standalone
    Base.metadata.create_all(bind=engine)
    return TestClient(app)


def _auth_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {API_TOKEN}"}


def test_health_open(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json().get("status") == "ok"
    assert r.json().get("token_store") in ("memory", "redis")


@pytest.mark.parametrize(
    "path",
    [
        "/api/members.list",
        "/api/templates.list",
        "/api/occurrences.list",
        "/api/attendance.rotating_token?occurrence_id=x",
        "/api/attendance.roll?occurrence_id=x",
    ],
)
def test_auth_required_on_api(client: TestClient, path: str) -> None:
    r = client.get(path)
    assert r.status_code == 401


def test_templates_and_occurrences(client: TestClient) -> None:
    t = client.post(
        "/api/templates.create",
        json={"name": "Sunday Service", "default_duration_minutes": 120, "campus": "Main"},
        headers=_auth_headers(),
    )
    assert t.status_code == 200
    template_id = t.json()["id"]

    start = utcnow() + timedelta(days=1)
    o = client.post(
        "/api/occurrences.create",
        json={
            "template_id": template_id,
            "service_date": start.date().isoformat(),
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=2)).isoformat(),
        },
        headers=_auth_headers(),
    )
    assert o.status_code == 200
    occ = o.json()
    assert occ["template_name"] == "Sunday Service"

    got = client.get("/api/occurrences.get", params={"id": occ["id"]}, headers=_auth_headers())
    assert got.status_code == 200
    assert got.json()["id"] == occ["id"]

    listed = client.get("/api/occurrences.list", params={"template_id": template_id}, headers=_auth_headers())
    assert listed.status_code == 200
    assert [i["id"] for i in listed.json()["items"]] == [occ["id"]]


def test_timezone_aware_times_stored_as_utc(client: TestClient) -> None:
    t = client.post("/api/templates.create", json={"name": "Youth Service"}, headers=_auth_headers())
    o = client.post(
        "/api/occurrences.create",
        json={
            "template_id": t.json()["id"],
            "service_date": "2030-01-06",
            "start_time": "2030-01-06T10:00:00+01:00",
            "end_time": "2030-01-06T12:00:00+01:00",
        },
        headers=_auth_headers(),
    )
    assert o.status_code == 200
    assert o.json()["start_time"].startswith("2030-01-06T09:00:00")


def test_members_create_and_list(client: TestClient) -> None:
    r = client.post(
        "/api/members.create",
        json={"full_name": "  Chinwe Okafor ", "phone": "0803 000 1111"},
        headers=_auth_headers(),
    )
    assert r.status_code == 200
    assert r.json()["full_name"] == "Chinwe Okafor"
    listed = client.get("/api/members.list", params={"q": "chinwe"}, headers=_auth_headers())
    assert listed.status_code == 200
    assert any(m["id"] == r.json()["id"] for m in listed.json()["items"])


def test_rate_limit_toggle(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    # Ensure rate limit disabled by default (per settings)
    r = client.get("/api/templates.list", headers=_auth_headers())
    assert r.status_code == 200

    # Enable rate limit and set low threshold
    monkeypatch.setenv("APP_RATE_LIMIT_ENABLED", "true")
    monkeypatch.setenv("APP_RATE_LIMIT_PER_MINUTE", "3")
    # Reset cached settings and counters
    get_settings.cache_clear()  # type: ignore[attr-defined]
    _rate_counts.clear()

    # First 3 pass
    for _ in range(3):
        ok = client.get("/api/templates.list", headers=_auth_headers())
        assert ok.status_code == 200
    # 4th should hit 429
    blocked = client.get("/api/templates.list", headers=_auth_headers())
    assert blocked.status_code == 429

    monkeypatch.delenv("APP_RATE_LIMIT_ENABLED")
    monkeypatch.delenv("APP_RATE_LIMIT_PER_MINUTE")
    get_settings.cache_clear()  # type: ignore[attr-defined]
    _rate_counts.clear()
