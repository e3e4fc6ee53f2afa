from __future__ import annotations

import sys
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Dict

import pytest
from fastapi.testclient import TestClient

# Ensure project root on path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from service_checkin.main import app
from service_checkin.config import get_settings
from service_checkin.database import Base, engine
from service_checkin.rate_limit import _window_counts as _rate_counts
from service_checkin.utils import utcnow


API_TOKEN = "dev-token"


def _auth_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {API_TOKEN}"}


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    # Public limit high enough for the whole flow
    monkeypatch.setenv("APP_PUBLIC_RATE_LIMIT_PER_MINUTE", "200")
    get_settings.cache_clear()  # type: ignore[attr-defined]
    _rate_counts.clear()
    Base.metadata.create_all(bind=engine)
    return TestClient(app)


def _create_occurrence(client: TestClient, start_offset_minutes: int = -10) -> str:
    r = client.post(
        "/api/templates.create",
        json={"name": f"Sunday Service {uuid.uuid4().hex[:6]}", "default_duration_minutes": 120},
        headers=_auth_headers(),
    )
    assert r.status_code == 200, r.text
    start = utcnow() + timedelta(minutes=start_offset_minutes)
    r = client.post(
        "/api/occurrences.create",
        json={
            "template_id": r.json()["id"],
            "service_date": start.date().isoformat(),
            "start_time": start.isoformat(),
            "end_time": (start + timedelta(hours=2)).isoformat(),
        },
        headers=_auth_headers(),
    )
    assert r.status_code == 200, r.text
    return r.json()["id"]


def _create_member(client: TestClient, name: str = "Test Member") -> str:
    r = client.post("/api/members.create", json={"full_name": name}, headers=_auth_headers())
    assert r.status_code == 200, r.text
    return r.json()["id"]


def test_public_check_in_flow(client: TestClient) -> None:
    occ = _create_occurrence(client)

    r = client.get("/api/attendance.rotating_token", params={"occurrence_id": occ}, headers=_auth_headers())
    assert r.status_code == 200, r.text
    issued = r.json()
    assert issued["kind"] == "rotating"
    assert 54 <= issued["refresh_after_seconds"] <= 55
    assert issued["token"] in issued["url"]

    # Polling within the interval shows the same code
    again = client.get("/api/attendance.rotating_token", params={"occurrence_id": occ}, headers=_auth_headers())
    assert again.json()["token"] == issued["token"]

    body = {"token": issued["token"], "name": "Tolu Bello", "phone": "0809 111 2222", "category": "VISITOR"}
    first = client.post("/public/check-in", json=body)
    assert first.status_code == 200, first.text
    data = first.json()
    assert data["ok"] is True and data["success"] is True
    assert data["occurrence_id"] == occ
    assert data["already_checked_in"] is False

    second = client.post("/public/check-in", json=body)
    assert second.status_code == 200
    assert second.json()["already_checked_in"] is True
    assert "already" in second.json()["message"]

    roll = client.get("/api/attendance.roll", params={"occurrence_id": occ}, headers=_auth_headers())
    assert roll.status_code == 200
    assert roll.json()["count"] == 1
    assert roll.json()["poll_interval_seconds"] == 30

    listed = client.get("/api/attendance.list", params={"occurrence_id": occ}, headers=_auth_headers())
    assert listed.status_code == 200
    items = listed.json()["items"]
    assert len(items) == 1
    assert items[0]["guest_name"] == "Tolu Bello"
    assert items[0]["category"] == "VISITOR"
    assert items[0]["method"] == "QR_ROTATING"


def test_roll_reads_its_own_writes(client: TestClient) -> None:
    occ = _create_occurrence(client)
    token = client.get(
        "/api/attendance.static_token", params={"occurrence_id": occ}, headers=_auth_headers()
    ).json()["token"]

    assert client.get("/api/attendance.roll", params={"occurrence_id": occ}, headers=_auth_headers()).json()["count"] == 0
    for i in range(3):
        r = client.post("/public/check-in", json={"token": token, "name": f"Guest {i}", "phone": f"070000000{i}"})
        assert r.status_code == 200
        roll = client.get("/api/attendance.roll", params={"occurrence_id": occ}, headers=_auth_headers())
        assert roll.json()["count"] == i + 1


def test_manual_check_in_and_conflict(client: TestClient) -> None:
    occ = _create_occurrence(client)
    member_id = _create_member(client, "Manual Member")

    r = client.post(
        "/api/attendance.manual_check_in",
        json={"member_id": member_id, "occurrence_id": occ},
        headers=_auth_headers(),
    )
    assert r.status_code == 200, r.text
    assert r.json()["method"] == "MANUAL"
    assert r.json()["member_name"] == "Manual Member"

    dup = client.post(
        "/api/attendance.manual_check_in",
        json={"member_id": member_id, "occurrence_id": occ},
        headers=_auth_headers(),
    )
    assert dup.status_code == 409
    assert dup.json()["error"]["code"] == "ALREADY_CHECKED_IN"

    missing = client.post(
        "/api/attendance.manual_check_in",
        json={"member_id": str(uuid.uuid4()), "occurrence_id": occ},
        headers=_auth_headers(),
    )
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "MEMBER_NOT_FOUND"


def test_member_qr_check_in(client: TestClient) -> None:
    occ = _create_occurrence(client)
    member_id = _create_member(client, "App Member")
    token = client.get(
        "/api/attendance.rotating_token", params={"occurrence_id": occ}, headers=_auth_headers()
    ).json()["token"]

    r = client.post("/api/attendance.qr_check_in", json={"token": token, "member_id": member_id}, headers=_auth_headers())
    assert r.status_code == 200, r.text
    assert r.json()["already_checked_in"] is False
    assert r.json()["record"]["member_id"] == member_id
    assert r.json()["record"]["method"] == "QR_ROTATING"

    again = client.post("/api/attendance.qr_check_in", json={"token": token, "member_id": member_id}, headers=_auth_headers())
    assert again.status_code == 200
    assert again.json()["already_checked_in"] is True
    assert again.json()["record"]["id"] == r.json()["record"]["id"]


def test_link_guest_record_to_member(client: TestClient) -> None:
    occ = _create_occurrence(client)
    member_id = _create_member(client, "Linked Member")
    token = client.get(
        "/api/attendance.static_token", params={"occurrence_id": occ}, headers=_auth_headers()
    ).json()["token"]
    client.post("/public/check-in", json={"token": token, "name": "Linked Member", "phone": "0811"})
    client.post("/public/check-in", json={"token": token, "name": "Linked Member", "phone": "0822"})
    records = client.get("/api/attendance.list", params={"occurrence_id": occ}, headers=_auth_headers()).json()["items"]
    assert len(records) == 2

    linked = client.post(
        "/api/attendance.link", json={"id": records[0]["id"], "member_id": member_id}, headers=_auth_headers()
    )
    assert linked.status_code == 200, linked.text
    assert linked.json()["member_id"] == member_id
    assert linked.json()["guest_name"] == "Linked Member"

    # Same member cannot hold two records for one service
    clash = client.post(
        "/api/attendance.link", json={"id": records[1]["id"], "member_id": member_id}, headers=_auth_headers()
    )
    assert clash.status_code == 409

    history = client.get("/api/attendance.by_member", params={"member_id": member_id}, headers=_auth_headers())
    assert history.status_code == 200
    assert [i["id"] for i in history.json()["items"]] == [records[0]["id"]]


def test_streak_counts_recent_services(client: TestClient) -> None:
    member_id = _create_member(client, "Faithful Member")
    older = _create_occurrence(client, start_offset_minutes=-2)
    newer = _create_occurrence(client, start_offset_minutes=-1)
    for occ in (older, newer):
        r = client.post(
            "/api/attendance.manual_check_in",
            json={"member_id": member_id, "occurrence_id": occ},
            headers=_auth_headers(),
        )
        assert r.status_code == 200

    r = client.get("/api/attendance.streak", params={"member_id": member_id}, headers=_auth_headers())
    assert r.status_code == 200
    assert r.json() == {"member_id": member_id, "streak": 2}

    fresh = _create_member(client, "New Member")
    r = client.get("/api/attendance.streak", params={"member_id": fresh}, headers=_auth_headers())
    assert r.json()["streak"] == 0
