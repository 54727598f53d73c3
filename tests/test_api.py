from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import api  # noqa: E402
import database as db  # noqa: E402
from database import Base, PharmacistBase, iter_audit_log  # noqa: E402
from rules import ensure_default_rules  # noqa: E402


def _memory_engine():
    # Endpoints run in a worker thread, so every session must share one connection.
    return create_engine(
        "sqlite://",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


@pytest.fixture
def client(monkeypatch):
    schedule_engine = _memory_engine()
    pharmacist_engine = _memory_engine()
    session_factory = sessionmaker(bind=schedule_engine, expire_on_commit=False, future=True)
    pharmacist_factory = sessionmaker(bind=pharmacist_engine, expire_on_commit=False, future=True)
    for module in (db, api):
        monkeypatch.setattr(module, "SessionLocal", session_factory)
        monkeypatch.setattr(module, "PharmacistSessionLocal", pharmacist_factory)
    monkeypatch.setattr(db, "schedule_engine", schedule_engine)
    monkeypatch.setattr(db, "pharmacist_engine", pharmacist_engine)
    Base.metadata.create_all(schedule_engine)
    PharmacistBase.metadata.create_all(pharmacist_engine)
    ensure_default_rules(session_factory)

    # Not entered as a context manager: the lifespan would touch the on-disk stores.
    yield TestClient(api.app)
    schedule_engine.dispose()
    pharmacist_engine.dispose()


def _seed_roster(client: TestClient, count: int = 5) -> None:
    for idx in range(1, count + 1):
        response = client.put(
            f"/api/v1/pharmacists/p{idx}",
            json={"name": f"Pharmacist {idx}", "weeklyHours": 40},
        )
        assert response.status_code == 200


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_roster_round_trip(client) -> None:
    _seed_roster(client)
    response = client.put(
        "/api/v1/pharmacists/p6",
        json={"name": "Paula", "weeklyHours": 20, "freeDay": "Wednesday", "actor": "manager"},
    )
    assert response.status_code == 200
    assert response.json()["freeDay"] == "Wednesday"

    roster = client.get("/api/v1/pharmacists").json()["pharmacists"]
    assert [item["id"] for item in roster] == ["p6", "p1", "p2", "p3", "p4", "p5"]

    with db.SessionLocal() as session:
        assert len(list(iter_audit_log(session, action="pharmacist_update"))) == 6


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "Broken", "weeklyHours": "lots"},
        {"name": "Broken", "freeDay": "Someday"},
        {"weeklyHours": 40},
    ],
)
def test_invalid_pharmacist_is_rejected(client, payload) -> None:
    assert client.put("/api/v1/pharmacists/bad", json=payload).status_code == 400


def test_rules_can_be_read_and_replaced(client) -> None:
    response = client.get("/api/v1/rules/active")
    assert response.status_code == 200
    assert response.json()["name"] == "Default Rules"
    assert response.json()["params"]["closingTime"] == "19:30"

    bad = client.put("/api/v1/rules/active", json={"name": "Late", "params": {"closingTime": "08:00"}})
    assert bad.status_code == 400
    assert client.put("/api/v1/rules/active", json={"params": {}}).status_code == 400

    updated = client.put(
        "/api/v1/rules/active",
        json={"name": "Short Saturday", "params": {"maxHoursPerDay": 8}, "actor": "manager"},
    )
    assert updated.status_code == 200
    assert updated.json()["lastEditedBy"] == "manager"
    assert client.get("/api/v1/rules/active").json()["name"] == "Short Saturday"


def test_generate_then_inspect_week(client) -> None:
    _seed_roster(client)
    response = client.post("/api/v1/schedules/generate", json={"weekStart": "2024-04-03", "actor": "manager"})
    assert response.status_code == 200
    result = response.json()
    assert result["week_start"] == "2024-04-01"
    assert result["warning_count"] == 0

    shifts = client.get("/api/v1/weeks/2024-04-01/shifts").json()["shifts"]
    assert len(shifts) == result["shifts_created"]
    own = client.get("/api/v1/weeks/2024-04-01/shifts", params={"pharmacist_id": "p2"}).json()["shifts"]
    assert own and all(shift["pharmacistId"] == "p2" for shift in own)

    report = client.get("/api/v1/schedules/2024-04-01/validate")
    assert report.status_code == 200
    assert report.json()["warnings"] == {}


def test_generate_rejects_bad_input(client) -> None:
    assert client.post("/api/v1/schedules/generate", json={}).status_code == 400
    assert client.post("/api/v1/schedules/generate", json={"weekStart": "next monday"}).status_code == 400
    assert client.get("/api/v1/weeks/2024-13-01/shifts").status_code == 400


def test_validate_missing_week(client) -> None:
    assert client.get("/api/v1/schedules/2024-05-06/validate").status_code == 404


def test_shift_edit(client) -> None:
    _seed_roster(client)
    client.post("/api/v1/schedules/generate", json={"weekStart": "2024-04-01"})
    shifts = client.get("/api/v1/weeks/2024-04-01/shifts", params={"pharmacist_id": "p1"}).json()["shifts"]
    target = next(shift for shift in shifts if shift["type"] == "afternoon")

    assert client.patch("/api/v1/shifts/999999", json={"endTime": "18:00"}).status_code == 404
    invalid = client.patch(f"/api/v1/shifts/{target['id']}", json={"endTime": target["startTime"]})
    assert invalid.status_code == 400

    response = client.patch(f"/api/v1/shifts/{target['id']}", json={"endTime": "19:30", "actor": "manager"})
    assert response.status_code == 200
    body = response.json()
    assert body["shift"]["endTime"] == "19:30"
    assert body["validation"]["week_start"] == "2024-04-01"
    with db.SessionLocal() as session:
        assert [entry.user_id for entry in iter_audit_log(session, action="shift_update")] == ["manager"]


def test_preview_does_not_store_anything(client) -> None:
    roster = [{"id": f"p{idx}", "name": f"Pharmacist {idx}", "weeklyHours": 40} for idx in range(1, 6)]
    response = client.post(
        "/api/v1/schedules/preview",
        json={"pharmacists": roster, "rules": {}, "weeks": 2, "startDate": "2024-04-01", "seed": 3},
    )
    assert response.status_code == 200
    schedules = response.json()["schedules"]
    assert [item["weekStart"] for item in schedules] == ["2024-04-01", "2024-04-08"]
    assert client.get("/api/v1/weeks/2024-04-01/shifts").json()["shifts"] == []

    bad = client.post("/api/v1/schedules/preview", json={"pharmacists": [{"name": "No id"}], "rules": {}})
    assert bad.status_code == 400
