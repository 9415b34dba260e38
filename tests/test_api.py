from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from questbox.api import create_app
from questbox.models import Progress
from questbox.service import QuestBoxService


def _service_and_client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[QuestBoxService, TestClient]:
    monkeypatch.setenv("QUESTBOX_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("QUESTBOX_CONFIG_DIR", raising=False)
    service = QuestBoxService.create()
    return service, TestClient(create_app(service))


def _events(tmp_path: Path) -> list[dict]:
    events_path = tmp_path / "home" / "telemetry" / "events.jsonl"
    if not events_path.exists():
        return []
    return [json.loads(line) for line in events_path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_health_and_profiles(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _, client = _service_and_client(tmp_path, monkeypatch)
    health = client.get("/v1/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["store"] == "fresh"

    profiles = client.get("/v1/profiles").json()
    assert [row["id"] for row in profiles] == ["alex", "sam"]
    assert all("pin" not in row for row in profiles)


def test_unknown_profile_returns_404(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _, client = _service_and_client(tmp_path, monkeypatch)
    assert client.get("/v1/profiles/nobody/quests").status_code == 404
    response = client.post("/v1/profiles/nobody/completions", json={"task_id": "make_bed"})
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_completion_then_repeat_is_conflict(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _, client = _service_and_client(tmp_path, monkeypatch)
    first = client.post("/v1/profiles/alex/completions", json={"task_id": "make_bed"})
    assert first.status_code == 200
    assert first.json()["xp_earned"] == 20

    again = client.post("/v1/profiles/alex/completions", json={"task_id": "make_bed"})
    assert again.status_code == 409
    assert again.json()["code"] == "QUEST_UNAVAILABLE"

    quests = client.get("/v1/profiles/alex/quests").json()
    assert [task["id"] for task in quests["completed_today"]] == ["make_bed"]


def test_trace_id_and_source_headers_are_recorded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _, client = _service_and_client(tmp_path, monkeypatch)
    response = client.post(
        "/v1/profiles/sam/completions",
        json={"task_id": "wash_car"},
        headers={"X-Questbox-Trace-Id": "trace-123", "X-Questbox-Actor-Id": "tablet:kitchen"},
    )
    assert response.status_code == 200
    assert response.headers["X-Questbox-Trace-Id"] == "trace-123"
    completed = [event for event in _events(tmp_path) if event["event_type"] == "quest.completed"][-1]
    assert completed["trace_id"] == "trace-123"
    assert completed["source"] == "api"
    assert completed["actor"]["id"] == "tablet:kitchen"

    generated = client.get("/v1/leaderboard")
    assert generated.headers["X-Questbox-Trace-Id"].startswith("api:")


def test_timer_endpoint(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _, client = _service_and_client(tmp_path, monkeypatch)
    started = client.post("/v1/profiles/alex/timers", json={"task_id": "homework", "action": "start"})
    assert started.status_code == 200
    assert started.json()["timer"]["running"] is True

    unsupported = client.post("/v1/profiles/alex/timers", json={"task_id": "make_bed", "action": "start"})
    assert unsupported.status_code == 400
    assert unsupported.json()["code"] == "TIMER_NOT_SUPPORTED"

    invalid = client.post("/v1/profiles/alex/timers", json={"task_id": "homework", "action": "explode"})
    assert invalid.status_code == 422


def test_purchase_status_codes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service, client = _service_and_client(tmp_path, monkeypatch)
    poor = client.post("/v1/profiles/alex/purchases", json={"reward_id": "sticker"})
    assert poor.status_code == 400
    assert poor.json()["code"] == "REWARD_INSUFFICIENT_XP"

    service.progress["alex"] = Progress(xp=1000)
    needs_pin = client.post("/v1/profiles/alex/purchases", json={"reward_id": "pick_dinner"})
    assert needs_pin.status_code == 403
    assert needs_pin.json()["code"] == "REWARD_APPROVAL_REQUIRED"
    wrong_pin = client.post("/v1/profiles/alex/purchases", json={"reward_id": "pick_dinner", "pin": "0000"})
    assert wrong_pin.status_code == 403
    assert wrong_pin.json()["code"] == "PIN_REJECTED"

    approved = client.post("/v1/profiles/alex/purchases", json={"reward_id": "pick_dinner", "pin": "1234"})
    assert approved.status_code == 200
    assert approved.json()["xp_remaining"] == 700
    limited = client.post("/v1/profiles/alex/purchases", json={"reward_id": "pick_dinner", "pin": "1234"})
    assert limited.status_code == 409
    assert limited.json()["code"] == "REWARD_LIMIT_REACHED"

    rewards = client.get("/v1/profiles/alex/rewards").json()["rewards"]
    assert next(row for row in rewards if row["id"] == "pick_dinner")["limitReached"] is True


def test_reset_endpoints(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service, client = _service_and_client(tmp_path, monkeypatch)
    client.post("/v1/profiles/sam/completions", json={"task_id": "make_bed"})
    assert client.post("/v1/profiles/sam/reset", json={"pin": "1234"}).status_code == 403
    reset = client.post("/v1/profiles/sam/reset", json={"pin": "4321"})
    assert reset.status_code == 200
    assert reset.json()["progress"]["xp"] == 0

    client.post("/v1/profiles/alex/completions", json={"task_id": "make_bed"})
    assert client.post("/v1/reset-all", json={"confirm": True}).status_code == 400
    done = client.post("/v1/reset-all", json={"confirm": True}, headers={"X-Questbox-Confirm": "true"})
    assert done.status_code == 200
    assert service.progress["alex"].xp == 0


def test_catalog_endpoints(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _, client = _service_and_client(tmp_path, monkeypatch)
    generated = client.post(
        "/v1/catalog/generated/tasks",
        json={"name": "Sock Sorter", "description": "Match every sock.", "xp": 500, "repeatable": "daily"},
    )
    assert generated.status_code == 200
    assert generated.json()["task"]["xp"] == 100

    bad = client.post("/v1/catalog/generated/rewards", json={"name": "Nothing"})
    assert bad.status_code == 400
    assert bad.json()["code"] == "GENERATED_REWARD_INVALID"

    custom = client.post(
        "/v1/catalog/rewards",
        json={"profile_id": "alex", "pin": "1234", "name": "Zoo Trip", "cost": 400},
    )
    assert custom.status_code == 200
    denied = client.post(
        "/v1/catalog/rewards",
        json={"profile_id": "alex", "pin": "9999", "name": "Zoo Trip", "cost": 400},
    )
    assert denied.status_code == 403

    edited = client.patch("/v1/catalog/tasks/make_bed", json={"profile_id": "alex", "pin": "1234", "xp": 30})
    assert edited.status_code == 200
    assert edited.json()["task"]["xp"] == 30
    missing = client.patch("/v1/catalog/tasks/nope", json={"profile_id": "alex", "pin": "1234", "xp": 30})
    assert missing.status_code == 404

    catalog = client.get("/v1/catalog").json()
    assert catalog["tasks"][0]["name"] == "Sock Sorter"
    assert "Zoo Trip" in [reward["name"] for reward in catalog["rewards"]]
