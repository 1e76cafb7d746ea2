from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

import choicebook.main as main_module
from choicebook.config import settings
from choicebook.db import session as db_session
from choicebook.modules.runtime.service import get_runtime
from choicebook.modules.store import repository
from tests.support.stories import linear_payload


def test_health_endpoint() -> None:
    with TestClient(main_module.app) as client:
        res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_lifespan_checks_dev_schema(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(settings, "env", "dev")
    monkeypatch.setattr(main_module, "ensure_dev_database_schema", lambda url: calls.append(url))

    with TestClient(main_module.app) as client:
        assert client.get("/health").status_code == 200

    assert len(calls) == 1
    assert calls[0].endswith("choicebook_test.db")


def test_lifespan_skips_schema_check_outside_dev(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(main_module, "ensure_dev_database_schema", lambda url: calls.append(url))

    with TestClient(main_module.app) as client:
        assert client.get("/health").status_code == 200

    assert calls == []


def test_lifespan_runs_background_idle_sweep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "session_sweep_interval_s", 0.02)
    get_runtime().tracker.idle_timeout_s = 0.0

    with TestClient(main_module.app) as client:
        published = client.post("/api/v1/stories/linear_v1/structure", json=linear_payload())
        assert published.status_code == 201
        opened = client.post(
            "/api/v1/sessions",
            json={"user_id": "reader-a", "story_id": "linear_v1", "session_id": "s-bg"},
        )
        assert opened.status_code == 201

        deadline = time.monotonic() + 5.0
        status = opened.json()["status"]
        while status == "active" and time.monotonic() < deadline:
            time.sleep(0.02)
            status = client.get("/api/v1/sessions/s-bg").json()["status"]

    assert status == "abandoned"
    with db_session.SessionLocal() as db:
        stored = repository.get_reader_path(db, "s-bg")
    assert stored.status.value == "abandoned"
    assert stored.session_end is None


def test_background_sweep_is_off_by_default(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[int] = []
    monkeypatch.setattr(main_module, "run_idle_sweep", lambda: calls.append(1) or 0)

    with TestClient(main_module.app) as client:
        time.sleep(0.05)
        assert client.get("/health").status_code == 200

    assert settings.session_sweep_interval_s == 0
    assert calls == []
