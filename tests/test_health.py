from pathlib import Path

from fastapi.testclient import TestClient

from choicebook.main import app
from tests.support.db_runtime import prepare_sqlite_db
from tests.support.stories import linear_payload


def test_health_on_migrated_database(tmp_path: Path) -> None:
    prepare_sqlite_db(tmp_path, "health.db")
    client = TestClient(app)

    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}

    published = client.post("/api/v1/stories/linear_v1/structure", json=linear_payload())
    assert published.status_code == 201
