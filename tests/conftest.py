from __future__ import annotations

from pathlib import Path

import pytest

from choicebook.config import settings
from choicebook.db import models  # noqa: F401
from choicebook.db import session as db_session
from choicebook.db.base import Base
from choicebook.modules.runtime.service import reset_runtime


@pytest.fixture(autouse=True)
def _reset_db_and_runtime(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "env", "test")
    monkeypatch.setattr(settings, "generator_provider", "fake")
    monkeypatch.setattr(settings, "completion_step_weight", None)
    db_session.rebind_engine(f"sqlite+pysqlite:///{tmp_path / 'choicebook_test.db'}")
    Base.metadata.create_all(bind=db_session.engine)
    reset_runtime()
    yield
    reset_runtime()
    Base.metadata.drop_all(bind=db_session.engine)
    db_session.engine.dispose()
