from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

from choicebook.db import session as db_session

ROOT = Path(__file__).resolve().parents[2]


def prepare_sqlite_db(tmp_path: Path, filename: str) -> str:
    """Migrate a fresh sqlite file with alembic and point the app at it."""
    db_path = tmp_path / filename
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite:///{db_path}"
    env["ENV"] = "test"
    proc = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        cwd=ROOT,
        env=env,
        capture_output=True,
        text=True,
    )
    assert proc.returncode == 0, proc.stderr
    runtime_url = f"sqlite+pysqlite:///{db_path}"
    db_session.rebind_engine(runtime_url)
    return runtime_url
