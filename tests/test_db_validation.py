from pathlib import Path

import pytest
from sqlalchemy import create_engine

from choicebook.config import DEV_DEFAULT_DB_URL, ensure_dev_database_schema, validate_database_url


def test_validate_database_url_dev_missing_defaults() -> None:
    assert validate_database_url("dev", None) == DEV_DEFAULT_DB_URL


@pytest.mark.parametrize("url", ["sqlite:///:memory:", "sqlite://", "sqlite+pysqlite:///"])
def test_validate_database_url_dev_rejects_memory(url: str) -> None:
    with pytest.raises(RuntimeError) as exc:
        validate_database_url("dev", url)
    assert DEV_DEFAULT_DB_URL in str(exc.value)


def test_validate_database_url_test_passthrough() -> None:
    url = "sqlite:///:memory:"
    assert validate_database_url("test", url) == url


def test_dev_schema_guard_raises_when_missing_tables(tmp_path: Path) -> None:
    db_url = f"sqlite:///{tmp_path / 'guard.db'}"
    engine = create_engine(db_url, future=True)
    with engine.connect():
        pass
    engine.dispose()

    with pytest.raises(RuntimeError) as exc:
        ensure_dev_database_schema(db_url)
    assert "missing tables" in str(exc.value)
    assert "alembic upgrade head" in str(exc.value)
    assert db_url in str(exc.value)


def test_dev_schema_guard_flags_stale_revision(tmp_path: Path) -> None:
    db_url = f"sqlite:///{tmp_path / 'guard_stale.db'}"
    engine = create_engine(db_url, future=True)
    with engine.begin() as conn:
        for table in ("choice_structures", "reader_paths", "choice_events", "analytics_snapshots"):
            conn.exec_driver_sql(f"CREATE TABLE {table} (id INTEGER PRIMARY KEY)")
        conn.exec_driver_sql("CREATE TABLE alembic_version (version_num VARCHAR(32) NOT NULL)")
        conn.exec_driver_sql("INSERT INTO alembic_version (version_num) VALUES ('0000_stale')")
    engine.dispose()

    with pytest.raises(RuntimeError) as exc:
        ensure_dev_database_schema(db_url)
    assert "alembic_version=0000_stale" in str(exc.value)
