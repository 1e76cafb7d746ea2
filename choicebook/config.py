import os
from collections.abc import Iterable
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import create_engine, inspect, text

DEV_DEFAULT_DB_URL = "sqlite:///./choicebook.db"
DEV_REQUIRED_TABLES: tuple[str, ...] = ("choice_structures", "reader_paths", "choice_events", "analytics_snapshots")


class Settings(BaseSettings):
    app_name: str = "choicebook"
    env: str = "dev"
    database_url: str = "sqlite+pysqlite:///./choicebook.db"
    log_level: str = "INFO"

    session_idle_timeout_s: int = 1800
    # seconds between background idle sweeps; 0 leaves sweeping to POST /sessions/sweep
    session_sweep_interval_s: float = 0.0
    completion_step_weight: float | None = None

    analytics_completion_threshold: float = 90.0
    analytics_hard_decision_time_s: float = 60.0
    analytics_moderate_decision_time_s: float = 30.0
    analytics_hard_completion_rate: float = 0.70
    analytics_moderate_completion_rate: float = 0.85
    analytics_weight_selection: float = 0.3
    analytics_weight_completion: float = 0.4
    analytics_weight_satisfaction: float = 0.3
    analytics_popular_paths_limit: int = 10
    analytics_max_workers: int = 1
    analytics_chunk_size: int = 256

    validation_max_choices_per_point: int = 4
    validation_unbalanced_path_ratio: float = 2.5
    validation_max_enumerated_paths: int = 5000

    generator_provider: str = "fake"
    generator_base_url: str = "http://localhost:8787/v1"
    generator_api_key: str = ""
    generator_timeout_s: float = 20.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


def _is_sqlite_memory_url(db_url: str) -> bool:
    candidate = (db_url or "").strip().lower()
    if not candidate.startswith("sqlite"):
        return False
    if ":memory:" in candidate:
        return True
    return candidate in {
        "sqlite://",
        "sqlite:///",
        "sqlite+pysqlite://",
        "sqlite+pysqlite:///",
    }


def validate_database_url(env: str, db_url: str | None) -> str:
    env_value = (env or "").strip().lower()
    if env_value != "dev":
        return db_url or ""

    if not db_url or not db_url.strip():
        return DEV_DEFAULT_DB_URL

    if _is_sqlite_memory_url(db_url):
        raise RuntimeError(
            "DATABASE_URL cannot be sqlite :memory: when ENV=dev because reader paths will disappear. "
            f"Set DATABASE_URL={DEV_DEFAULT_DB_URL} or another file-based sqlite url."
        )
    return db_url


@lru_cache(maxsize=1)
def current_alembic_head_revision() -> str:
    from alembic.config import Config
    from alembic.script import ScriptDirectory

    ini_path = Path(__file__).resolve().parents[1] / "alembic.ini"
    cfg = Config(str(ini_path))
    cfg.set_main_option("script_location", str(Path(__file__).resolve().parent / "db" / "migrations"))
    script_dir = ScriptDirectory.from_config(cfg)
    head = script_dir.get_current_head()
    if not head:
        raise RuntimeError("Unable to resolve Alembic head revision from migration scripts.")
    return str(head)


def ensure_dev_database_schema(db_url: str, required_tables: Iterable[str] = DEV_REQUIRED_TABLES) -> None:
    if not db_url:
        return
    engine = create_engine(db_url, future=True)
    try:
        tables = set(inspect(engine).get_table_names())
        problems: list[str] = []

        missing_tables = [name for name in required_tables if name not in tables]
        if missing_tables:
            problems.append(f"missing tables: {', '.join(sorted(missing_tables))}")

        if "alembic_version" in tables:
            with engine.connect() as conn:
                db_revision = conn.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar_one_or_none()
            db_revision = str(db_revision or "").strip()
            head = current_alembic_head_revision()
            if db_revision != head:
                problems.append(f"alembic_version={db_revision or 'empty'} (expected {head})")
    finally:
        engine.dispose()

    if problems:
        details = "; ".join(problems)
        raise RuntimeError(
            f"dev schema mismatch for DATABASE_URL={db_url}: {details}. "
            f"Run ENV=dev DATABASE_URL={db_url} python -m alembic upgrade head"
        )


settings = Settings()
settings.database_url = validate_database_url(settings.env, os.getenv("DATABASE_URL") or settings.database_url)
