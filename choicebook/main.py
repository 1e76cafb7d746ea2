import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from choicebook.config import ensure_dev_database_schema, settings
from choicebook.db import session as db_session
from choicebook.modules.runtime.router import router as runtime_router
from choicebook.modules.runtime.service import get_runtime

logger = logging.getLogger(__name__)


def run_idle_sweep() -> int:
    with db_session.SessionLocal() as db:
        with db.begin():
            swept = get_runtime().sweep_idle(db)
    return len(swept)


async def _idle_sweep_loop(interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            await asyncio.to_thread(run_idle_sweep)
        except SQLAlchemyError:
            logger.exception("background idle sweep failed; retrying next interval")


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    logging.basicConfig(level=settings.log_level)
    if settings.env == "dev":
        ensure_dev_database_schema(str(db_session.engine.url))
    sweeper = None
    if settings.session_sweep_interval_s > 0:
        sweeper = asyncio.create_task(_idle_sweep_loop(float(settings.session_sweep_interval_s)))
    try:
        yield
    finally:
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper


app = FastAPI(title=settings.app_name, lifespan=_lifespan)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(runtime_router)
