from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.routes import router
from app.config.settings import settings
from app.db.models import Base
from app.db.session import create_engine, create_session_factory
from app.medications.registry import MedicationRegistry
from app.providers.rxnorm import RxNormSource
from app.snapshots.manager import SnapshotCacheManager
from app.snapshots.store import SqlSnapshotStore
from app.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def build_services(engine) -> dict:
    """Wire the process-wide store, source, manager and registry."""
    session_factory = create_session_factory(engine)
    store = SqlSnapshotStore(session_factory)
    source = RxNormSource()
    manager = SnapshotCacheManager(store, source)
    registry = MedicationRegistry(session_factory, manager)
    return {
        "engine": engine,
        "store": store,
        "source": source,
        "manager": manager,
        "registry": registry,
    }


@asynccontextmanager
async def _lifespan(application: FastAPI):
    engine = create_engine()
    if settings.database_url.startswith("sqlite"):
        # Local runs without migrations.
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    for key, value in build_services(engine).items():
        setattr(application.state, key, value)
    logger.info("app_startup", rxnorm=settings.rxnorm.base_url)

    yield

    await engine.dispose()
    logger.info("app_shutdown")


def create_app() -> FastAPI:
    configure_logging(settings.log_level, json_output=settings.json_logs)
    application = FastAPI(title="rxsnapshot API", version="0.1.0", lifespan=_lifespan)
    application.include_router(router)
    return application


app = create_app()
