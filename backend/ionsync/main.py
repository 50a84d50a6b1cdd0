import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ionsync.config import settings
from ionsync.mongo_database import close_mongo, get_mongo_database, init_mongo
from ionsync.pg_database import AsyncSessionLocal, init_pg
from ionsync.routers.sync import router as sync_router
from ionsync.services.batch_writer import MongoDocumentStore
from ionsync.services.ion_api import IonQueryClient
from ionsync.services.job_ledger import JobLedger
from ionsync.services.scheduled_sync import purge_expired_jobs, scheduled_sync
from ionsync.services.sync_engine import SyncEngine

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_pg()
    ledger = JobLedger(AsyncSessionLocal)
    app.state.ledger = ledger

    init_mongo()
    store = MongoDocumentStore(get_mongo_database())
    app.state.document_store = store
    try:
        await store.ensure_indexes()
        logger.info("MongoDB natural-key indexes created/verified")
    except Exception as e:
        logger.warning("Could not create MongoDB indexes (will retry on next start): %s", e)

    app.state.http_client = httpx.AsyncClient(timeout=settings.ion_request_timeout)
    logger.info("Shared HTTP client initialised")

    engine = SyncEngine.from_settings(ledger, IonQueryClient(app.state.http_client), store)
    app.state.sync_engine = engine
    await engine.resume_interrupted()

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        purge_expired_jobs,
        "interval",
        hours=1,
        args=[ledger, settings.ledger_retention_days],
        next_run_time=datetime.now(timezone.utc) + timedelta(seconds=30),
    )
    if settings.scheduler_enabled and settings.scheduled_entities:
        scheduler.add_job(
            scheduled_sync,
            "interval",
            minutes=settings.scheduled_interval_minutes,
            args=[engine, settings.scheduled_entities, settings.scheduled_warehouse_id],
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=30),
            max_instances=1,
        )
        logger.info(
            "Scheduled sync every %d minutes for %s",
            settings.scheduled_interval_minutes, ", ".join(settings.scheduled_entities),
        )
    scheduler.add_job(
        engine.resume_interrupted,
        "interval",
        minutes=settings.resume_check_interval_minutes,
        max_instances=1,
    )
    scheduler.start()
    logger.info("Scheduler started, ledger entries kept for %d days", settings.ledger_retention_days)

    yield

    scheduler.shutdown(wait=False)
    await engine.shutdown()
    await app.state.http_client.aclose()
    logger.info("Shared HTTP client closed")
    await close_mongo()


app = FastAPI(title="ION DataFabric Sync API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync_router, prefix="/api")


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/api/health/mongo")
async def health_mongo() -> dict:
    try:
        database = get_mongo_database()
        await asyncio.wait_for(database.command("ping"), timeout=5.0)
        return {"status": "ok", "database": settings.mongodb_database}
    except asyncio.TimeoutError:
        return {"status": "error", "detail": "MongoDB ping timed out"}
    except Exception as e:
        return {"status": "error", "detail": str(e)}
