import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from funds_ledger.api import admin, endpoints
from funds_ledger.core.config import settings
from funds_ledger.core.logging_setup import setup_logging
from funds_ledger.db.session import AsyncSessionLocal, close_db, init_db
from funds_ledger.integrations import HttpChainWatcher
from funds_ledger.services.reconciliation import ReconciliationLoop

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    await init_db()

    scheduler = None
    chain_watcher = None
    if settings.RECONCILE_ENABLED:
        if not settings.CHAIN_WATCHER_URL:
            logger.warning("RECONCILE_ENABLED is set but CHAIN_WATCHER_URL is not; reconciliation stays off")
        else:
            chain_watcher = HttpChainWatcher(settings.CHAIN_WATCHER_URL)
            scheduler = AsyncIOScheduler()
            ReconciliationLoop(AsyncSessionLocal, chain_watcher).schedule(scheduler)
            scheduler.start()
            logger.info("Reconciliation scheduler started")

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        logger.info("Reconciliation scheduler stopped")
    if chain_watcher is not None:
        await chain_watcher.aclose()
    await close_db()

app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)
app.include_router(endpoints.router, prefix="/api")
app.include_router(admin.router, prefix="/api")

@app.get("/health")
async def health():
    return {"status": "ok"}
