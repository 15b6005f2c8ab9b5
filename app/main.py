# app/main.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

# Configuration and core
from app.core.config import settings as config
from app.core.exceptions import InvalidAmount, InvalidCustomRate, InvalidPayload, LedgerError, NotFound
from app.core.limiter import limiter
from app.core.logging_config import setup_logging
from app.core.redis import redis_client

# FastAPI routers
from app.routers.v1.api import api_router
from app.routers.webhooks import router as webhooks_router
from app.routers.referral import router as referral_router

# Scheduled jobs
from app.tasks_registry import run_consistency_check, run_monthly_reset, run_recompute_rankings

# --- Init ---
logger = logging.getLogger(__name__)
scheduler = AsyncIOScheduler(timezone=config.SCHEDULER_TIMEZONE)

STARTUP_LOCK_KEY = "ledger_startup_lock"

# --- Error handlers ---
LEDGER_ERROR_STATUS = {
    InvalidAmount: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidCustomRate: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidPayload: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFound: status.HTTP_404_NOT_FOUND,
}

async def ledger_exception_handler(request: Request, exc: LedgerError):
    status_code = LEDGER_ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    logger.info(f"{exc.error_code} for {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"detail": exc.message, "error_code": exc.error_code, "details": exc.details}),
    )

async def unhandled_exception_handler(request: Request, exc: Exception):
    """
    Global handler for everything not handled elsewhere.
    """
    logger.critical(f"Unhandled exception for request: {request.method} {request.url}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error."},
    )

# --- Lifespan (startup and shutdown) ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Application lifespan startup...")

    # Redis lock so only one worker runs the scheduler
    is_main_worker = False
    if config.ENABLE_SCHEDULER:
        is_main_worker = await redis_client.set(STARTUP_LOCK_KEY, "1", ex=60, nx=True)

    if is_main_worker:
        logger.info("This is the main worker. Starting scheduler...")
        if not scheduler.running:
            scheduler.add_job(run_recompute_rankings, 'interval', minutes=config.RANK_RECOMPUTE_INTERVAL_MINUTES)
            scheduler.add_job(run_consistency_check, 'cron', hour=3, minute=0)
            scheduler.add_job(run_monthly_reset, 'cron', day=1, hour=0, minute=5)
            scheduler.start()
            logger.info("Scheduler started with background jobs.")
    else:
        logger.info("This is a secondary worker or the scheduler is disabled. Skipping scheduler setup.")

    yield

    if is_main_worker:
        logger.info("Main worker shutting down...")
        if scheduler.running:
            scheduler.shutdown()
            logger.info("Scheduler shut down.")
        await redis_client.delete(STARTUP_LOCK_KEY)
    else:
        logger.info("Secondary worker shutting down.")

# --- FastAPI app ---
app = FastAPI(
    title="Referral Ledger Service",
    description="Referral attribution, commission ledger and leaderboards",
    version="0.1.0",
    lifespan=lifespan
)

app.state.limiter = limiter

# --- Exception handlers ---
app.add_exception_handler(LedgerError, ledger_exception_handler)
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# --- Routers ---
app.include_router(api_router)
app.include_router(referral_router, tags=["Referral Links"])
app.include_router(webhooks_router, prefix="/internal/webhooks", tags=["Internal Webhooks"])
