from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from database import database
from routes import admin, public, webhooks

import os
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from services.container import build_services
from services.provisioning_poller import BackgroundDispatcher, poll_once

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# In-memory job store: the schedule is rebuilt on every start, and due
# provisioning work lives in provisioning_jobs, not in the scheduler
scheduler = AsyncIOScheduler()


async def run_provisioning_poll(app: FastAPI):
    """Scheduled sweep: PENDING jobs, due retries, and jobs orphaned by a crashed executor."""
    services = getattr(app.state, "services", None)
    if services is None:
        return
    try:
        processed = await poll_once(services.engine)
        if processed:
            logger.info("Provisioning poll processed %s job(s)", processed)
    except Exception as e:
        logger.error(f"Provisioning poll failed: {e}", exc_info=True)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.environ.get("PYTEST_RUNNING"):
        # Tests install their own services on app.state
        yield
        return

    settings = get_settings()
    logger.info("Starting Snapshot SaaS Provisioning API (%s)", settings.environment)
    await database.connect()

    if not settings.stripe_secret_key:
        logger.error("STRIPE_SECRET_KEY is not set. Checkout and payment links will fail.")
    else:
        stripe_mode = "test" if settings.stripe_secret_key.startswith("sk_test_") else "live"
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", stripe_mode)
    if not settings.ghl_api_key:
        logger.error("GHL_API_KEY is not set. Provisioning jobs will fail and be retried.")

    dispatcher = BackgroundDispatcher()
    services = build_services(database.get_db(), settings, dispatch=dispatcher)
    dispatcher.bind(services.engine)
    app.state.services = services
    app.state.dispatcher = dispatcher

    scheduler.add_job(
        run_provisioning_poll,
        IntervalTrigger(seconds=settings.poll_interval_seconds),
        args=[app],
        id="provisioning_poller",
        name="Provisioning Job Poller",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info("Scheduler started: provisioning poll every %ss", settings.poll_interval_seconds)

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    await dispatcher.drain(timeout=30)
    await database.close()
    logger.info("Snapshot SaaS Provisioning API stopped")


app = FastAPI(
    title="Snapshot SaaS Provisioning API",
    description="Plan catalog, Stripe checkout and GoHighLevel sub-account provisioning",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=get_settings().cors_origins.split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(public.router)  # Snapshot catalog + checkout
app.include_router(webhooks.router)  # Stripe webhooks
app.include_router(admin.router)  # Plans, jobs, audit


# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "Snapshot SaaS Provisioning",
        "version": "1.0.0",
        "status": "operational"
    }


# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
