from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import webhooks, plans, billing, admin_billing
from utils.errors import BillingError

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from job_runner import run_renewal_reminders, run_pending_cancellation_sync


def build_scheduler() -> AsyncIOScheduler:
    """Scheduler with a MongoDB job store so jobs survive restarts (memory store if unavailable)."""
    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
    db_name = os.environ.get('DB_NAME', 'billing_core')
    try:
        from pymongo import MongoClient
        jobstores = {
            'default': MongoDBJobStore(
                database=db_name,
                collection='scheduled_jobs',
                client=MongoClient(mongo_url),
            )
        }
        logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
    except Exception as e:
        logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
        jobstores = {}
    return AsyncIOScheduler(jobstores=jobstores)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.environ.get("PYTEST_RUNNING"):
        yield
        return

    # Startup
    logger.info("Starting Billing Core API")
    await database.connect()

    if not (os.environ.get("RAZORPAY_KEY_ID") and os.environ.get("RAZORPAY_KEY_SECRET")):
        logger.error("RAZORPAY_KEY_ID / RAZORPAY_KEY_SECRET not set. Checkout and subscriptions will fail.")
    if not os.environ.get("RAZORPAY_WEBHOOK_SECRET"):
        logger.error("RAZORPAY_WEBHOOK_SECRET not set. All webhook deliveries will be rejected.")

    if os.environ.get("SEED_DEFAULT_PLANS", "true").lower() in ("1", "true", "yes"):
        try:
            from services.plan_registry import plan_registry
            created = await plan_registry.seed_defaults()
            logger.info(f"Default plans seeded: {created} created")
        except Exception as e:
            logger.error(f"Failed to seed default plans: {e}")

    scheduler = build_scheduler()

    # Renewal reminders daily at 9:00 AM UTC
    scheduler.add_job(
        run_renewal_reminders,
        CronTrigger(hour=9, minute=0),
        id="renewal_reminders",
        name="Subscription Renewal Reminders",
        replace_existing=True
    )

    # Retry gateway cancellation for locally cancelled subscriptions every 15 minutes
    scheduler.add_job(
        run_pending_cancellation_sync,
        IntervalTrigger(minutes=15),
        id="pending_cancellation_sync",
        name="Pending Cancellation Sync",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    from services.notification_service import notification_service
    await notification_service.drain()
    await database.close()
    logger.info("Billing Core API stopped")


app = FastAPI(
    title="Billing Core API",
    description="Subscription billing: plans, subscriptions, usage quotas, payments and gateway webhooks",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router)
app.include_router(plans.router)
app.include_router(billing.router)
app.include_router(admin_billing.router)


# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Validation error handler: log request_id + error locations
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={
            "detail": [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors],
            "error_code": "VALIDATION_ERROR",
            "request_id": request_id,
        },
    )


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
