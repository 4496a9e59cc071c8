"""
FastAPI Server for the Treasury Fulfillment Engine
Hosts the admin fulfillment API and runs the background payout jobs
"""
import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from config import Config

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
)
logger = logging.getLogger(__name__)

from database import create_tables, test_connection
from jobs.fulfillment_scheduler import get_fulfillment_scheduler
from routes.admin_fulfillment_routes import router as admin_fulfillment_router
from services.system_settings import system_settings_service

_startup_complete = False
_startup_timestamp = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: verify config, create tables, seed settings, start jobs
    Shutdown: stop the scheduler
    """
    global _startup_complete, _startup_timestamp
    logger.info(f"🔧 Worker {os.getpid()} starting...")

    validation = Config.validate()
    if not validation["valid"]:
        raise RuntimeError(f"Invalid configuration: {validation['missing']}")

    create_tables()
    system_settings_service.seed_defaults()

    scheduler = None
    if Config.SCHEDULER_ENABLED:
        scheduler = get_fulfillment_scheduler()
        scheduler.start()
    else:
        logger.info("🚫 SCHEDULER_ENABLED is off - background jobs not started")

    _startup_complete = True
    _startup_timestamp = time.time()
    logger.info(f"✅ Worker {os.getpid()} initialized successfully")

    yield

    if scheduler is not None:
        scheduler.stop()
    logger.info(f"🔄 Worker {os.getpid()} shutting down...")


app = FastAPI(
    title="Treasury Fulfillment Engine",
    description="Inventory-backed payout queue with admin controls",
    lifespan=lifespan
)

app.include_router(admin_fulfillment_router)


@app.get("/")
async def root():
    return {"message": "Treasury fulfillment server is running"}


@app.get("/health")
async def health_check():
    """Health check endpoint with startup readiness"""
    if not _startup_complete:
        return JSONResponse(
            content={"status": "starting", "service": "treasury-fulfillment", "ready": False},
            status_code=503
        )

    database_ok = test_connection()
    uptime = time.time() - _startup_timestamp if _startup_timestamp else 0
    return JSONResponse(
        content={
            "status": "healthy" if database_ok else "degraded",
            "service": "treasury-fulfillment",
            "ready": True,
            "database": database_ok,
            "uptime_seconds": round(uptime, 2),
        },
        status_code=200 if database_ok else 503
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("webhook_server:app", host="0.0.0.0", port=Config.PORT)
