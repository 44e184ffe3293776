import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

# Utils
from utils.log_utils import LogUtil
from utils.environment_utils import EnvironmentUtils

# Database
from database.listing_db import ListingDB

# Services
from services.extraction_service import ExtractionService
from services.listing_store_service import ListingStoreService
from services.worker_service import WorkerService
from services.worker_trigger_service import WorkerTriggerService
from services.intake_service import IntakeService

# APIs
from apis.webhook_api import create_webhook_api
from apis.worker_api import create_worker_api

# Utils
log_util = LogUtil()
environment_utils = EnvironmentUtils(log_util=log_util)

# Database
listing_db = ListingDB(log_util=log_util, environment_utils=environment_utils)

# Services
extraction_service = ExtractionService(
    log_util=log_util,
    environment_utils=environment_utils
)

listing_store_service = ListingStoreService(
    log_util=log_util,
    listing_db=listing_db
)

worker_service = WorkerService(
    log_util=log_util,
    environment_utils=environment_utils,
    listing_db=listing_db,
    extraction_service=extraction_service,
    listing_store_service=listing_store_service
)

# Runs the worker in-process unless WORKER_BASE_URL is set
worker_trigger_service = WorkerTriggerService(
    log_util=log_util,
    environment_utils=environment_utils,
    worker_service=worker_service
)

intake_service = IntakeService(
    log_util=log_util,
    listing_db=listing_db,
    worker_trigger_service=worker_trigger_service
)

# Define lifespan function
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await listing_db.ensure_indexes()
    log_util.info(service_name="ListingIntakeService", message="Application startup complete")

    yield

    # Shutdown
    listing_db.close()
    log_util.info(service_name="ListingIntakeService", message="Application shutdown complete")

# Create FastAPI app
app = FastAPI(
    title="listing intake service",
    description="WhatsApp property listing intake and extraction pipeline",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# WhatsApp webhook API (handshake + message intake)
webhook_router = create_webhook_api(
    log_util=log_util,
    environment_utils=environment_utils,
    intake_service=intake_service
)
app.include_router(webhook_router)

# Internal worker API (called by the trigger or an external scheduler)
worker_router = create_worker_api(
    log_util=log_util,
    environment_utils=environment_utils,
    worker_service=worker_service
)
app.include_router(worker_router)

# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "listing_intake_service"}

# Global exception handler for HTTPExceptions
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    log_util.error(service_name="ListingIntakeService", message=f"HTTPException: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error": str(exc),
            "status_code": exc.status_code
        },
        headers={"Content-Type": "application/json"}
    )

# Global exception handler for any unhandled exceptions
@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log_util.error(service_name="ListingIntakeService", message=f"Exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": str(exc),
            "status_code": 500
        },
        headers={"Content-Type": "application/json"}
    )

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=environment_utils.get_env_variable("HOST"),
        port=environment_utils.get_env_variable("PORT")
    )
