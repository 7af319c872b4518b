from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.api.v1.api import api_router
from app.core.config import settings
from app.core.exceptions import EntitlementError
import logging
import os

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

from app.db.mongo import mongodb, ensure_indexes
from app.services.cache import TTLCache
from app.services.lifecycle_emails import LifecycleEmailJob
from app.services.subscription_reconciler import SubscriptionReconciler
from app.services.task_queue import BackgroundTaskQueue

# Create FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Billing, usage metering and lifecycle email API",
    version="1.0.0",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json"
)


def init_state(target: FastAPI) -> None:
    """Build the process-local collaborators the routes pull from app.state."""
    target.state.cache = TTLCache()
    target.state.task_queue = BackgroundTaskQueue()
    target.state.lifecycle_job = LifecycleEmailJob()
    target.state.reconciler = SubscriptionReconciler(target.state.task_queue, target.state.lifecycle_job)


@app.on_event("startup")
async def startup():
    await mongodb.connect_to_database()
    await ensure_indexes(mongodb.db)

    init_state(app)
    app.state.cache.start_cleanup()
    app.state.task_queue.start()
    if settings.LIFECYCLE_EMAILS_ENABLED:
        app.state.lifecycle_job.start()


@app.on_event("shutdown")
async def shutdown():
    await app.state.lifecycle_job.stop()
    await app.state.task_queue.stop()
    await app.state.cache.stop_cleanup()
    await mongodb.close_database_connection()


@app.exception_handler(EntitlementError)
async def entitlement_error_handler(request: Request, exc: EntitlementError):
    return JSONResponse(status_code=exc.status_code, content=exc.body)


# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        settings.FRONTEND_URL,
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": f"Welcome to {settings.PROJECT_NAME} API",
        "docs": "/docs",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    queue = getattr(app.state, "task_queue", None)
    return {
        "status": "healthy",
        "background_jobs_pending": queue.pending if queue else 0,
    }


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", 10000))
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=True)
