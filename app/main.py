"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.batch_upload import router as batch_upload_router
from app.config import get_settings
from app.database import Base, SessionLocal, engine
from app.models import BatchLog, Category, Resource, ResourceTag, Tag, User  # noqa: F401 - Import to register models
from app.redis_client import create_redis_client
from app.services.background import shutdown_background
from app.services.batch_services import build_batch_services

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(),  # Console output
        logging.FileHandler("app.log"),  # File output
    ],
)

# Set specific log levels for noisy libraries
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def _enqueue_drain(task_uuid: str) -> None:
    from app.tasks.batch_tasks import drain_batch_task

    drain_batch_task.delay(task_uuid)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables and the batch services on startup."""
    settings = get_settings()
    Base.metadata.create_all(bind=engine)

    redis_client = create_redis_client(settings)
    app.state.batch_services = build_batch_services(
        settings,
        redis_client,
        SessionLocal,
        enqueue_drain=_enqueue_drain,
    )
    logger.info(f"🚀 Batch upload service started (dispatch mode: {settings.batch_dispatch_mode})")
    yield

    shutdown_background(wait=False)
    redis_client.close()


app = FastAPI(
    title="Resource Batch Upload",
    description="Split bulk resource uploads into queued batches and process them reliably",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(batch_upload_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
