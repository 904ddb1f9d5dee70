"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from docvault.config import settings
from docvault.logging_config import configure_logging
from docvault.services.errors import UploadError
from docvault.services.upload_coordinator import build_coordinator

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load file records and wire the upload pipeline on startup."""
    configure_logging(settings.LOG_LEVEL, settings.LOG_PATH or None)
    app.state.coordinator = await build_coordinator(settings)

    yield

    # Cleanup
    await app.state.coordinator.close()


app = FastAPI(
    title="DocVault API",
    version="1.0.0",
    description="Secure document upload, storage and retrieval.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health_check():
    """Verify the coordinator is up and storage is reachable."""
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is None:
        return {"status": "starting"}
    try:
        stats = await coordinator.service_stats()
    except UploadError as e:
        logger.error(f"Health check failed: {e.code}")
        return {"status": "error", "storage": e.code}
    return {
        "status": "ok",
        "files": stats.total_files,
        "activeFiles": stats.active_files,
        "storedBytes": stats.storage.total_bytes,
    }


# Register routers
from docvault.routes.files import router as files_router
app.include_router(files_router)


def run():
    """Console entry point: serve the API on API_PORT."""
    uvicorn.run("docvault.main:app", host="0.0.0.0", port=settings.API_PORT)
