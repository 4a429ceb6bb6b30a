"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from quicksend import __version__
from quicksend.config import settings
from quicksend.database import async_session, engine, get_db
from quicksend.events import EventBus
from quicksend.models import Base
from quicksend.services.blob_store import IncompletePartsError, S3BlobStore, StorageUnavailable
from quicksend.services.ledger import UploadLedger
from quicksend.services.orchestrator import UploadError, UploadOrchestrator
from quicksend.services.sweeper import RetentionSweeper, sweeper_loop

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, wire services onto app.state, start the retention sweeper."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    blob_store = S3BlobStore.from_settings(settings)
    ledger = UploadLedger(async_session)
    events = EventBus()
    orchestrator = UploadOrchestrator(
        ledger, blob_store, public_base_url=settings.PUBLIC_BASE_URL, events=events,
    )
    app.state.events = events
    app.state.orchestrator = orchestrator

    sweeper_task = None
    if settings.SWEEP_ENABLED:
        sweeper = RetentionSweeper(ledger, blob_store, events=events)
        sweeper_task = asyncio.create_task(
            sweeper_loop(sweeper, settings.SWEEP_INTERVAL_SECONDS)
        )

    yield

    # Cleanup
    if sweeper_task is not None:
        sweeper_task.cancel()
    await orchestrator.drain_background_tasks()
    await engine.dispose()


app = FastAPI(
    title="QuickSend Upload API",
    version=__version__,
    description="Presigned upload coordination and download redirects.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(IncompletePartsError)
async def incomplete_parts_handler(request: Request, exc: IncompletePartsError):
    return JSONResponse(
        status_code=400,
        content={
            "code": "IncompletePartsError",
            "error": "IncompletePartsError",
            "message": str(exc),
            "missingParts": exc.missing,
        },
    )


@app.exception_handler(StorageUnavailable)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    logger.error(f"Storage unavailable on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={
            "code": "StorageUnavailable",
            "error": "StorageUnavailable",
            "message": "Storage is temporarily unavailable, please retry",
        },
    )


@app.get("/api/health")
async def health_check():
    """Verify API and database connectivity."""
    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": str(e)}


# Register routers
from quicksend.routes.uploads import router as uploads_router
from quicksend.routes.downloads import router as downloads_router
app.include_router(uploads_router)
app.include_router(downloads_router)
