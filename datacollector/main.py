"""FastAPI application entry point."""

import logging

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from datacollector.config import Settings
from datacollector.database import create_db_engine, create_session_factory, run_migrations
from datacollector.orchestrator import build_orchestrator
from datacollector.routes import jobs

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="DataCollector",
    description="Background job orchestration for document collection, processing, indexing and search",
    version="0.1.0",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(jobs.router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report invalid requests as 400."""
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.on_event("startup")
async def startup_event():
    """Build the orchestrator and start the embedded processor."""
    logger.info("Starting application...")
    settings = Settings()
    logging.getLogger().setLevel(settings.LOG_LEVEL.upper())

    engine = create_db_engine(settings.DATABASE_URL)
    run_migrations(engine, settings.DATABASE_URL)

    orchestrator = build_orchestrator(settings, session_factory=create_session_factory(engine))
    orchestrator.start()
    app.state.orchestrator = orchestrator
    logger.info("Job orchestrator started")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the processor when the app shuts down."""
    logger.info("Shutting down application...")
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        # Joining worker threads blocks, keep it off the event loop
        await run_in_threadpool(orchestrator.shutdown)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "name": "DataCollector",
        "version": "0.1.0",
        "status": "running",
    }
