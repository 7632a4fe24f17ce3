"""
Deadline Enforcer - FastAPI Application

Main entry point for the Deadline Enforcer backend.

Architecture:
- DeadlineUnit --(deadline elapsed / failing grade)--> FAILED
- FAILED unit --> DecisionEngine --> ConsequenceRecord per stake (mercy gate)
- ConsequenceRecord --> Executor --> payment / content release / social post
- Finished record --> NotificationQueue --> shown exactly once, acknowledged
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import LOG_LEVEL, VERSION, WORKERS_ENABLED
from .database import init_db, SessionLocal
from .routers import consequences_router, scheduler_router
from .services.collaborators import build_collaborators
from .services.enforcement import PushChannel, start_workers, stop_workers

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database, push channel and collaborators; run workers if enabled."""
    init_db()
    app.state.push_channel = PushChannel()
    app.state.collaborators = build_collaborators()

    workers = []
    if WORKERS_ENABLED:
        workers = start_workers(SessionLocal, app.state.collaborators, app.state.push_channel)
    else:
        logger.info("Background workers disabled; use the /internal scheduler endpoints")

    yield

    stop_workers(workers)


# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Deadline Enforcer",
    description="""
    Deadline Enforcer - Commitment Consequence System

    Users attach real stakes to deadlines. Missing a deadline or failing
    its grading triggers those stakes, subject to a mercy roll.

    ## Pipeline
    1. **Deadline Monitor**: overdue pending units -> FAILED
    2. **Decision Engine**: one consequence record per stake, mercy gate applied
    3. **Executor**: idempotent charge / content release / social post
    4. **Notification Queue**: each finished consequence shown exactly once

    ## Key Principles
    - Deadlines cannot be extended once passed
    - A failed unit never produces duplicate consequences
    - A consequence is executed at most once per collaborator
    - Push is advisory; catch-up on connect is the source of truth
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(consequences_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Deadline Enforcer",
        "version": VERSION,
        "description": "Commitment Consequence System",
        "docs": "/docs",
        "workers_enabled": WORKERS_ENABLED,
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": VERSION}


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
