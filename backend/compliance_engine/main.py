"""
Compliance Engine - FastAPI Application

Main entry point for the compliance deadline backend.

Architecture:
- Rules Provider → Event Materializer → ComplianceEvent rows
- Lifecycle Tracker → pending / due_soon / overdue / completed / waived
- Notification Scorer → Throttle & Dedup Gate → Dispatcher → email / SMS / in-app
- Recurrence Generator → next cycle once a recurring event is closed
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import compliance_router, scheduler_router
from .database import init_db


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Compliance Engine",
    description="""
    Compliance Deadline Scheduling and Notification Prioritization Engine

    Tracks recurring regulatory obligations for business entities and decides
    when, and how loudly, to remind their owners.

    ## Pipeline
    1. **Materializer**: obligation templates → dated compliance events
    2. **Lifecycle**: time-driven status transitions, explicit completion/waiver
    3. **Scorer**: 0-100 priority per event and user
    4. **Gate**: dedup by (event, status, due-date bucket) and per-user rate limit
    5. **Dispatcher**: every enabled channel, one record per attempt

    ## Key Principles
    - One event per (entity, obligation, cycle), enforced by the database
    - Statuses never move backwards; completed and waived are terminal
    - Every admitted notification reflects a materially new condition
    """,
    version="1.0.0",
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
app.include_router(compliance_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Compliance Engine",
        "version": "1.0.0",
        "description": "Compliance Deadline Scheduling and Notification Prioritization",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m compliance_engine.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
