"""
StockLedger - Inventory Audit Ledger

Main application entry point.

Every stock movement the inventory application records is mirrored here as
a chained, signed, append-only entry. Nothing is edited. Things happen.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes import router as ledger_router
from .db.store import StorageError
from .observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)
from .shared_ledger import get_services

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    services = get_services()
    app.state.services = services
    app.state.store = services.store
    app.state.factory = services.factory
    app.state.verifier = services.verifier
    app.state.reader = services.reader
    app.state.dispatcher = services.dispatcher
    app.state.scheduler = services.scheduler

    # Hourly re-verification plus a one-shot run shortly after boot
    services.scheduler.start()

    logger.info(
        "Application startup complete",
        entry_count=services.store.count(),
        store_type=type(services.store).__name__,
        verification_enabled=services.scheduler.config.enabled,
        alerts_configured=services.dispatcher.is_configured,
    )

    yield

    services.scheduler.stop()
    services.store.close()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="StockLedger",
    description="""
## Inventory Audit Ledger

A tamper-evident record of every stock movement.

### Core Principles

- **Append-only**: Entries are never edited or deleted
- **Chained**: Every entry embeds the hash of the one before it
- **Signed**: Every hash carries an HMAC under the ledger key
- **Watched**: The whole chain is re-verified every hour and on startup

### Verification

A verification run walks the chain in order and reports every entry whose
signature does not match or whose previous hash does not link up.
Flagged entries are marked unverified and an operator alert is sent.

### Storage Backends

- **InMemoryLedgerStore**: Development/testing (default)
- **PostgresLedgerStore**: Production with full durability

Set `DATABASE_URL` or `DATABASE_HOST` environment variables to use PostgreSQL.
    """,
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add request context middleware for logging
app.add_middleware(RequestContextMiddleware)

# In production, restrict to your actual domain
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ledger_router)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    """The ledger store is down or busy. Nothing was written."""
    logger.error(f"Ledger store error: {exc}", path=request.url.path)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.get("/health", tags=["System"])
async def health():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    For detailed health, use /health/detailed
    """
    return {"status": "healthy", "service": "stockledger"}


@app.get("/health/detailed", tags=["System"])
async def health_detailed(request: Request):
    """
    Detailed health check with ledger verification.

    Checks:
    - Service liveness
    - Ledger store connectivity
    - Chain integrity (full verification run)

    Returns 200 if healthy, 503 if unhealthy.
    """
    health_status = check_health(
        store=request.app.state.store,
        verifier=request.app.state.verifier,
    )

    return JSONResponse(
        status_code=200 if health_status.healthy else 503,
        content={
            "status": "healthy" if health_status.healthy else "unhealthy",
            "checks": health_status.checks,
            "scheduler": request.app.state.scheduler.get_status(),
            "duration_ms": health_status.duration_ms,
        },
    )


@app.get("/metrics", tags=["System"])
async def metrics():
    """
    Get application metrics.

    Returns counters, gauges, and latency percentiles.
    """
    return get_metrics().get_summary()
