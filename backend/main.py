"""
Vinho Scan Pipeline API

FastAPI backend that ingests wine label photos and turns them into
producer/wine/vintage records asynchronously.

Usage:
    uvicorn main:app --reload
"""

# Load environment variables from .env file FIRST
from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from scan_pipeline import __version__
from scan_pipeline.config import Config

# Configure logging from environment
logging.basicConfig(
    level=getattr(logging, Config.log_level(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)
logger.info(f"Starting with LOG_LEVEL={Config.log_level()}, DATABASE_PATH={Config.database_path()}")

from scan_pipeline.db import ensure_schema
from scan_pipeline.routes import admin_router, enrichment_router, queue_router, scan_router
from scan_pipeline.security import cors_headers

# Startup state - set to True once the schema is migrated
_is_ready = False


def is_ready() -> bool:
    """Check if the service is ready to handle requests."""
    return _is_ready


def set_ready(ready: bool = True):
    """Set the service ready state."""
    global _is_ready
    _is_ready = ready


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    ensure_schema(Config.database_path())
    set_ready(True)
    logger.info("Service ready to handle requests")
    yield
    set_ready(False)


app = FastAPI(
    title="Vinho Scan Pipeline API",
    description="Queue wine label scans and resolve them into the wine catalog",
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def warmup_middleware(request: Request, call_next):
    """Return 503 with retry hint if service is still warming up."""
    # Always allow health checks (for probes) and root
    if request.url.path in ("/health", "/", "/docs", "/openapi.json"):
        return await call_next(request)

    if not is_ready():
        return JSONResponse(
            status_code=503,
            content={
                "error": "Service warming up",
                "message": "The server is starting up. Please retry in a few seconds.",
                "retry_after": 10,
            },
            headers={"Retry-After": "10"},
        )

    return await call_next(request)


# Registered last so it wraps everything, including warmup 503s
@app.middleware("http")
async def cors_middleware(request: Request, call_next):
    """Fixed-origin CORS for the web app, answering preflights directly."""
    headers = cors_headers(request.headers.get("origin"))
    if request.method == "OPTIONS":
        return PlainTextResponse("ok", headers=headers)

    response = await call_next(request)
    response.headers.update(headers)
    return response


# Include routers
app.include_router(scan_router, tags=["scan"])
app.include_router(queue_router, tags=["queue"])
app.include_router(admin_router, tags=["admin"])
app.include_router(enrichment_router, tags=["enrichment"])


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Vinho Scan Pipeline API",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint for Cloud Run probes."""
    return {"status": "healthy"}
