"""
aureus.api.main — FastAPI application entry point
==================================================

Run with::

    uvicorn aureus.api.main:app --reload --port 8000

Staking errors map onto HTTP statuses here, once, so routes can call the
services directly:

* ``ValidationError``   → 400
* ``PositionNotFound``, ``TransactionNotFound`` → 404
* ``PreconditionError`` → 409
* ``ProviderError``     → 503

Body: ``{"error": <code>, "detail": <message>}``.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from aureus import __version__  # noqa: E402
from aureus.api.deps import get_engine  # noqa: E402
from aureus.api.routes.admin import router as admin_router  # noqa: E402
from aureus.api.routes.ledger import router as ledger_router  # noqa: E402
from aureus.api.routes.public import router as public_router  # noqa: E402
from aureus.engine.errors import (  # noqa: E402
    PositionNotFound,
    PreconditionError,
    ProviderError,
    StakingError,
    TransactionNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine."""
    engine = get_engine()
    logger.info("Aureus API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Aureus API shutting down")


app = FastAPI(
    title="Aureus Staking API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
def error_status(exc: StakingError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, (PositionNotFound, TransactionNotFound)):
        return 404
    if isinstance(exc, PreconditionError):
        return 409
    if isinstance(exc, ProviderError):
        return 503
    return 500


@app.exception_handler(StakingError)
async def staking_error_handler(request: Request, exc: StakingError):
    status_code = error_status(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": exc.message},
    )


# Mount routers
app.include_router(public_router, prefix="/api")
app.include_router(ledger_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
