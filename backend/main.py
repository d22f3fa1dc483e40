"""
Crew Chat Backend - FastAPI Application
Main entry point: chat list, badge, poke and change-event ingestion
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import HTTPException
from starlette.responses import Response

from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

import config
from config import CORS_ORIGINS, ENVIRONMENT, LOG_LEVEL, init_firebase
from deps import get_aggregator, get_store
from errors import AppError
from rate_limit import limiter, rate_limit_exceeded_handler
from routes import badge, chats, crews, ingest

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Crew Chat API",
    description="Unread badges, chat list aggregation and crew notifications",
    version="1.0.0"
)

# RateLimitExceeded is handled first (returns 429); then domain and generic handlers.
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

if ENVIRONMENT == "development":
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
elif CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    """NotFound / PermissionDenied / InvalidArgument raised by the core."""
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Preserve HTTPException status and detail; hide everything else."""
    if isinstance(exc, HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    logger.exception("Unhandled error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.on_event("startup")
async def startup_event():
    """
    Runs once when the app starts.
    Firebase is initialised here rather than at import time.
    """
    init_firebase()
    try:
        from background_scheduler import start_scheduler
        start_scheduler(get_store())
    except Exception as e:
        logger.warning("Badge reconciliation scheduler not started: %s", e)


@app.on_event("shutdown")
async def shutdown_event():
    from background_scheduler import stop_scheduler
    stop_scheduler()
    await get_aggregator().wait_pending()


# Health check / readiness endpoint (exempt from rate limit so load balancers don't get 429)
@app.get("/")
@limiter.exempt
async def health(request: Request, response: Response):
    return JSONResponse(content={"status": "ok", "environment": config.ENVIRONMENT})


# Include routers
app.include_router(chats.router, prefix="/chats", tags=["Chats"])
app.include_router(badge.router, prefix="/badge", tags=["Badge"])
app.include_router(crews.router, prefix="/crews", tags=["Crews"])
app.include_router(ingest.router, prefix="/events", tags=["Events"])
