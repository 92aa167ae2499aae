"""
FastAPI application with New Relic APM, CORS, lifespan-owned dispatch components, and all routers.
"""
import logging
import os

# New Relic must be initialized BEFORE any other imports that it instruments.
if os.getenv("NEW_RELIC_LICENSE_KEY"):
    import newrelic.agent
    newrelic.agent.initialize("newrelic.ini")

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ridehail.config import get_settings
from ridehail.database import create_engine, create_session_factory
from ridehail.errors import DispatchError
from ridehail.realtime import ConnectionRegistry
from ridehail.redis_client import get_redis, close_redis
from ridehail.routers import captains, rides, ws
from ridehail.services.directions import DirectionsClient
from ridehail.services.dispatch import DispatchOrchestrator
from ridehail.services.wallet import WalletLedger

settings = get_settings()
logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s [%s]", settings.app_name, settings.env)
    engine = create_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    redis = await get_redis()          # warm up connection pool
    registry = ConnectionRegistry()
    directions = DirectionsClient(settings)
    ledger = WalletLedger(settings)
    orchestrator = DispatchOrchestrator(session_factory, redis, registry, directions, ledger, settings)

    app.state.session_factory = session_factory
    app.state.registry = registry
    app.state.orchestrator = orchestrator

    await orchestrator.deadlines.start()
    try:
        yield
    finally:
        await orchestrator.deadlines.stop()
        await registry.close()
        await directions.aclose()
        await ledger.aclose()
        await close_redis()
        await engine.dispose()
        logger.info("Shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version="1.0.0",
    description="Ride lifecycle orchestration: booking, matching, trip progress and settlement",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Domain errors
@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.kind, request.url, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.kind},
    )


# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s: %s", request.url, exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# Health check (no auth)
@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok"}


# Register routers
app.include_router(rides.router)
app.include_router(captains.router)
app.include_router(ws.router)
