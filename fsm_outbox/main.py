import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from starlette.middleware.gzip import GZipMiddleware

from fsm_outbox.config import settings
from fsm_outbox.api.v1 import fsm, outbox
from fsm_outbox.core.logging_config import setup_logging
from fsm_outbox.core.redis import init_redis, close_redis
from fsm_outbox.database import init_db, close_db
from fsm_outbox.middleware.logging import LoggingMiddleware
from fsm_outbox.middleware.monitoring import MonitoringMiddleware
from fsm_outbox.middleware.request_id import RequestIDMiddleware
from fsm_outbox.monitoring import metrics
from fsm_outbox.services.health_service import get_detailed_health

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await init_redis()
    if settings.AUTO_CREATE_TABLES:
        await init_db()
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started ({settings.ENVIRONMENT})")

    yield

    await close_redis()
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description="""
    **FSM Outbox Service** - atomic FSM initialization with a transactional job outbox

    ## Features
		* **Atomic initialization**: state, audit event and jobs committed together
		* **Idempotent commands** backed by a durable key table and a Redis cache
		* **Transactional outbox** drained to Celery by a background processor
		* **Fallback detectors**: stalled-entity scanner and worker-side guard

    ## Documentation
		* [Interactive API Docs](/docs)
		* [Health Check](/health)
		* [Metrics](/internal/metrics)
    """,
    version=settings.APP_VERSION,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "fsm", "description": "FSM initialization and state"},
        {"name": "outbox", "description": "Outbox monitoring"},
        {"name": "monitoring", "description": "System monitoring"},
    ],
    docs_url="/docs",
    redoc_url="/redoc" if settings.DEBUG else None,
    openapi_url="/openapi.json" if settings.DEBUG else "/api/openapi.json",
)

# =====================================
# Configure Middleware Stack
# =====================================

# GZIP Compression (minimum 1KB)
app.add_middleware(GZipMiddleware, minimum_size=1000)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)

# Custom middleware
app.add_middleware(MonitoringMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(LoggingMiddleware)

# Include routers
app.include_router(fsm.router, prefix=f"{settings.API_V1_PREFIX}/fsm", tags=["fsm"])
app.include_router(outbox.router, prefix=f"{settings.API_V1_PREFIX}/outbox", tags=["outbox"])

# Monitoring endpoints (internal use)
if settings.EXPOSE_METRICS:
    app.include_router(
        metrics.router,
        prefix="/internal",
        tags=["monitoring"]
    )


@app.get("/health", tags=["monitoring"])
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.APP_VERSION
    }


@app.get("/health/detailed", tags=["monitoring"])
async def detailed_health_check():
    return await get_detailed_health()
