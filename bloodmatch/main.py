"""
Blood Match Service — FastAPI Application Entry Point

POST /v1/matching/{request_id}/run   → autonomous matching
POST /v1/matching/sweep              → periodic sweep, on demand
POST /v1/fraud/{user_id}/analyze     → fraud risk score
POST /v1/verification/{record_id}    → peer attestation round
GET  /v1/health                      → health check
GET  /docs                           → OpenAPI / Swagger UI
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from bloodmatch.api.matching_endpoint import router as matching_router
from bloodmatch.api.trust_endpoint import fraud_router, verification_router
from bloodmatch.core.config import get_settings
from bloodmatch.core.errors import (
    BloodMatchError,
    FraudDetected,
    InsufficientVerifiers,
    NotFound,
    StoreUnavailable,
    ValidationError,
)
from bloodmatch.core.logging import configure_logging
from bloodmatch.services.container import build_container

configure_logging()
logger = structlog.get_logger()

SERVICE_VERSION = "1.0.0"

ERROR_STATUS = [
    (NotFound, 404),
    (ValidationError, 422),
    (InsufficientVerifiers, 503),
    (FraudDetected, 403),
    (StoreUnavailable, 503),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    app.state.container = build_container(settings)
    logger.info(
        "bloodmatch_starting",
        model_version=app.state.container.model.version,
        env=settings.app_env,
    )
    yield
    await app.state.container.close()
    logger.info("bloodmatch_shutting_down")


app = FastAPI(
    title="Blood Match Service",
    description="Autonomous donor matching, fraud gating and peer verification",
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS (donor app + hospital dashboard) ──
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten in production
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)

# ── Prometheus metrics ──
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


# ── Error mapping ──
@app.exception_handler(BloodMatchError)
async def blood_match_error_handler(request: Request, exc: BloodMatchError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    logger.warning("request_failed", path=request.url.path, error=str(exc), status_code=status_code)
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


# ── Routes ──
app.include_router(matching_router)
app.include_router(fraud_router)
app.include_router(verification_router)


@app.get("/v1/health", tags=["health"])
async def health():
    container = getattr(app.state, "container", None)
    return {
        "status": "ok",
        "service": get_settings().app_name,
        "model_version": container.model.version if container else None,
    }


@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": get_settings().app_name,
        "version": SERVICE_VERSION,
        "docs": "/docs",
        "match": "POST /v1/matching/{request_id}/run",
    }
