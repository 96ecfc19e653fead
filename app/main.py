import logging
import os
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import Settings, load_config, load_settings, validate_env
from app.core.errors import AppError, ValidationError, to_error_result
from app.core.rate_limit import RateLimiter, rate_limiter_from_config
from app.services.factory import build_orchestrator

from app.api.v1.endpoints.calculate import router as calculate_router
from app.api.v1.endpoints.health import router as health_router

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    orchestrator: Any = None,
    rate_limiter: Optional[RateLimiter] = None,
    config: Optional[Dict[str, Any]] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Rakit aplikasi FastAPI. Orchestrator / rate limiter bisa di-inject
    (dipakai di test); default dibangun dari env + data/config.json.
    """
    settings = settings or load_settings()
    config = config if config is not None else load_config()

    missing = validate_env(settings)
    if missing:
        logger.warning("Missing required environment variables: %s", ", ".join(missing))

    if orchestrator is None:
        orchestrator = build_orchestrator(settings, config)

    app = FastAPI(
        title="Dispense Calculator Backend",
        version="1.0.0",
        description="Prescription dispense quantity calculation and NDC package selection.",
    )
    app.state.settings = settings
    app.state.config = config
    app.state.orchestrator = orchestrator
    app.state.rate_limiter = rate_limiter or rate_limiter_from_config(config)

    # =====================================================
    #  ROUTERS
    # =====================================================

    app.include_router(health_router, prefix="/api/v1")
    app.include_router(calculate_router, prefix="/api/v1")

    # =====================================================
    #  CORS
    # =====================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =====================================================
    #  MIDDLEWARE: REQUEST ID
    # =====================================================

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    # =====================================================
    #  ERROR HANDLER
    # =====================================================

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        return JSONResponse(
            status_code=exc.status_code,
            content=to_error_result(exc).model_dump(mode="json", exclude_none=True),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError("Request body must be valid JSON")
        return JSONResponse(
            status_code=error.status_code,
            content=to_error_result(error).model_dump(mode="json", exclude_none=True),
        )

    # =====================================================
    #  ROOT
    # =====================================================

    @app.get("/")
    async def root():
        return {"status": "ok", "message": "Dispense Calculator Backend is running"}

    return app


app = create_app()
