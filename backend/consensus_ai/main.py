from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.cache import close_redis, initialize_redis
from .core.config import Settings, load_settings
from .core.errors import (
    AccountNotFound,
    AdmissionDenied,
    ConsensusError,
    InvalidTransition,
    JobNotCompleted,
    JobNotFound,
    ValidationError,
)
from .core.logging import configure_logging, get_logger, get_trace_id
from .core.middleware import TraceIDMiddleware
from .core.rate_limit import RateLimitMiddleware
from .core.tracing import (
    configure_tracing,
    get_trace_id_from_context,
    instrument_fastapi,
    record_exception,
    shutdown_tracing,
)
from .dependencies import Services, build_services
from .routes import admin, consensus, health, metrics, usage

logger = get_logger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    AdmissionDenied: 402,
    AccountNotFound: 404,
    JobNotFound: 404,
    JobNotCompleted: 409,
    InvalidTransition: 409,
}


def _status_for(exc: ConsensusError) -> int:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


def _current_trace_id() -> Optional[str]:
    return get_trace_id() or get_trace_id_from_context()


def _json_error(status_code: int, content: dict) -> JSONResponse:
    trace_id = _current_trace_id()
    response = JSONResponse(status_code=status_code, content={**content, "trace_id": trace_id})
    if trace_id:
        response.headers["X-Trace-ID"] = trace_id
    return response


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ConsensusError)
    async def consensus_error_handler(request: Request, exc: ConsensusError):
        status_code = _status_for(exc)
        log = logger.error if status_code >= 500 else logger.info
        log(
            "consensus_error",
            status_code=status_code,
            code=exc.code,
            error=exc.message,
            path=request.url.path,
            method=request.method,
        )
        return _json_error(status_code, exc.details())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query")),
                "message": error.get("msg", "invalid value"),
            }
            for error in exc.errors()
        ]
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=errors,
        )
        return _json_error(400, {"error": "Invalid request", "code": ValidationError.code, "errors": errors})

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning(
            "http_exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=request.url.path,
            method=request.method,
        )
        return _json_error(exc.status_code, {"detail": exc.detail, "status_code": exc.status_code})

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        record_exception(exc)
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            method=request.method,
            exc_info=True,
        )
        return _json_error(500, {"detail": "Internal server error", "status_code": 500})


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: defaults to load_settings() (environment plus .env)
        services: prebuilt service graph; built from settings when omitted
    """
    settings = settings or (services.settings if services else load_settings())
    configure_logging(log_level=settings.log_level, json_output=settings.log_json)
    configure_tracing()

    services = services or build_services(settings)

    app = FastAPI(
        title="Consensus AI API",
        description="Metered multi-LLM consensus generation",
        version="1.0.0",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RateLimitMiddleware)
    # Added last so it runs first and rate-limit responses carry trace headers
    app.add_middleware(TraceIDMiddleware)

    instrument_fastapi(app)
    register_exception_handlers(app)

    @app.on_event("startup")
    async def startup_event():
        logger.info("app_startup_started", environment=settings.environment)

        redis_initialized = await initialize_redis(settings.redis_url)
        if not redis_initialized:
            logger.warning(
                "app_startup_redis_unavailable",
                message="Redis not available. Rate limiting is disabled and scheduler leases are process-local.",
            )

        if not len(services.providers):
            logger.warning(
                "app_startup_no_providers",
                message="No LLM provider API keys configured. Generation requests will be rejected.",
            )

        services.scheduler.start()
        logger.info("app_startup_completed", providers=services.providers.ids())

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("app_shutdown_started")
        await services.scheduler.stop()
        await services.registry.shutdown()
        await services.store.close()
        await close_redis()
        shutdown_tracing()
        logger.info("app_shutdown_completed")

    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(consensus.router, prefix="/consensus", tags=["Consensus"])
    app.include_router(usage.router, prefix="/usage", tags=["Usage"])
    app.include_router(metrics.router, prefix="/metrics", tags=["Metrics"])
    app.include_router(admin.router, prefix="/admin", tags=["Admin"])

    return app


app = create_app()
