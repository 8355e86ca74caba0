from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from dora_metrics.config import load_settings
from dora_metrics.core.routes import router as core_router
from dora_metrics.exceptions import add_exception_handlers
from dora_metrics.health import router as health_check_router
from dora_metrics.lifespan import lifespan
from dora_metrics.utilities.logger import setup_rich_logger
from dora_metrics.utilities.middleware import (
    RateLimitMiddleware,
    process_time_log_middleware,
    request_id_middleware,
)


def get_application() -> FastAPI:
    settings = load_settings()

    _app = FastAPI(
        title="DORA Metrics",
        description="DORA metrics of an organization, computed from the Databricks gold tables",
        version=settings.VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    _app.include_router(core_router, prefix=settings.URL_PREFIX)
    _app.include_router(health_check_router)
    _app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # add rate limit middleware
    _app.add_middleware(
        RateLimitMiddleware,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
        max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
    )

    # add request id middleware
    _app.add_middleware(BaseHTTPMiddleware, dispatch=request_id_middleware)

    # add process time log middleware
    _app.add_middleware(BaseHTTPMiddleware, dispatch=process_time_log_middleware)

    # setup logging
    setup_rich_logger(settings)

    # add exception handlers
    add_exception_handlers(_app)

    return _app


app = get_application()
