from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from riskgate.api.error_handling import register_exception_handlers
from riskgate.api.routes import router
from riskgate.config import Settings
from riskgate.logging import bind_request_id, get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"

REQUEST_ID_HEADER = "X-Request-ID"

# the refresh cookie travels with credentials, which rules out a wildcard
_DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

_BASE_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Cache-Control": "no-store",
}


def _security_headers(settings: Settings) -> Dict[str, str]:
    headers = dict(_BASE_SECURITY_HEADERS)
    if settings.is_production:
        headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains"
    return headers


@asynccontextmanager
async def lifespan(app: FastAPI):
    from riskgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "riskgate_started",
        environment=runtime.settings.environment.value,
        version=__version__,
    )
    try:
        yield
    finally:
        await runtime.close()
        logger.info("riskgate_stopped")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Assemble the HTTP application: middlewares, error envelope and routes."""
    settings = settings or Settings.from_env()
    application = FastAPI(title="riskgate", version=__version__, lifespan=lifespan)

    origins: List[str] = settings.cors_allow_origins or _DEV_ORIGINS
    application.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
        max_age=3600,
    )

    security_headers = _security_headers(settings)

    @application.middleware("http")
    async def stamp_response(request: Request, call_next):
        request_id = bind_request_id(request.headers.get(REQUEST_ID_HEADER))
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        for name, value in security_headers.items():
            response.headers.setdefault(name, value)
        return response

    register_exception_handlers(application)
    application.include_router(router)

    @application.get("/healthz", tags=["health"])
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    return application


app = create_app()
