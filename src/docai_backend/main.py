from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .configuration import configure_logging, load_settings
from .database import utcnow
from .dependencies import build_services
from .errors import AppError
from .middleware import RateLimiter, RateLimitMiddleware
from .providers import TextProvider
from .routers import ai, auth, documents

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = app.state.services
    logger.info(f"{services.settings.app.name} started ({services.settings.app.environment})")
    yield
    services.job_manager.shutdown(wait=True)
    services.adapter.provider.close()
    logger.info("Job executor stopped")


def create_app(
    overrides: Optional[Dict[str, Any]] = None,
    provider: Optional[TextProvider] = None,
    firebase_verifier=None,
) -> FastAPI:
    """
    Build the application.

    Args:
        overrides: Nested settings merged over config.yaml and the environment
        provider: Text provider to use instead of Gemini
        firebase_verifier: Replacement for Firebase ID-token verification
    """
    settings = load_settings(overrides)
    configure_logging(settings)

    app = FastAPI(title=settings.app.name, version=settings.app.version, lifespan=lifespan)
    app.state.services = build_services(settings, provider=provider, firebase_verifier=firebase_verifier)

    app.add_middleware(
        RateLimitMiddleware,
        api_limiter=RateLimiter(int(settings.rate_limit.api_requests), float(settings.rate_limit.window_seconds)),
        auth_limiter=RateLimiter(int(settings.rate_limit.auth_requests), float(settings.rate_limit.window_seconds)),
        enabled=bool(settings.rate_limit.enabled),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.app.allowed_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"][1:]), "message": error["msg"]}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder({"success": False, "message": "Validation failed", "errors": errors}),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})

    @app.get("/health")
    def healthcheck() -> Dict[str, Any]:
        return {
            "success": True,
            "message": f"{settings.app.name} is running",
            "timestamp": utcnow().isoformat(),
            "environment": settings.app.environment,
            "version": settings.app.version,
        }

    app.include_router(auth.router)
    app.include_router(documents.router)
    app.include_router(ai.router)
    return app


app = create_app()
