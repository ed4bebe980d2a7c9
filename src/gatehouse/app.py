"""FastAPI application factory for Gatehouse."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gatehouse.audit.middleware import AuditMiddleware
from gatehouse.common.config import GatehouseSettings, get_settings
from gatehouse.common.exceptions import GatehouseError, RateLimited, ValidationFailed
from gatehouse.common.logging import get_logger, setup_logging
from gatehouse.common.schemas import HealthResponse
from gatehouse.ratelimit.limiter import limit_headers

logger = get_logger("app")


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        details.append({"field": ".".join(loc), "message": error.get("msg", "")})
    return details


def create_app(settings: Optional[GatehouseSettings] = None, services=None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    if services is None:
        from gatehouse.deps import build_services
        services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        await app.state.services.startup()
        yield
        # Shutdown
        await app.state.services.shutdown()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(GatehouseError)
    async def gatehouse_error_handler(request: Request, exc: GatehouseError):
        headers = limit_headers(exc) if isinstance(exc, RateLimited) else None
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc.code, extra={"context": {"path": request.url.path}})
        return JSONResponse(status_code=exc.status_code, content=exc.to_envelope(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        error = ValidationFailed(details=_validation_details(exc))
        return JSONResponse(status_code=error.status_code, content=error.to_envelope())

    app.add_middleware(AuditMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return HealthResponse(version=settings.api_version)

    from gatehouse.auth.router import router as auth_router

    app.include_router(auth_router, prefix="/auth")
    app.include_router(auth_router, prefix="/api/auth")

    return app
