"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from celofx.api.services import Services, build_services
from celofx.config import get_settings
from celofx.errors import CeloFXError
from celofx.ledger.database import close_db, init_db
from celofx.notifications.telegram import close_bot

logger = logging.getLogger(__name__)


def _invalid_request(errors: list) -> JSONResponse:
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"Invalid {field}: {first.get('msg')}" if field else "Invalid request"
    return JSONResponse(
        {"error": message, "code": "INVALID_REQUEST", "retryable": False},
        status_code=400,
    )


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CeloFXError)
    async def celofx_error_handler(request: Request, exc: CeloFXError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc}")
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(PydanticValidationError)
    async def pydantic_error_handler(request: Request, exc: PydanticValidationError):
        return _invalid_request(exc.errors())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _invalid_request(list(exc.errors()))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    if app.state.manage_db:
        await init_db()
    yield
    # Shutdown
    await app.state.services.dispatcher.drain()
    await close_bot()
    if app.state.manage_db:
        await close_db()


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Prebuilt service graph; built from settings when omitted,
            in which case the app also owns the database lifecycle
    """
    settings = get_settings()

    app = FastAPI(
        title="CeloFX API",
        description="Authenticated, idempotent on-chain FX execution",
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.manage_db = services is None
    app.state.services = services or build_services(settings)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    # Register routes
    from celofx.api.routes import arbitrage, health, orders, remittance, vault

    app.include_router(health.router, tags=["Health"])
    app.include_router(arbitrage.router)
    app.include_router(remittance.router)
    app.include_router(vault.router)
    app.include_router(orders.router)

    return app
