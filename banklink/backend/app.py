from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from banklink.core.errors import BankLinkError

from .config import settings
from .routers import accounts, consents, webhooks
from .state import ServiceContainer, build_services

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger("banklink.backend")


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the API. ``services`` is injected by tests; otherwise it is wired at startup."""
    app = FastAPI(title=settings.title, version=settings.version)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(consents.router)
    app.include_router(accounts.router)
    app.include_router(webhooks.router)

    @app.exception_handler(BankLinkError)
    async def _bank_link_error(request: Request, exc: BankLinkError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": {"code": exc.code, "http_status": exc.http_status, "message": exc.message}},
        )

    if services is not None:
        app.state.services = services

    @app.on_event("startup")
    async def _on_startup() -> None:
        logger.info("Bootstrapping BankLink backend")
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        await app.state.services.housekeeper.start()

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        container: Optional[ServiceContainer] = getattr(app.state, "services", None)
        if container is not None:
            await container.aclose()

    return app


app = create_app()
