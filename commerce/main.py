from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from commerce.config import Settings
from commerce.errors import CommerceError
from commerce.log import configure_logging
from commerce.routes import router
from commerce.services import Services, build_services

logger = structlog.get_logger(component="api")


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the API. Pass ``services`` to run against prebuilt dependencies."""
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level, settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = build_services(settings) if owned else services
        logger.info("service_started")
        yield
        if owned:
            app.state.services.close()
        logger.info("service_stopped")

    app = FastAPI(title="Order & Payment Lifecycle Service", lifespan=lifespan)
    app.state.settings = settings
    app.include_router(router)

    @app.exception_handler(CommerceError)
    async def commerce_error_handler(request: Request, exc: CommerceError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.post("/webhook")
    async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
        payload = await request.body()
        payments = request.app.state.services.payments
        event = await run_in_threadpool(payments.handle_webhook, payload, stripe_signature)
        return {"received": True, "type": event.event_type}

    return app
