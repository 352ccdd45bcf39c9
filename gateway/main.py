import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI
from sqlalchemy.engine import Engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from gateway.api import billing, health, jobs
from gateway.core.config import Settings, validate_config
from gateway.core.database import create_all_tables, create_db_engine
from gateway.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from gateway.core.logging import configure_logging
from gateway.core.middleware.request_id import RequestIdMiddleware
from gateway.features.backend_client.client import InternalGatewayClient
from gateway.features.billing.event_log import BillingEventLog
from gateway.features.billing.links import CustomerLinker
from gateway.features.billing.pending import PendingReconciliationQueue
from gateway.features.billing.provider import BillingProvider
from gateway.features.billing.service import BillingEventProcessor, TierRefresher
from gateway.features.billing.state import TierStateStore
from gateway.features.billing.stripe_provider import StripeProvider
from gateway.features.quota.store import QuotaStore


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    provider: Optional[BillingProvider] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the gateway app; every collaborator lives on app.state."""
    if settings is None:
        if "PYTEST_CURRENT_TEST" not in os.environ:
            load_dotenv()
        settings = Settings()

    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT, settings_obj=settings)

    if engine is None:
        engine = create_db_engine(settings.database_url)
    create_all_tables(engine)

    if provider is None:
        provider = StripeProvider(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            tolerance_seconds=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )

    price_map = settings.price_map
    linker = CustomerLinker(engine)
    tier_store = TierStateStore(engine)
    backend_client = InternalGatewayClient.from_settings(settings, http_client=http_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("gateway")
        logger.info("Starting gateway...")
        app.state.startup_time = time.time()
        try:
            yield
        finally:
            await backend_client.aclose()
            logger.info("Stopping gateway...")

    app = FastAPI(title="Kloner - Gateway", lifespan=lifespan)

    app.state.settings = settings
    app.state.engine = engine
    app.state.tier_store = tier_store
    app.state.quota_store = QuotaStore(engine, timezone=settings.QUOTA_TIMEZONE)
    app.state.processor = BillingEventProcessor(
        provider=provider,
        linker=linker,
        tier_store=tier_store,
        event_log=BillingEventLog(engine),
        pending=PendingReconciliationQueue(engine),
        price_map=price_map,
    )
    app.state.refresher = TierRefresher(
        provider=provider,
        linker=linker,
        tier_store=tier_store,
        price_map=price_map,
    )
    app.state.backend_client = backend_client

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router, tags=["health"])
    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(jobs.router, prefix="/api", tags=["jobs"])

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("gateway.main:create_app", factory=True, host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
