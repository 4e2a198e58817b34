"""FastAPI application for the marketplace entitlement and feature engine."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketplace.app.billing import PaymentProcessorAdapter
from marketplace.app.routes.admin import router as admin_router
from marketplace.app.routes.cron import router as cron_router
from marketplace.app.routes.features import router as features_router
from marketplace.app.routes.listings import router as listings_router
from marketplace.app.routes.subscriptions import router as subscriptions_router
from marketplace.app.routes.webhooks import router as webhooks_router
from marketplace.app.services.billing import build_engine
from marketplace.config import EngineConfig, load_engine_config
from marketplace.storage import StorageClient
from marketplace.sweeps import shutdown_sweep_scheduler, start_sweep_scheduler

load_dotenv()

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[EngineConfig] = None,
    *,
    storage: Optional[StorageClient] = None,
    adapter: Optional[PaymentProcessorAdapter] = None,
) -> FastAPI:
    engine_config = config or load_engine_config()
    logging.basicConfig(level=engine_config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        storage_client = storage or StorageClient(engine_config.database)
        storage_client.open()
        if engine_config.database.auto_create_schema:
            storage_client.ensure_schema()
        engine = build_engine(engine_config, storage_client, adapter=adapter)
        app.state.engine = engine
        if engine_config.sweep_interval_seconds > 0:
            start_sweep_scheduler(engine.sweeper, interval_seconds=engine_config.sweep_interval_seconds)
        logger.info("Engine started with payment provider %s", engine_config.payment_provider)
        try:
            yield
        finally:
            shutdown_sweep_scheduler()
            app.state.engine = None
            storage_client.close()

    app = FastAPI(title="Marketplace Entitlements API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[engine_config.app_base_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(subscriptions_router)
    app.include_router(features_router)
    app.include_router(listings_router)
    app.include_router(admin_router)
    app.include_router(webhooks_router)
    app.include_router(cron_router)
    return app


app = create_app()

# run: uvicorn marketplace.main:app --host 127.0.0.1 --port 8000 --reload
