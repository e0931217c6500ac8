"""FastAPI application factory for the Bling webhook receiver.

Run with:

    uvicorn adega.serve:create_app --factory --port 8050

Environment is read once here (see adega.config) and injected into the
pipeline; set TESTING=1 to skip the schema bootstrap on startup.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from adega import db
from adega.config import Settings
from adega.invoices.repository import PostgresInvoiceRepository
from adega.invoices.routes import register_invoice_routes
from adega.webhooks.handlers import register_webhook_routes
from adega.webhooks.idempotency import DedupStore, InMemoryDedupStore, RedisDedupStore
from adega.webhooks.logs import PostgresWebhookLogSink, WebhookLogSink
from adega.webhooks.pipeline import BlingWebhookService

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)


def build_dedup_store(settings: Settings) -> DedupStore:
    if settings.dedup_backend == "memory":
        return InMemoryDedupStore(ttl_seconds=settings.webhook_dedup_ttl_seconds)
    return RedisDedupStore(settings.redis_url, ttl_seconds=settings.webhook_dedup_ttl_seconds)


def create_app(
    settings: Settings | None = None,
    *,
    invoices: PostgresInvoiceRepository | None = None,
    log_sink: WebhookLogSink | None = None,
    dedup_store: DedupStore | None = None,
) -> FastAPI:
    """Wire settings, storage adapters, pipeline, and routes into an app."""
    settings = settings or Settings()
    configure_logging(settings.log_level)

    config = settings.webhook_config()
    if not config.configured:
        logger.error("BLING_CLIENT_SECRET not configured; webhooks will be refused with 500")

    if invoices is None:
        invoices = PostgresInvoiceRepository(settings.database_url, timeout_ms=config.timeout_ms)
    if log_sink is None:
        log_sink = PostgresWebhookLogSink(settings.database_url, timeout_ms=config.log_timeout_ms)
    if dedup_store is None:
        dedup_store = build_dedup_store(settings)
    service = BlingWebhookService(config, invoices, log_sink, dedup_store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not settings.testing:
            db.init_schema(settings.database_url)
        logger.info("Bling webhook receiver started (dedup=%s)", settings.dedup_backend)
        yield

    app = FastAPI(title="Adega Bling Webhooks", lifespan=lifespan)
    app.state.webhook_service = service
    register_webhook_routes(app, service, log_sink)
    register_invoice_routes(app, invoices)
    return app
