"""Webhook HTTP handlers: FastAPI routes for Bling deliveries and the audit log.

POST /webhooks/bling:
1. Reads raw body (needed byte-exact for HMAC verification)
2. Resolves caller IP and sender retry counter from headers
3. Hands everything to BlingWebhookService.process
4. Maps the ProcessingResult to a JSON response

Security contract:
- Never return stack traces or internal identifiers (only resourceId)
- Unexpected failures become a generic 500; details go to the log
- GET /webhooks/bling is a side-effect-free health probe
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from adega.query import QueryError, parse_date_range, parse_pagination
from adega.webhooks.logs import OUTCOMES, LogFilters, WebhookLogSink
from adega.webhooks.pipeline import MSG_INTERNAL, BlingWebhookService

logger = logging.getLogger(__name__)

SERVICE_NAME = "Bling Webhook Receiver"
DEFAULT_LOG_PAGE_SIZE = 50


def client_ip(request: Request) -> str:
    """First of x-forwarded-for (leftmost entry), x-real-ip, socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and forwarded.split(",")[0].strip():
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def retry_attempt(request: Request) -> int:
    """Sender-declared retry counter; 0 when absent or unparseable."""
    raw = request.headers.get("x-retry-attempt")
    try:
        value = int(raw) if raw is not None else 0
    except ValueError:
        return 0
    return max(0, value)


def register_webhook_routes(app: FastAPI, service: BlingWebhookService, log_sink: WebhookLogSink) -> None:
    """Register the Bling webhook endpoints on the FastAPI app."""

    @app.post("/webhooks/bling")
    async def bling_webhook(request: Request):
        """Receive Bling invoice webhooks (signature-verified)."""
        start = time.monotonic()
        try:
            body = await request.body()
            result = await service.process(
                body,
                dict(request.headers),
                source_ip=client_ip(request),
                retry_attempt=retry_attempt(request),
            )
        except Exception:
            logger.exception("Bling webhook processing failed")
            return JSONResponse(
                {"error": MSG_INTERNAL, "processingTime": int((time.monotonic() - start) * 1000)},
                status_code=500,
            )

        if result.success:
            return JSONResponse(
                {
                    "success": True,
                    "resourceId": result.resource_id,
                    "processingTime": result.processing_time,
                },
                status_code=200,
            )
        return JSONResponse(
            {"error": result.error_message, "processingTime": result.processing_time},
            status_code=result.status_code,
        )

    @app.get("/webhooks/bling")
    async def bling_webhook_health():
        """Health probe for the Bling receiver (no auth, no side effects)."""
        return {
            "status": "healthy",
            "service": SERVICE_NAME,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "configured": service.configured,
        }

    @app.get("/webhooks/logs")
    async def webhook_logs(request: Request):
        """Paginated audit log of webhook processing attempts."""
        params = request.query_params
        try:
            page, page_size = parse_pagination(params.get("page"), params.get("pageSize"), DEFAULT_LOG_PAGE_SIZE)
            status = params.get("status") or None
            if status is not None and status not in OUTCOMES:
                raise QueryError('Invalid status parameter. Must be "success" or "error"')
            start_date, end_date = parse_date_range(params.get("startDate"), params.get("endDate"))
        except QueryError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        filters = LogFilters(
            status=status,
            event_type=params.get("eventType") or None,
            start_date=start_date,
            end_date=end_date,
        )
        try:
            return await run_in_threadpool(log_sink.list, filters, page, page_size)
        except Exception:
            logger.exception("Error fetching webhook logs")
            return JSONResponse({"error": MSG_INTERNAL}, status_code=500)

    logger.info("Webhook routes registered: /webhooks/bling, /webhooks/logs")
