"""Bling webhook processing pipeline.

One call to ``BlingWebhookService.process`` walks a delivery through:

    Received -> SignatureChecked -> Parsed -> DedupChecked -> Applied -> Logged -> Responded

Every expected failure (bad signature, malformed body, duplicate, storage
down) comes back as a ``ProcessingResult``; nothing expected is raised.
Every call writes exactly one ProcessingAttempt to the audit log, and a
failing audit log never changes the HTTP outcome.

Storage ports are synchronous (psycopg, redis); they run in worker
threads bounded by the configured timeouts.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from adega.config import WebhookConfig
from adega.invoices.repository import (
    MSG_REJECTED,
    MSG_UNAVAILABLE,
    InvoiceApplier,
    PermanentApplyError,
    TransientApplyError,
)
from adega.webhooks.events import ParseError, ParseErrorKind, WebhookEvent, parse_event
from adega.webhooks.idempotency import DedupStore, dedup_key
from adega.webhooks.logs import ProcessingAttempt, WebhookLogSink
from adega.webhooks.verification import extract_signature, verify_signature

logger = logging.getLogger(__name__)

NOTE_DUPLICATE = "duplicate"
NOTE_IGNORED = "ignored"
NOTE_STALE = "stale"

MSG_NOT_CONFIGURED = "Webhook not properly configured"
MSG_MISSING_SIGNATURE = "Missing X-Bling-Signature-256 header"
MSG_INVALID_SIGNATURE = "Invalid HMAC signature"
MSG_CONTENT_TYPE = "Invalid Content-Type. Expected application/json"
MSG_TIMEOUT = "Invoice storage timed out"
MSG_INTERNAL = "Internal server error"


@dataclass(frozen=True)
class ProcessingResult:
    """What the transport layer needs to answer Bling."""

    success: bool
    status_code: int
    processing_time: int
    resource_id: str | None = None
    error_message: str | None = None
    note: str | None = None


@dataclass
class _Delivery:
    """Mutable scratchpad for one call; frozen into a ProcessingAttempt at the end."""

    received_at: datetime
    started: float
    source_ip: str | None
    retry_attempt: int
    payload_sha256: str
    user_agent: str | None
    signature_valid: bool = False
    event_id: str | None = None
    event_type: str | None = None
    resource_id: str | None = None
    dedup_key: str | None = None

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def _lower_headers(headers: Mapping[str, Any]) -> dict[str, str]:
    lowered: dict[str, str] = {}
    for name, value in headers.items():
        if isinstance(value, (list, tuple)):
            value = value[0] if value else ""
        if value is None:
            continue
        lowered[name.lower()] = str(value)
    return lowered


def _is_json_content_type(value: str | None) -> bool:
    if value is None:
        return True
    media_type = value.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


class BlingWebhookService:
    """Processes Bling invoice webhooks end to end."""

    def __init__(
        self,
        config: WebhookConfig,
        applier: InvoiceApplier,
        log_sink: WebhookLogSink,
        dedup_store: DedupStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self._config = config
        self._applier = applier
        self._log_sink = log_sink
        self._dedup = dedup_store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def config(self) -> WebhookConfig:
        return self._config

    @property
    def configured(self) -> bool:
        return self._config.configured

    async def process(
        self,
        body: bytes,
        headers: Mapping[str, Any],
        source_ip: str | None = None,
        retry_attempt: int = 0,
    ) -> ProcessingResult:
        """Process one Bling delivery.

        Args:
            body: Raw request body, byte-exact as received
            headers: Request headers (any casing)
            source_ip: Caller address as resolved by the transport
            retry_attempt: Sender-declared retry counter (0 on first delivery)

        Returns:
            ProcessingResult; raises only on unexpected defects, after logging them
        """
        lowered = _lower_headers(headers)
        delivery = _Delivery(
            received_at=self._clock(),
            started=time.monotonic(),
            source_ip=source_ip,
            retry_attempt=max(0, int(retry_attempt or 0)),
            payload_sha256=hashlib.sha256(body).hexdigest(),
            user_agent=lowered.get("user-agent"),
        )
        try:
            outcome = await self._run(body, lowered, delivery)
        except Exception:
            logger.exception("Unexpected failure while processing Bling webhook")
            await self._finish(delivery, success=False, status_code=500, error=MSG_INTERNAL)
            raise
        return await self._finish(delivery, **outcome)

    async def _run(self, body: bytes, headers: dict[str, str], delivery: _Delivery) -> dict[str, Any]:
        # Received -> SignatureChecked
        if not self._config.configured:
            logger.error("Bling client secret not configured; refusing webhook")
            return {"success": False, "status_code": 500, "error": MSG_NOT_CONFIGURED}

        if not _is_json_content_type(headers.get("content-type")):
            return {"success": False, "status_code": 400, "error": MSG_CONTENT_TYPE}

        signature = extract_signature(headers)
        if not signature:
            return {"success": False, "status_code": 401, "error": MSG_MISSING_SIGNATURE}
        if not verify_signature(body, signature, self._config.client_secret):
            return {"success": False, "status_code": 401, "error": MSG_INVALID_SIGNATURE}
        delivery.signature_valid = True

        # SignatureChecked -> Parsed
        parsed = parse_event(body, received_at=delivery.received_at)
        if isinstance(parsed, ParseError):
            delivery.event_id = parsed.event_id
            delivery.event_type = parsed.event_name
            delivery.resource_id = parsed.resource_id
            if parsed.kind is ParseErrorKind.UNSUPPORTED_EVENT_TYPE:
                return {"success": True, "status_code": 200, "note": NOTE_IGNORED}
            return {"success": False, "status_code": 400, "error": parsed.message}

        event = parsed
        delivery.event_id = event.event_id
        delivery.event_type = event.event_type.value
        delivery.resource_id = event.resource_id
        delivery.dedup_key = dedup_key(event.event_id, event.resource_id)

        # Parsed -> DedupChecked
        if await self._already_applied(delivery.dedup_key):
            return {"success": True, "status_code": 200, "note": NOTE_DUPLICATE}

        # DedupChecked -> Applied
        try:
            changed = await self._bounded(self._apply, event, timeout=self._config.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Invoice apply timed out after %dms: %s", self._config.timeout_ms, event.resource_id)
            return {"success": False, "status_code": 500, "error": MSG_TIMEOUT}
        except TransientApplyError as e:
            logger.warning("Transient invoice apply failure for %s: %s", event.resource_id, e)
            return {"success": False, "status_code": 500, "error": MSG_UNAVAILABLE}
        except PermanentApplyError as e:
            logger.warning("Permanent invoice apply failure for %s: %s", event.resource_id, e)
            return {"success": False, "status_code": 422, "error": MSG_REJECTED}

        await self._remember(delivery.dedup_key)
        return {"success": True, "status_code": 200, "note": None if changed else NOTE_STALE}

    def _apply(self, event: WebhookEvent) -> bool:
        if event.event_type.is_delete:
            return self._applier.apply_delete(event.resource_id, event.occurred_at)
        return self._applier.apply_create_or_update(event.resource_id, event.invoice)

    async def _bounded(self, fn: Callable[..., Any], *args: Any, timeout: float) -> Any:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)

    async def _already_applied(self, key: str) -> bool:
        try:
            return bool(await self._bounded(self._dedup.seen, key, timeout=self._config.timeout_seconds))
        except Exception:
            logger.warning("Dedup lookup failed for %s, processing anyway", key[:12], exc_info=True)
            return False

    async def _remember(self, key: str) -> None:
        try:
            await self._bounded(self._dedup.record, key, timeout=self._config.timeout_seconds)
        except Exception:
            logger.warning("Dedup record failed for %s", key[:12], exc_info=True)

    async def _finish(
        self,
        delivery: _Delivery,
        *,
        success: bool,
        status_code: int,
        error: str | None = None,
        note: str | None = None,
    ) -> ProcessingResult:
        # Logged -> Responded
        duration_ms = delivery.elapsed_ms()
        attempt = ProcessingAttempt(
            received_at=delivery.received_at,
            outcome="success" if success else "error",
            http_status=status_code,
            duration_ms=duration_ms,
            source_ip=delivery.source_ip,
            retry_attempt=delivery.retry_attempt,
            error_message=error,
            resource_id=delivery.resource_id,
            event_id=delivery.event_id,
            event_type=delivery.event_type,
            dedup_key=delivery.dedup_key,
            payload_sha256=delivery.payload_sha256,
            signature_valid=delivery.signature_valid,
            user_agent=delivery.user_agent,
            note=note,
        )
        try:
            await self._bounded(self._log_sink.record, attempt, timeout=self._config.log_timeout_seconds)
        except Exception:
            logger.error(
                "Failed to record webhook attempt (event=%s status=%d)",
                delivery.event_id,
                status_code,
                exc_info=True,
            )

        logger.info(
            "WEBHOOK_AUDIT event=%s id=%s resource=%s status=%s code=%d note=%s ms=%d",
            delivery.event_type or "unknown",
            delivery.event_id or "unknown",
            delivery.resource_id or "-",
            attempt.outcome,
            status_code,
            note or "-",
            duration_ms,
        )
        return ProcessingResult(
            success=success,
            status_code=status_code,
            processing_time=duration_ms,
            resource_id=delivery.resource_id,
            error_message=error,
            note=note,
        )
