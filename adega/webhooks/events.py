"""Bling webhook event parsing: raw body -> typed WebhookEvent.

Bling delivers one JSON object per notification:

    {"eventId": "...", "date": "2024-09-27 11:24:56", "version": "v1",
     "event": "invoice.created", "companyId": "...",
     "data": {"id": 123, "tipo": 1, "situacao": 5, "numero": "000123",
              "dataEmissao": "2024-09-27 11:24:56", ...}}

Parsing never raises for bad input: expected faults come back as a
``ParseError`` value so the pipeline can map them to HTTP outcomes.
Timestamps in Bling's ``YYYY-MM-DD HH:MM:SS`` format are implicitly UTC.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

BLING_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_INTEGER_RE = re.compile(r"-?[0-9]{1,18}")


class EventType(str, Enum):
    """Bling invoice notifications this service understands."""

    INVOICE_CREATED = "invoice.created"
    INVOICE_UPDATED = "invoice.updated"
    INVOICE_DELETED = "invoice.deleted"
    CONSUMER_INVOICE_CREATED = "consumer_invoice.created"
    CONSUMER_INVOICE_UPDATED = "consumer_invoice.updated"
    CONSUMER_INVOICE_DELETED = "consumer_invoice.deleted"

    @property
    def model(self) -> str:
        """``invoice`` (NF-e) or ``consumer_invoice`` (NFC-e)."""
        return self.value.split(".", 1)[0]

    @property
    def is_delete(self) -> bool:
        return self.value.endswith(".deleted")


class ParseErrorKind(str, Enum):
    MALFORMED_PAYLOAD = "malformed_payload"
    UNSUPPORTED_EVENT_TYPE = "unsupported_event_type"
    INVALID_TIMESTAMP = "invalid_timestamp"


@dataclass(frozen=True)
class ParseError:
    """Why a body could not become a WebhookEvent."""

    kind: ParseErrorKind
    message: str
    event_id: str | None = None
    event_name: str | None = None
    resource_id: str | None = None


@dataclass(frozen=True)
class InvoiceFields:
    """Normalized invoice columns for create/update events."""

    model: str
    occurred_at: datetime
    tipo: int | None = None  # 1 = entrada, 2 = saída
    situacao: int | None = None
    numero: str | None = None
    data_emissao: datetime | None = None
    data_operacao: datetime | None = None
    contato_id: str | None = None
    natureza_operacao_id: str | None = None
    loja_id: str | None = None
    valor_total: Decimal | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class WebhookEvent:
    """One inbound Bling notification, immutable after parse."""

    event_id: str
    event_type: EventType
    occurred_at: datetime
    resource_id: str
    payload: dict[str, Any] = field(compare=False)
    invoice: InvoiceFields | None = None


class _Invalid(Exception):
    """Internal short-circuit while walking the payload."""

    def __init__(self, kind: ParseErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message


# ── Timestamps ────────────────────────────────────────────────────────────


def parse_bling_date(value: str) -> datetime | None:
    """Parse a Bling timestamp into an aware UTC datetime.

    Accepts ``2024-09-27 11:24:56`` (UTC implied) and ISO-8601 variants
    (``T`` separator, fractional seconds, ``Z`` or numeric offset).
    Returns None when the value is not a timestamp.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        parsed = datetime.strptime(text, BLING_DATE_FORMAT)
    except ValueError:
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        # offset pushes the instant outside datetime range
        return None


def format_bling_date(moment: datetime) -> str:
    """Render a datetime in Bling's sender format (UTC)."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(BLING_DATE_FORMAT)


def _timestamp(data: dict, key: str) -> datetime | None:
    raw = data.get(key)
    if raw is None or raw == "":
        return None
    parsed = parse_bling_date(raw)
    if parsed is None:
        raise _Invalid(ParseErrorKind.INVALID_TIMESTAMP, f"Invalid date format in {key}: {raw!r}")
    return parsed


# ── Field coercion ────────────────────────────────────────────────────────


def _resource_id(data: Any) -> str:
    if not isinstance(data, dict):
        raise _Invalid(ParseErrorKind.MALFORMED_PAYLOAD, "Invalid webhook structure: data must be an object")
    raw = data.get("id")
    if isinstance(raw, bool) or raw is None:
        raise _Invalid(ParseErrorKind.MALFORMED_PAYLOAD, "Invalid webhook structure: missing data.id")
    if isinstance(raw, int):
        return str(raw)
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    raise _Invalid(ParseErrorKind.MALFORMED_PAYLOAD, "Invalid webhook structure: data.id must be an integer or string")


def _optional_int(data: dict, key: str) -> int | None:
    raw = data.get(key)
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise _Invalid(ParseErrorKind.MALFORMED_PAYLOAD, f"{key} must be an integer")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and _INTEGER_RE.fullmatch(raw.strip()):
        return int(raw.strip())
    raise _Invalid(ParseErrorKind.MALFORMED_PAYLOAD, f"{key} must be an integer")


def _optional_decimal(data: dict, key: str) -> Decimal | None:
    raw = data.get(key)
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise _Invalid(ParseErrorKind.MALFORMED_PAYLOAD, f"{key} must be numeric")
    try:
        value = Decimal(str(raw))
    except InvalidOperation:
        raise _Invalid(ParseErrorKind.MALFORMED_PAYLOAD, f"{key} must be numeric") from None
    if not value.is_finite():
        raise _Invalid(ParseErrorKind.MALFORMED_PAYLOAD, f"{key} must be numeric")
    return value


def _nested_id(data: dict, key: str) -> str | None:
    nested = data.get(key)
    if not isinstance(nested, dict) or nested.get("id") in (None, ""):
        return None
    return str(nested["id"])


def _invoice_fields(event_type: EventType, occurred_at: datetime, data: dict, body: dict) -> InvoiceFields:
    numero = data.get("numero")
    return InvoiceFields(
        model=event_type.model,
        occurred_at=occurred_at,
        tipo=_optional_int(data, "tipo"),
        situacao=_optional_int(data, "situacao"),
        numero=str(numero) if numero not in (None, "") else None,
        data_emissao=_timestamp(data, "dataEmissao"),
        data_operacao=_timestamp(data, "dataOperacao"),
        contato_id=_nested_id(data, "contato"),
        natureza_operacao_id=_nested_id(data, "naturezaOperacao"),
        loja_id=_nested_id(data, "loja"),
        valor_total=_optional_decimal(data, "valorTotal"),
        raw=body,
    )


# ── Entry point ───────────────────────────────────────────────────────────


def parse_event(body: bytes, *, received_at: datetime | None = None) -> WebhookEvent | ParseError:
    """Parse a raw Bling webhook body into a WebhookEvent.

    Args:
        body: Raw request body bytes (already signature-verified)
        received_at: Fallback for ``occurred_at`` when the payload carries no date

    Returns:
        WebhookEvent, or ParseError describing why the body was rejected
    """
    try:
        payload = json.loads(body)
    except (ValueError, RecursionError) as e:
        return ParseError(ParseErrorKind.MALFORMED_PAYLOAD, f"Invalid JSON payload: {e}")
    if not isinstance(payload, dict):
        return ParseError(ParseErrorKind.MALFORMED_PAYLOAD, "Invalid JSON payload: expected an object")

    event_id = payload.get("eventId")
    event_name = payload.get("event")
    if not isinstance(event_id, str) or not event_id.strip():
        return ParseError(ParseErrorKind.MALFORMED_PAYLOAD, "Invalid webhook structure: missing eventId")
    if not isinstance(event_name, str) or not event_name:
        return ParseError(
            ParseErrorKind.MALFORMED_PAYLOAD, "Invalid webhook structure: missing event", event_id=event_id
        )

    data = payload.get("data")
    try:
        event_type = EventType(event_name)
    except ValueError:
        # data is not validated for events we don't handle
        logger.info("Unsupported Bling event: %s (id=%s), ignoring", event_name, event_id)
        resource_id = None
        if isinstance(data, dict) and data.get("id") not in (None, ""):
            resource_id = str(data["id"])
        return ParseError(
            ParseErrorKind.UNSUPPORTED_EVENT_TYPE,
            f"Unsupported event type: {event_name}",
            event_id=event_id,
            event_name=event_name,
            resource_id=resource_id,
        )

    try:
        resource_id = _resource_id(data)
    except _Invalid as e:
        return ParseError(e.kind, e.message, event_id=event_id, event_name=event_name)

    try:
        occurred_at = (
            _timestamp(payload, "date")
            or _timestamp(data, "dataOperacao")
            or _timestamp(data, "dataEmissao")
            or received_at
            or datetime.now(timezone.utc)
        )
        invoice = None if event_type.is_delete else _invoice_fields(event_type, occurred_at, data, payload)
    except _Invalid as e:
        return ParseError(e.kind, e.message, event_id=event_id, event_name=event_name, resource_id=resource_id)

    return WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        occurred_at=occurred_at,
        resource_id=resource_id,
        payload=payload,
        invoice=invoice,
    )
