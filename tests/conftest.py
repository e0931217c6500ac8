"""Shared fixtures for the Bling webhook test suite.

Storage ports are replaced by in-memory fakes that honour the same
contracts as the PostgreSQL adapters (compare-and-set on occurred_at,
idempotent delete, append-only audit log).
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from adega.config import Settings, WebhookConfig
from adega.serve import create_app
from adega.webhooks.events import InvoiceFields
from adega.webhooks.idempotency import InMemoryDedupStore
from adega.webhooks.logs import LogFilters, ProcessingAttempt, paginate
from adega.webhooks.pipeline import BlingWebhookService
from adega.webhooks.verification import sign_payload

SECRET = "bling-test-secret"


class FakeInvoiceStore:
    """In-memory InvoiceApplier with the repository's ordering rules."""

    def __init__(self):
        self.rows: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_with: Exception | None = None

    def apply_create_or_update(self, resource_id: str, fields: InvoiceFields) -> bool:
        self.calls.append(("upsert", resource_id))
        if self.fail_with is not None:
            raise self.fail_with
        current = self.rows.get(resource_id)
        if current is not None:
            if current["occurred_at"] > fields.occurred_at:
                return False
            if current["occurred_at"] == fields.occurred_at and current["fields"] == fields:
                return False
        self.rows[resource_id] = {"fields": fields, "occurred_at": fields.occurred_at, "deleted": False}
        return True

    def apply_delete(self, resource_id: str, occurred_at: datetime | None = None) -> bool:
        self.calls.append(("delete", resource_id))
        if self.fail_with is not None:
            raise self.fail_with
        occurred_at = occurred_at or datetime.now(timezone.utc)
        current = self.rows.get(resource_id)
        if current is not None and (current["deleted"] or current["occurred_at"] > occurred_at):
            return False
        self.rows[resource_id] = {"fields": None, "occurred_at": occurred_at, "deleted": True}
        return True


class FakeLogSink:
    """Append-only in-memory audit log."""

    def __init__(self):
        self.attempts: list[ProcessingAttempt] = []
        self.list_calls: list[tuple[LogFilters, int, int]] = []
        self.fail_with: Exception | None = None

    def record(self, attempt: ProcessingAttempt) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.attempts.append(attempt)

    def list(self, filters: LogFilters, page: int = 1, page_size: int = 50) -> dict:
        self.list_calls.append((filters, page, page_size))
        rows = [a.to_dict() for a in self.attempts if not filters.status or a.outcome == filters.status]
        start = (page - 1) * page_size
        page_rows = [{"status": r["outcome"], "eventId": r["event_id"]} for r in rows[start : start + page_size]]
        return paginate(page_rows, page, page_size, len(rows))


def _make_body(
    event: str = "invoice.created",
    event_id: str = "e1",
    resource_id: int | str = 123,
    **data,
) -> bytes:
    payload = {
        "eventId": event_id,
        "date": "2024-09-27 11:30:00",
        "version": "v1",
        "event": event,
        "companyId": "c0ffee",
        "data": {
            "id": resource_id,
            "tipo": 1,
            "situacao": 5,
            "numero": "000123",
            "dataEmissao": "2024-09-27 11:24:56",
            "dataOperacao": "2024-09-27 11:00:00",
            "contato": {"id": 9876},
            "loja": {"id": 42},
            "valorTotal": 159.9,
            **data,
        },
    }
    return json.dumps(payload).encode("utf-8")


def _signed_headers(body: bytes, secret: str = SECRET, **extra: str) -> dict[str, str]:
    return {
        "content-type": "application/json",
        "x-bling-signature-256": sign_payload(body, secret),
        **extra,
    }


@pytest.fixture()
def invoice_store() -> FakeInvoiceStore:
    return FakeInvoiceStore()


@pytest.fixture()
def log_sink() -> FakeLogSink:
    return FakeLogSink()


@pytest.fixture()
def dedup_store() -> InMemoryDedupStore:
    return InMemoryDedupStore()


@pytest.fixture()
def webhook_config() -> WebhookConfig:
    return WebhookConfig(client_secret=SECRET, max_retries=3, timeout_ms=2000, log_timeout_ms=1000)


@pytest.fixture()
def service(webhook_config, invoice_store, log_sink, dedup_store) -> BlingWebhookService:
    return BlingWebhookService(webhook_config, invoice_store, log_sink, dedup_store)


def _settings(secret: str) -> Settings:
    return Settings(bling_client_secret=secret, testing=True, dedup_backend="memory")


@pytest.fixture()
def app(invoice_store, log_sink, dedup_store):
    """App wired to the in-memory fakes (TESTING=1 skips schema bootstrap)."""
    return create_app(_settings(SECRET), invoices=invoice_store, log_sink=log_sink, dedup_store=dedup_store)


@pytest.fixture()
def client(app):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture()
def unconfigured_client(invoice_store, log_sink, dedup_store):
    """App started without BLING_CLIENT_SECRET."""
    app = create_app(_settings(""), invoices=invoice_store, log_sink=log_sink, dedup_store=dedup_store)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture()
def make_body():
    """Factory for Bling webhook bodies (bytes, as sent on the wire)."""
    return _make_body


@pytest.fixture()
def signed_headers():
    """Factory for headers carrying a valid X-Bling-Signature-256."""
    return _signed_headers
