"""Tests for the Bling webhook processing pipeline (state machine + outcomes)."""

from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg
import pytest

from adega.config import WebhookConfig
from adega.invoices.repository import PermanentApplyError, PostgresInvoiceRepository, TransientApplyError
from adega.webhooks.idempotency import dedup_key
from adega.webhooks.logs import SinkError
from adega.webhooks.pipeline import (
    MSG_INVALID_SIGNATURE,
    MSG_MISSING_SIGNATURE,
    MSG_NOT_CONFIGURED,
    NOTE_DUPLICATE,
    NOTE_IGNORED,
    NOTE_STALE,
    BlingWebhookService,
)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_invoice_created(self, service, invoice_store, log_sink, make_body, signed_headers):
        """Valid signature + invoice.created -> 200, applier called once with "123"."""
        body = make_body()
        result = await service.process(body, signed_headers(body), source_ip="203.0.113.9")

        assert result.success is True
        assert result.status_code == 200
        assert result.resource_id == "123"
        assert result.processing_time >= 0
        assert invoice_store.calls == [("upsert", "123")]
        assert invoice_store.rows["123"]["fields"].numero == "000123"

        [attempt] = log_sink.attempts
        assert attempt.outcome == "success"
        assert attempt.http_status == 200
        assert attempt.event_id == "e1"
        assert attempt.event_type == "invoice.created"
        assert attempt.resource_id == "123"
        assert attempt.source_ip == "203.0.113.9"
        assert attempt.signature_valid is True
        assert attempt.payload_sha256 == hashlib.sha256(body).hexdigest()
        assert attempt.dedup_key == dedup_key("e1", "123")
        assert attempt.duration_ms == result.processing_time

    @pytest.mark.asyncio
    async def test_invoice_deleted(self, service, invoice_store, make_body, signed_headers):
        body = make_body(event="invoice.deleted", event_id="e2")
        result = await service.process(body, signed_headers(body))
        assert result.success is True
        assert invoice_store.calls == [("delete", "123")]
        assert invoice_store.rows["123"]["deleted"] is True

    @pytest.mark.asyncio
    async def test_delete_of_unknown_invoice_is_success(self, service, invoice_store, signed_headers):
        body = json.dumps({"eventId": "e3", "event": "consumer_invoice.deleted", "data": {"id": 999}}).encode()
        result = await service.process(body, signed_headers(body))
        assert result.success is True
        assert result.resource_id == "999"

    @pytest.mark.asyncio
    async def test_retry_attempt_recorded(self, service, log_sink, make_body, signed_headers):
        body = make_body()
        await service.process(body, signed_headers(body), retry_attempt=2)
        assert log_sink.attempts[0].retry_attempt == 2

    @pytest.mark.asyncio
    async def test_header_casing_and_list_values(self, service, make_body):
        from adega.webhooks.verification import sign_payload

        body = make_body()
        headers = {"Content-Type": ["application/json; charset=utf-8"], "X-Bling-Signature-256": sign_payload(body, "bling-test-secret")}
        result = await service.process(body, headers)
        assert result.success is True


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_redelivery_applies_once(self, service, invoice_store, log_sink, make_body, signed_headers):
        """Same body twice -> both 200, applier invoked exactly once."""
        body = make_body()
        headers = signed_headers(body)
        first = await service.process(body, headers)
        state_after_first = dict(invoice_store.rows)
        second = await service.process(body, headers)

        assert first.success and second.success
        assert second.status_code == 200
        assert second.note == NOTE_DUPLICATE
        assert second.resource_id == "123"
        assert invoice_store.calls == [("upsert", "123")]
        assert invoice_store.rows == state_after_first
        assert [a.outcome for a in log_sink.attempts] == ["success", "success"]
        assert log_sink.attempts[1].note == NOTE_DUPLICATE

    @pytest.mark.asyncio
    async def test_same_event_other_resource_is_not_duplicate(self, service, invoice_store, make_body, signed_headers):
        for resource_id in (1, 2):
            body = make_body(resource_id=resource_id)
            await service.process(body, signed_headers(body))
        assert invoice_store.calls == [("upsert", "1"), ("upsert", "2")]

    @pytest.mark.asyncio
    async def test_failed_apply_is_not_remembered(self, service, invoice_store, make_body, signed_headers):
        body = make_body()
        invoice_store.fail_with = TransientApplyError("db down")
        first = await service.process(body, signed_headers(body))
        invoice_store.fail_with = None
        second = await service.process(body, signed_headers(body))

        assert first.status_code == 500
        assert second.success is True
        assert second.note is None
        assert len(invoice_store.calls) == 2

    @pytest.mark.asyncio
    async def test_stale_update_is_acked(self, service, invoice_store, make_body, signed_headers):
        newer = make_body(event="invoice.updated", event_id="e-new", situacao=6)
        older = json.loads(make_body(event="invoice.updated", event_id="e-old"))
        older["date"] = "2024-09-27 10:00:00"
        older = json.dumps(older).encode()

        await service.process(newer, signed_headers(newer))
        result = await service.process(older, signed_headers(older))

        assert result.success is True
        assert result.note == NOTE_STALE
        assert invoice_store.rows["123"]["fields"].situacao == 6

    @pytest.mark.asyncio
    async def test_dedup_store_failure_fails_open(self, webhook_config, invoice_store, log_sink, make_body, signed_headers):
        class BrokenDedup:
            def seen(self, key):
                raise RuntimeError("store down")

            def record(self, key):
                raise RuntimeError("store down")

        service = BlingWebhookService(webhook_config, invoice_store, log_sink, BrokenDedup())
        body = make_body()
        result = await service.process(body, signed_headers(body))
        assert result.success is True
        assert invoice_store.calls == [("upsert", "123")]


class TestRejections:
    @pytest.mark.asyncio
    async def test_missing_signature(self, service, invoice_store, log_sink, make_body):
        """Signature header absent -> 401, no invoice change, one error attempt logged."""
        body = make_body()
        result = await service.process(body, {"content-type": "application/json"})

        assert result.success is False
        assert result.status_code == 401
        assert result.error_message == MSG_MISSING_SIGNATURE
        assert invoice_store.calls == []
        [attempt] = log_sink.attempts
        assert attempt.outcome == "error"
        assert attempt.http_status == 401
        assert attempt.signature_valid is False

    @pytest.mark.asyncio
    async def test_invalid_signature(self, service, invoice_store, make_body, signed_headers):
        body = make_body()
        result = await service.process(body, signed_headers(body, secret="wrong"))
        assert result.status_code == 401
        assert result.error_message == MSG_INVALID_SIGNATURE
        assert invoice_store.calls == []

    @pytest.mark.asyncio
    async def test_missing_secret(self, invoice_store, log_sink, dedup_store, make_body, signed_headers):
        """Secret unset -> 500 configuration fault, applier never invoked."""
        service = BlingWebhookService(WebhookConfig(client_secret=""), invoice_store, log_sink, dedup_store)
        body = make_body()
        result = await service.process(body, signed_headers(body))

        assert result.status_code == 500
        assert result.error_message == MSG_NOT_CONFIGURED
        assert invoice_store.calls == []
        assert log_sink.attempts[0].outcome == "error"

    @pytest.mark.asyncio
    async def test_wrong_content_type(self, service, make_body, signed_headers):
        body = make_body()
        headers = signed_headers(body)
        headers["content-type"] = "text/plain"
        result = await service.process(body, headers)
        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_json(self, service, invoice_store, signed_headers):
        body = b"{not json"
        result = await service.process(body, signed_headers(body))
        assert result.status_code == 400
        assert result.error_message.startswith("Invalid JSON payload")
        assert invoice_store.calls == []

    @pytest.mark.asyncio
    async def test_missing_required_fields(self, service, signed_headers):
        body = json.dumps({"eventId": "e1", "event": "invoice.created", "data": {}}).encode()
        result = await service.process(body, signed_headers(body))
        assert result.status_code == 400

    @pytest.mark.asyncio
    async def test_invalid_timestamp(self, service, invoice_store, make_body, signed_headers):
        body = make_body(dataEmissao="31/12/2024")
        result = await service.process(body, signed_headers(body))
        assert result.status_code == 400
        assert invoice_store.calls == []

    @pytest.mark.asyncio
    async def test_unknown_event_is_acked(self, service, invoice_store, log_sink, make_body, signed_headers):
        """Unsupported event -> 200 no-op so Bling stops redelivering."""
        body = make_body(event="unknown.thing")
        result = await service.process(body, signed_headers(body))

        assert result.success is True
        assert result.status_code == 200
        assert result.note == NOTE_IGNORED
        assert invoice_store.calls == []
        [attempt] = log_sink.attempts
        assert attempt.outcome == "success"
        assert attempt.note == NOTE_IGNORED
        assert attempt.event_type == "unknown.thing"


class TestDownstreamFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_is_500(self, service, invoice_store, make_body, signed_headers):
        invoice_store.fail_with = TransientApplyError("Invoice storage unavailable")
        body = make_body()
        result = await service.process(body, signed_headers(body))
        assert result.success is False
        assert result.status_code == 500

    @pytest.mark.asyncio
    async def test_permanent_failure_is_422(self, service, invoice_store, log_sink, make_body, signed_headers):
        invoice_store.fail_with = PermanentApplyError("value out of range")
        body = make_body()
        result = await service.process(body, signed_headers(body))
        assert result.status_code == 422
        assert log_sink.attempts[0].http_status == 422

    @pytest.mark.asyncio
    async def test_apply_timeout_is_500(self, invoice_store, log_sink, dedup_store, make_body, signed_headers):
        class SlowStore:
            def apply_create_or_update(self, resource_id, fields):
                time.sleep(0.3)
                return True

        config = WebhookConfig(client_secret="bling-test-secret", timeout_ms=50)
        service = BlingWebhookService(config, SlowStore(), log_sink, dedup_store)
        body = make_body()
        result = await service.process(body, signed_headers(body))
        assert result.status_code == 500
        assert dedup_store.seen(dedup_key("e1", "123")) is False

    @pytest.mark.asyncio
    async def test_log_failure_does_not_mask_result(self, service, invoice_store, log_sink, make_body, signed_headers):
        log_sink.fail_with = SinkError("webhook_logs unavailable")
        body = make_body()
        result = await service.process(body, signed_headers(body))
        assert result.success is True
        assert invoice_store.calls == [("upsert", "123")]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_logged_then_raised(self, service, invoice_store, log_sink, make_body, signed_headers):
        invoice_store.fail_with = RuntimeError("bug")
        body = make_body()
        with pytest.raises(RuntimeError):
            await service.process(body, signed_headers(body))
        [attempt] = log_sink.attempts
        assert attempt.outcome == "error"
        assert attempt.http_status == 500


class TestClock:
    @pytest.mark.asyncio
    async def test_received_at_uses_injected_clock(self, webhook_config, invoice_store, log_sink, dedup_store, make_body, signed_headers):
        moment = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        service = BlingWebhookService(webhook_config, invoice_store, log_sink, dedup_store, clock=lambda: moment)
        body = make_body()
        await service.process(body, signed_headers(body))
        assert log_sink.attempts[0].received_at == moment


class TestStorageErrorsStayInternal:
    """Driver messages (constraint names, key values, hosts) never reach the sender."""

    LEAKY = 'duplicate key value violates unique constraint "invoices_numero_key" DETAIL: Key (numero)=(000123) already exists.'

    def _service(self, webhook_config, log_sink, dedup_store):
        repo = PostgresInvoiceRepository("postgresql://adega@db.internal:5432/adega", timeout_ms=1000)
        return BlingWebhookService(webhook_config, repo, log_sink, dedup_store)

    @pytest.mark.asyncio
    async def test_integrity_error_message_is_generic(self, webhook_config, log_sink, dedup_store, make_body, signed_headers):
        conn = MagicMock()
        conn.execute.side_effect = psycopg.IntegrityError(self.LEAKY)
        body = make_body()
        with patch("adega.invoices.repository.db.connect") as mock_connect:
            mock_connect.return_value.__enter__.return_value = conn
            result = await self._service(webhook_config, log_sink, dedup_store).process(body, signed_headers(body))

        assert result.status_code == 422
        assert result.error_message == "Invoice rejected by storage"
        assert "invoices_numero_key" not in result.error_message
        assert "000123" not in log_sink.attempts[0].error_message

    @pytest.mark.asyncio
    async def test_operational_error_message_is_generic(self, webhook_config, log_sink, dedup_store, make_body, signed_headers):
        conn = MagicMock()
        conn.execute.side_effect = psycopg.OperationalError('connection to server at "db.internal" (10.0.0.5) failed')
        body = make_body()
        with patch("adega.invoices.repository.db.connect") as mock_connect, patch("adega.retry.time.sleep"):
            mock_connect.return_value.__enter__.return_value = conn
            result = await self._service(webhook_config, log_sink, dedup_store).process(body, signed_headers(body))

        assert result.status_code == 500
        assert result.error_message == "Invoice storage unavailable"
        assert "10.0.0.5" not in result.error_message

    @pytest.mark.asyncio
    async def test_custom_applier_message_is_generic(self, service, invoice_store, make_body, signed_headers):
        invoice_store.fail_with = PermanentApplyError("row for tenant 42 violates check invoices_valor_check")
        body = make_body()
        result = await service.process(body, signed_headers(body))
        assert result.status_code == 422
        assert result.error_message == "Invoice rejected by storage"


@pytest.mark.asyncio
async def test_garbled_integer_field_is_400(service, invoice_store, make_body, signed_headers):
    body = make_body(tipo="--5")
    result = await service.process(body, signed_headers(body))
    assert result.status_code == 400
    assert invoice_store.calls == []
