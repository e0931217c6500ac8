"""Webhook audit log: one ProcessingAttempt per inbound call.

Records are append-only: this module never updates or deletes them
(retention is handled outside the service).
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Literal, Protocol

import psycopg

from adega import db

logger = logging.getLogger(__name__)

Outcome = Literal["success", "error"]
OUTCOMES = ("success", "error")


class SinkError(Exception):
    """The audit log could not be written or read."""


@dataclass(frozen=True)
class ProcessingAttempt:
    """Audit record for one webhook delivery."""

    received_at: datetime
    outcome: Outcome
    http_status: int
    duration_ms: int
    source_ip: str | None = None
    retry_attempt: int = 0
    error_message: str | None = None
    resource_id: str | None = None
    event_id: str | None = None
    event_type: str | None = None
    dedup_key: str | None = None
    payload_sha256: str | None = None
    signature_valid: bool = False
    user_agent: str | None = None
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LogFilters:
    """Filters accepted by the operator log listing."""

    status: Outcome | None = None
    event_type: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


class WebhookLogSink(Protocol):
    def record(self, attempt: ProcessingAttempt) -> None:
        """Persist one attempt. Raises SinkError on failure."""
        ...

    def list(self, filters: LogFilters, page: int = 1, page_size: int = 50) -> dict[str, Any]:
        """Paginated attempts, newest first."""
        ...


def paginate(rows: list[dict], page: int, page_size: int, total: int) -> dict[str, Any]:
    """Response envelope shared by the listing endpoints."""
    return {
        "data": rows,
        "pagination": {
            "page": page,
            "pageSize": page_size,
            "total": total,
            "totalPages": math.ceil(total / page_size) if page_size else 0,
        },
    }


def _where(filters: LogFilters) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if filters.status:
        clauses.append("status = %s")
        params.append(filters.status)
    if filters.event_type:
        clauses.append("event_type = %s")
        params.append(filters.event_type)
    if filters.start_date:
        clauses.append("received_at >= %s")
        params.append(filters.start_date)
    if filters.end_date:
        clauses.append("received_at <= %s")
        params.append(filters.end_date)
    sql = (" WHERE " + " AND ".join(clauses)) if clauses else ""
    return sql, params


def _row_to_api(row: dict) -> dict[str, Any]:
    return {
        "id": row["id"],
        "eventId": row["event_id"],
        "eventType": row["event_type"],
        "resourceId": row["resource_id"],
        "status": row["status"],
        "statusCode": row["status_code"],
        "errorMessage": row["error_message"],
        "note": row["note"],
        "processingTime": row["processing_time"],
        "ipAddress": row["ip_address"],
        "retryAttempt": row["retry_attempt"],
        "signatureValid": row["signature_valid"],
        "receivedAt": row["received_at"].isoformat() if row["received_at"] else None,
    }


class PostgresWebhookLogSink:
    """Audit log stored in the ``webhook_logs`` table."""

    def __init__(self, dsn: str, *, timeout_ms: int | None = None):
        self._dsn = dsn
        self._timeout_ms = timeout_ms

    def record(self, attempt: ProcessingAttempt) -> None:
        try:
            with db.connect(self._dsn, self._timeout_ms) as conn:
                conn.execute(
                    """INSERT INTO webhook_logs
                       (event_id, event_type, resource_id, dedup_key, status, status_code,
                        error_message, note, processing_time, payload_sha256, ip_address,
                        user_agent, signature_valid, retry_attempt, received_at)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                    (
                        attempt.event_id,
                        attempt.event_type,
                        attempt.resource_id,
                        attempt.dedup_key,
                        attempt.outcome,
                        attempt.http_status,
                        attempt.error_message,
                        attempt.note,
                        attempt.duration_ms,
                        attempt.payload_sha256,
                        attempt.source_ip,
                        attempt.user_agent,
                        attempt.signature_valid,
                        attempt.retry_attempt,
                        attempt.received_at,
                    ),
                )
        except psycopg.Error as e:
            raise SinkError(f"Failed to record webhook attempt: {e}") from e

    def list(self, filters: LogFilters, page: int = 1, page_size: int = 50) -> dict[str, Any]:
        where, params = _where(filters)
        offset = (page - 1) * page_size
        try:
            with db.connect(self._dsn, self._timeout_ms) as conn:
                rows = conn.execute(
                    f"""SELECT id, event_id, event_type, resource_id, status, status_code,
                               error_message, note, processing_time, ip_address,
                               retry_attempt, signature_valid, received_at
                        FROM webhook_logs{where}
                        ORDER BY received_at DESC
                        LIMIT %s OFFSET %s""",
                    (*params, page_size, offset),
                ).fetchall()
                total_row = conn.execute(
                    f"SELECT count(*) AS total FROM webhook_logs{where}", tuple(params)
                ).fetchone()
        except psycopg.Error as e:
            raise SinkError(f"Failed to list webhook attempts: {e}") from e
        total = total_row["total"] if total_row else 0
        return paginate([_row_to_api(r) for r in rows], page, page_size, total)
