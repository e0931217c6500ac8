"""Invoice store: applies Bling invoice events to the ``invoices`` table.

Ordering contract:
- Each write is a single INSERT ... ON CONFLICT statement (row-atomic)
- A write only lands if its occurred_at is not older than the stored one,
  so a late redelivery never overwrites newer state
- Re-applying an identical event is a no-op
- Deletes leave a tombstone (deleted_at) that keeps its occurred_at, so a
  stale create arriving after the delete is rejected too
- Deleting an invoice that never existed is not an error
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

import psycopg
from psycopg.types.json import Jsonb

from adega import db
from adega.retry import retry_with_backoff
from adega.webhooks.events import InvoiceFields
from adega.webhooks.logs import paginate

logger = logging.getLogger(__name__)

# Messages returned to the sender; driver detail stays in the logs
MSG_UNAVAILABLE = "Invoice storage unavailable"
MSG_REJECTED = "Invoice rejected by storage"


class ApplyError(Exception):
    """The invoice side effect could not be applied."""


class TransientApplyError(ApplyError):
    """Storage unavailable or timed out; the sender should retry."""


class PermanentApplyError(ApplyError):
    """Storage rejected the data; retrying will not help."""


class InvoiceApplier(Protocol):
    def apply_create_or_update(self, resource_id: str, fields: InvoiceFields) -> bool:
        """Upsert an invoice. Returns True if stored state changed."""
        ...

    def apply_delete(self, resource_id: str, occurred_at: datetime | None = None) -> bool:
        """Remove an invoice. Returns True if stored state changed."""
        ...


_UPSERT_SQL = """
    INSERT INTO invoices
        (bling_id, model, tipo, situacao, numero, data_emissao, data_operacao,
         contato_id, natureza_operacao_id, loja_id, valor_total, raw_data,
         occurred_at, deleted_at)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NULL)
    ON CONFLICT (bling_id) DO UPDATE SET
        model = EXCLUDED.model,
        tipo = EXCLUDED.tipo,
        situacao = EXCLUDED.situacao,
        numero = EXCLUDED.numero,
        data_emissao = EXCLUDED.data_emissao,
        data_operacao = EXCLUDED.data_operacao,
        contato_id = EXCLUDED.contato_id,
        natureza_operacao_id = EXCLUDED.natureza_operacao_id,
        loja_id = EXCLUDED.loja_id,
        valor_total = EXCLUDED.valor_total,
        raw_data = EXCLUDED.raw_data,
        occurred_at = EXCLUDED.occurred_at,
        deleted_at = NULL,
        updated_at = now()
    WHERE invoices.occurred_at < EXCLUDED.occurred_at
       OR (invoices.occurred_at = EXCLUDED.occurred_at
           AND invoices.raw_data IS DISTINCT FROM EXCLUDED.raw_data)
    RETURNING id
"""

_DELETE_SQL = """
    INSERT INTO invoices (bling_id, occurred_at, deleted_at)
    VALUES (%s, %s, now())
    ON CONFLICT (bling_id) DO UPDATE SET
        occurred_at = EXCLUDED.occurred_at,
        deleted_at = now(),
        updated_at = now()
    WHERE invoices.deleted_at IS NULL
      AND invoices.occurred_at <= EXCLUDED.occurred_at
    RETURNING id
"""

_LIST_COLUMNS = """id, bling_id, model, tipo, situacao, numero, data_emissao,
                   data_operacao, valor_total, created_at, updated_at"""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _money(value: Decimal | None) -> float:
    return float(value) if value is not None else 0.0


def _row_to_api(row: dict) -> dict[str, Any]:
    return {
        "id": row["id"],
        "blingId": row["bling_id"],
        "model": row["model"],
        "tipo": row["tipo"],
        "situacao": row["situacao"],
        "numero": row["numero"],
        "dataEmissao": _iso(row["data_emissao"]),
        "dataOperacao": _iso(row["data_operacao"]),
        "valorTotal": str(row["valor_total"]) if row["valor_total"] is not None else None,
        "createdAt": _iso(row["created_at"]),
        "updatedAt": _iso(row["updated_at"]),
    }


def _date_filters(start_date: datetime | None, end_date: datetime | None) -> tuple[list[str], list[Any]]:
    clauses = ["deleted_at IS NULL"]
    params: list[Any] = []
    if start_date:
        clauses.append("data_emissao >= %s")
        params.append(start_date)
    if end_date:
        clauses.append("data_emissao <= %s")
        params.append(end_date)
    return clauses, params


class PostgresInvoiceRepository:
    """psycopg-backed invoice store (write side for webhooks, read side for the API)."""

    def __init__(self, dsn: str, *, timeout_ms: int | None = None):
        self._dsn = dsn
        self._timeout_ms = timeout_ms

    @retry_with_backoff()
    def _execute_returning(self, sql: str, params: tuple) -> dict | None:
        with db.connect(self._dsn, self._timeout_ms) as conn:
            return conn.execute(sql, params).fetchone()

    def _write(self, sql: str, params: tuple, resource_id: str) -> bool:
        try:
            row = self._execute_returning(sql, params)
        except (psycopg.IntegrityError, psycopg.DataError) as e:
            logger.warning("Invoice %s rejected by storage: %s", resource_id, e)
            raise PermanentApplyError(MSG_REJECTED) from e
        except psycopg.Error as e:
            logger.warning("Invoice storage failure for %s: %s", resource_id, e)
            raise TransientApplyError(MSG_UNAVAILABLE) from e
        return row is not None

    # ── Write side ────────────────────────────────────────────────────────

    def apply_create_or_update(self, resource_id: str, fields: InvoiceFields) -> bool:
        changed = self._write(
            _UPSERT_SQL,
            (
                resource_id,
                fields.model,
                fields.tipo,
                fields.situacao,
                fields.numero,
                fields.data_emissao,
                fields.data_operacao,
                fields.contato_id,
                fields.natureza_operacao_id,
                fields.loja_id,
                fields.valor_total,
                Jsonb(fields.raw),
                fields.occurred_at,
            ),
            resource_id,
        )
        if not changed:
            logger.info("Invoice %s unchanged (stale or identical event)", resource_id)
        return changed

    def apply_delete(self, resource_id: str, occurred_at: datetime | None = None) -> bool:
        occurred_at = occurred_at or datetime.now(timezone.utc)
        changed = self._write(_DELETE_SQL, (resource_id, occurred_at), resource_id)
        if not changed:
            logger.info("Invoice %s delete skipped (already deleted or newer state)", resource_id)
        return changed

    # ── Read side ─────────────────────────────────────────────────────────

    def get(self, bling_id: str) -> dict[str, Any] | None:
        with db.connect(self._dsn, self._timeout_ms) as conn:
            row = conn.execute(
                f"SELECT {_LIST_COLUMNS} FROM invoices WHERE bling_id = %s AND deleted_at IS NULL",
                (bling_id,),
            ).fetchone()
        return _row_to_api(row) if row else None

    def list(
        self,
        page: int = 1,
        page_size: int = 20,
        *,
        tipo: int | None = None,
        situacao: int | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> dict[str, Any]:
        clauses, params = _date_filters(start_date, end_date)
        if tipo is not None:
            clauses.append("tipo = %s")
            params.append(tipo)
        if situacao is not None:
            clauses.append("situacao = %s")
            params.append(situacao)
        where = " WHERE " + " AND ".join(clauses)
        with db.connect(self._dsn, self._timeout_ms) as conn:
            rows = conn.execute(
                f"""SELECT {_LIST_COLUMNS} FROM invoices{where}
                    ORDER BY data_emissao DESC NULLS LAST
                    LIMIT %s OFFSET %s""",
                (*params, page_size, (page - 1) * page_size),
            ).fetchall()
            total_row = conn.execute(f"SELECT count(*) AS total FROM invoices{where}", tuple(params)).fetchone()
        total = total_row["total"] if total_row else 0
        return paginate([_row_to_api(r) for r in rows], page, page_size, total)

    def stats(self, start_date: datetime | None = None, end_date: datetime | None = None) -> dict[str, Any]:
        """Totals by type and by status, mirroring the dashboard cards."""
        clauses, params = _date_filters(start_date, end_date)
        where = " WHERE " + " AND ".join(clauses)
        with db.connect(self._dsn, self._timeout_ms) as conn:
            totals = conn.execute(
                f"SELECT count(*) AS count, COALESCE(SUM(valor_total), 0) AS total FROM invoices{where}",
                tuple(params),
            ).fetchone()
            by_type = conn.execute(
                f"""SELECT tipo, count(*) AS count, COALESCE(SUM(valor_total), 0) AS total
                    FROM invoices{where} GROUP BY tipo ORDER BY tipo""",
                tuple(params),
            ).fetchall()
            by_status = conn.execute(
                f"""SELECT situacao, count(*) AS count
                    FROM invoices{where} GROUP BY situacao ORDER BY situacao""",
                tuple(params),
            ).fetchall()
        return {
            "totalCount": totals["count"] if totals else 0,
            "totalValue": _money(totals["total"]) if totals else 0.0,
            "byType": [
                {"tipo": r["tipo"], "count": r["count"], "valorTotal": _money(r["total"])} for r in by_type
            ],
            "byStatus": [{"situacao": r["situacao"], "count": r["count"]} for r in by_status],
        }
