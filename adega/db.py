"""PostgreSQL access helpers (psycopg 3).

Connections are short-lived and autocommit: every statement the
webhook pipeline issues is a single atomic upsert or insert, so no
explicit transaction is needed.
"""

from __future__ import annotations

import logging

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)

_INVOICES_DDL = """
    CREATE TABLE IF NOT EXISTS invoices (
        id                   BIGSERIAL PRIMARY KEY,
        bling_id             TEXT NOT NULL UNIQUE,
        model                TEXT,
        tipo                 INT,
        situacao             INT,
        numero               TEXT,
        data_emissao         TIMESTAMPTZ,
        data_operacao        TIMESTAMPTZ,
        contato_id           TEXT,
        natureza_operacao_id TEXT,
        loja_id              TEXT,
        valor_total          NUMERIC(14, 2),
        raw_data             JSONB,
        occurred_at          TIMESTAMPTZ NOT NULL,
        deleted_at           TIMESTAMPTZ,
        created_at           TIMESTAMPTZ DEFAULT now(),
        updated_at           TIMESTAMPTZ DEFAULT now()
    )
"""

_WEBHOOK_LOGS_DDL = """
    CREATE TABLE IF NOT EXISTS webhook_logs (
        id              BIGSERIAL PRIMARY KEY,
        event_id        TEXT,
        event_type      TEXT,
        resource_id     TEXT,
        dedup_key       TEXT,
        status          TEXT NOT NULL CHECK (status IN ('success', 'error')),
        status_code     INT NOT NULL,
        error_message   TEXT,
        note            TEXT,
        processing_time INT NOT NULL,
        payload_sha256  TEXT,
        ip_address      TEXT,
        user_agent      TEXT,
        signature_valid BOOLEAN NOT NULL DEFAULT FALSE,
        retry_attempt   INT NOT NULL DEFAULT 0,
        received_at     TIMESTAMPTZ NOT NULL,
        processed_at    TIMESTAMPTZ DEFAULT now()
    )
"""

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS invoices_data_emissao_idx ON invoices (data_emissao DESC)",
    "CREATE INDEX IF NOT EXISTS webhook_logs_received_at_idx ON webhook_logs (received_at DESC)",
    "CREATE INDEX IF NOT EXISTS webhook_logs_dedup_key_idx ON webhook_logs (dedup_key)",
)


def connect(dsn: str, timeout_ms: int | None = None) -> psycopg.Connection:
    """Open an autocommit connection returning dict rows.

    ``timeout_ms`` bounds both the connection handshake and each
    statement, so a stuck database surfaces as an OperationalError.
    """
    kwargs: dict = {"autocommit": True, "row_factory": dict_row}
    if timeout_ms:
        kwargs["connect_timeout"] = max(1, timeout_ms // 1000)
        kwargs["options"] = f"-c statement_timeout={int(timeout_ms)}"
    return psycopg.connect(dsn, **kwargs)


def init_schema(dsn: str) -> None:
    """Create the invoices and webhook_logs tables if they don't exist.  Idempotent."""
    with connect(dsn) as conn:
        conn.execute(_INVOICES_DDL)
        conn.execute(_WEBHOOK_LOGS_DDL)
        for statement in _INDEXES:
            conn.execute(statement)
    logger.info("Invoice and webhook log tables initialized")
