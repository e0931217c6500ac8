"""Read-only invoice API: listing, detail, and dashboard statistics."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from adega.invoices.repository import PostgresInvoiceRepository
from adega.query import QueryError, parse_date_range, parse_int, parse_pagination

logger = logging.getLogger(__name__)

DEFAULT_INVOICE_PAGE_SIZE = 20


def register_invoice_routes(app: FastAPI, repository: PostgresInvoiceRepository) -> None:
    """Register /invoices endpoints on the FastAPI app."""

    @app.get("/invoices")
    async def list_invoices(request: Request):
        params = request.query_params
        try:
            page, page_size = parse_pagination(params.get("page"), params.get("pageSize"), DEFAULT_INVOICE_PAGE_SIZE)
            tipo = parse_int(params.get("tipo"), None, "tipo")
            situacao = parse_int(params.get("situacao"), None, "situacao")
            start_date, end_date = parse_date_range(params.get("startDate"), params.get("endDate"))
        except QueryError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        try:
            return await run_in_threadpool(
                repository.list,
                page,
                page_size,
                tipo=tipo,
                situacao=situacao,
                start_date=start_date,
                end_date=end_date,
            )
        except Exception:
            logger.exception("Error fetching invoices")
            return JSONResponse({"error": "Internal server error"}, status_code=500)

    @app.get("/invoices/stats")
    async def invoice_stats(request: Request):
        params = request.query_params
        try:
            start_date, end_date = parse_date_range(params.get("startDate"), params.get("endDate"))
        except QueryError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        try:
            return await run_in_threadpool(repository.stats, start_date, end_date)
        except Exception:
            logger.exception("Error fetching invoice stats")
            return JSONResponse({"error": "Internal server error"}, status_code=500)

    @app.get("/invoices/{bling_id}")
    async def get_invoice(bling_id: str):
        try:
            invoice = await run_in_threadpool(repository.get, bling_id)
        except Exception:
            logger.exception("Error fetching invoice %s", bling_id)
            return JSONResponse({"error": "Internal server error"}, status_code=500)
        if invoice is None:
            return JSONResponse({"error": "Invoice not found"}, status_code=404)
        return invoice
