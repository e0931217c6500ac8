"""Query-string validation shared by the listing endpoints.

Listing endpoints answer 400 (not FastAPI's default 422) for bad
parameters, so values are taken as raw strings and checked here.
"""

from __future__ import annotations

from datetime import datetime, timezone

MAX_PAGE_SIZE = 100


class QueryError(ValueError):
    """A query parameter failed validation; message is safe to return."""


def parse_int(value: str | None, default: int | None, name: str) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise QueryError(f"Invalid {name} parameter") from None


def parse_pagination(page: str | None, page_size: str | None, default_page_size: int) -> tuple[int, int]:
    try:
        page_num = parse_int(page, 1, "page")
        size = parse_int(page_size, default_page_size, "pageSize")
    except QueryError:
        raise QueryError("Invalid pagination parameters") from None
    if page_num < 1 or size < 1 or size > MAX_PAGE_SIZE:
        raise QueryError("Invalid pagination parameters")
    return page_num, size


def parse_date(value: str | None, name: str) -> datetime | None:
    """ISO-8601 date or datetime; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise QueryError(f"Invalid {name} parameter") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date_range(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    start_date = parse_date(start, "startDate")
    end_date = parse_date(end, "endDate")
    if start_date and end_date and start_date > end_date:
        raise QueryError("Start date cannot be after end date")
    return start_date, end_date
