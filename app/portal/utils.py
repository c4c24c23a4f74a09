from __future__ import annotations

from datetime import date, datetime, time
from typing import Any

from flask import request

from app.portal.errors import ValidationError


def iso(value: date | datetime | time | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def json_body() -> dict[str, Any]:
    """Request JSON object, or 400 when the body is not a JSON object."""
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    body.pop("csrf_token", None)
    return body


def parse_date(raw: Any, field: str) -> date | None:
    if raw in (None, ""):
        return None
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw).strip()[:10])
    except ValueError:
        raise ValidationError(f"{field} must be a date (YYYY-MM-DD).")


def parse_time(raw: Any, field: str) -> time | None:
    if raw in (None, ""):
        return None
    if isinstance(raw, time):
        return raw
    try:
        return time.fromisoformat(str(raw).strip())
    except ValueError:
        raise ValidationError(f"{field} must be a time (HH:MM).")


def parse_int(raw: Any, field: str, *, minimum: int | None = None) -> int | None:
    if raw in (None, ""):
        return None
    if isinstance(raw, bool):
        raise ValidationError(f"{field} must be an integer.")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer.")
    if minimum is not None and value < minimum:
        raise ValidationError(f"{field} must be at least {minimum}.")
    return value


def parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in ("1", "true", "yes", "on", "y")


def page_args(default_limit: int = 50, max_limit: int = 200) -> tuple[int, int]:
    """(page, limit) from the query string, clamped."""
    try:
        page = max(1, int(request.args.get("page") or 1))
    except ValueError:
        page = 1
    try:
        limit = int(request.args.get("limit") or default_limit)
    except ValueError:
        limit = default_limit
    return page, min(max(1, limit), max_limit)


def pagination(page: int, limit: int, total: int) -> dict[str, int]:
    pages = (total + limit - 1) // limit if total else 0
    return {"page": page, "limit": limit, "total": total, "pages": pages}
