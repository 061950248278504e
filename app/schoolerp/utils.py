from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from flask import abort, jsonify, request

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_RE = re.compile(r"^\d{7,10}$")


def ok(status: int = 200, **payload: Any):
    body = {"success": True}
    body.update(payload)
    return jsonify(body), status


def json_body() -> dict[str, Any]:
    """Request JSON as a dict; 400 when the body is not a JSON object."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(400, description="Request body must be a JSON object.")
    return data


def clean_str(value: Any) -> str | None:
    if value is None:
        return None
    v = str(value).strip()
    return v or None


def parse_date(value: Any) -> date | None:
    """Accepts YYYY-MM-DD or a full ISO timestamp. Returns None if empty/invalid."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    raw = str(value).strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1]
    try:
        return datetime.fromisoformat(raw).replace(tzinfo=None)
    except ValueError:
        d = parse_date(raw)
        return datetime(d.year, d.month, d.day, 23, 59, 59) if d else None


def parse_int(value: Any, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def parse_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    v = str(value).strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return None


def pagination_args(default_per_page: int = 50, max_per_page: int = 200) -> tuple[int, int]:
    page = max(parse_int(request.args.get("page"), 1) or 1, 1)
    per_page = parse_int(request.args.get("per_page"), default_per_page) or default_per_page
    return page, min(max(per_page, 1), max_per_page)


def isoformat(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def validation_error(errors: list[str], message: str = "Validation failed"):
    return jsonify({"success": False, "message": message, "errors": errors}), 400
