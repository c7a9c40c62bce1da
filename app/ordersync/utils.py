from __future__ import annotations

import json
from datetime import date, datetime, time
from typing import Any

import pytz


class BlobError(ValueError):
    """A serialized blob column could not be parsed or serialized."""


def safe_text(v: Any) -> str:
    """Safely convert any value to stripped string."""
    if v is None:
        return ""
    try:
        return str(v).strip()
    except Exception:
        return ""


def as_number(v: Any) -> int | float | None:
    """
    Coerce an upstream quantity/price to a number. Integral values come back
    as int so 6 and 6.0 serialize the same. None when not numeric.
    """
    if v is None or isinstance(v, bool):
        return None
    try:
        n = float(v)
    except (TypeError, ValueError):
        return None
    if n != n or n in (float("inf"), float("-inf")):
        return None
    return int(n) if n.is_integer() else n


def canonical_json(value: Any) -> str:
    """
    Stable serialization for equality checks and storage.

    Keys are sorted and separators fixed, so two structurally equal values
    always serialize to the same text regardless of key order.
    """
    try:
        return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise BlobError(f"Value is not JSON serializable: {e}") from e


def parse_json_blob(raw: Any) -> Any:
    """
    Parse a serialized text column. Already-structured values pass through.
    Raises BlobError on unparseable text.
    """
    if raw is None:
        return None
    if isinstance(raw, (list, dict)):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        raise BlobError(f"Unsupported blob type: {type(raw).__name__}")
    text = raw.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise BlobError(f"Invalid JSON blob: {e}") from e


def parse_json_list(raw: Any) -> list | None:
    """Parse a blob expected to hold a JSON array. None when missing or not a list."""
    try:
        value = parse_json_blob(raw)
    except BlobError:
        return None
    return value if isinstance(value, list) else None


def canonical_blob(raw: Any) -> str:
    """Canonical text of a stored-or-structured blob (stored text is re-parsed first)."""
    return canonical_json(parse_json_blob(raw))


def parse_datetime(value: Any) -> datetime | None:
    """
    Parse upstream timestamps ("2025-08-01 12:30:00", ISO 8601, or datetime).
    Naive results are kept naive; callers decide the zone.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = safe_text(value)
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def business_day(value: Any, tz_name: str, *, naive_is_utc: bool = False) -> str | None:
    """
    Calendar day (YYYY-MM-DD) of a timestamp in the business time zone.

    Naive timestamps are read as already being in that zone, unless
    `naive_is_utc` (values loaded from DateTime(timezone=False) columns).
    """
    dt = parse_datetime(value)
    if dt is None:
        return None
    tz = pytz.timezone(tz_name)
    if dt.tzinfo is None and naive_is_utc:
        dt = pytz.utc.localize(dt)
    if dt.tzinfo is not None:
        dt = dt.astimezone(tz)
    return dt.date().isoformat()


def to_naive_utc(dt: datetime | None, tz_name: str) -> datetime | None:
    """Normalize to naive UTC for DateTime(timezone=False) columns."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = pytz.timezone(tz_name).localize(dt)
    return dt.astimezone(pytz.utc).replace(tzinfo=None)


def utcnow() -> datetime:
    return datetime.now(pytz.utc).replace(tzinfo=None)


def business_day_bounds(start: date, end: date, tz_name: str) -> tuple[datetime, datetime]:
    """Naive-UTC bounds covering business days `start`..`end` inclusive."""
    zone = pytz.timezone(tz_name)
    lo = zone.localize(datetime.combine(start, time.min)).astimezone(pytz.utc).replace(tzinfo=None)
    hi = zone.localize(datetime.combine(end, time.max)).astimezone(pytz.utc).replace(tzinfo=None)
    return lo, hi
