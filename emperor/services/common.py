from __future__ import annotations

from datetime import datetime, timezone

from dateutil import parser as dt_parser


MAX_SAFE_INTEGER = 2**53 - 1


def json_safe_int(value):
    if isinstance(value, bool) or not isinstance(value, int):
        return value
    if -MAX_SAFE_INTEGER <= value <= MAX_SAFE_INTEGER:
        return value
    return str(value)


def json_safe(value):
    """Recursively replace integers JSON numbers cannot carry exactly."""
    if isinstance(value, dict):
        return {key: json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(item) for item in value]
    return json_safe_int(value)


def parse_timestamp(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = dt_parser.isoparse(str(value))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_order(value) -> int:
    if isinstance(value, bool):
        raise ValueError("order must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValueError("order must be an integer")


def clean_tag_names(names) -> list[str]:
    cleaned = []
    for name in names or []:
        if name is None:
            continue
        text = str(name).strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned
