import logging
from datetime import datetime, timezone
from typing import Any, Optional

from ionsync.services.entities import EntitySpec

logger = logging.getLogger(__name__)

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y",
)


def parse_date(value: str) -> datetime:
    """Parse a DataFabric date string. Raises ValueError when no format matches."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            raise ValueError(f"Unrecognised date: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def transform(row: dict[str, Any], entity: EntitySpec, job_id: Optional[str] = None) -> dict[str, Any]:
    document = dict(row)

    for field in entity.date_fields:
        value = document.get(field)
        if not value or not isinstance(value, str):
            continue
        try:
            document[field] = parse_date(value)
        except ValueError:
            logger.warning("TransformWarning: %s.%s is not a date, kept as-is: %r", entity.name, field, value)

    for field in entity.numeric_fields:
        value = document.get(field)
        if not value or not isinstance(value, str):
            continue
        try:
            document[field] = float(value)
        except ValueError:
            logger.warning("TransformWarning: %s.%s is not a number, kept as-is: %r", entity.name, field, value)

    document["_syncDate"] = datetime.now(timezone.utc)
    document["_syncStatus"] = "synced"
    if job_id:
        document["_syncJobId"] = job_id
    return document
